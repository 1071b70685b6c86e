"""
============================================================================
Gate Pass Store - Requests, Gate Logs and Staff Actions
============================================================================

Reliability Level: L6 Critical
Traceability: Every write carries the request correlation_id in logs

The PassStore owns the mutable request records and their append-only
audit trails:
- pass_requests: one row per request, never deleted
- gate_logs: exit/entry events (append-only)
- staff_actions: approval decisions (append-only)

PERSISTENCE PATHS:
    With a SQLAlchemy session every operation issues sqlalchemy.text() SQL
    and commits (or rolls back on failure). Without a session the store
    keeps thread-safe in-memory dicts, used by tests and local runs.

GUARDED UPDATES:
    Status changes only ever happen through compare_and_set_status() and
    bulk_compare_and_set_status(), which include the expected status in the
    predicate and report how many rows changed. Zero rows means the request
    moved on since the caller read it.

SINGLE OUTSTANDING REQUEST:
    insert_request() refuses a second non-terminal request for the same
    student. In SQL this is enforced by a partial unique index; in memory
    the check and insert happen under one lock.

ERROR CODES:
    - VAL-004: Requester already has an open request
    - SYS-500: Persistence failure

============================================================================
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
import dataclasses
import json
import logging
import threading

from sqlalchemy import text, bindparam
from sqlalchemy.exc import IntegrityError

from services.pass_errors import PassErrorCode, ValidationError, PassSystemError
from services.pass_models import (
    PassRequest,
    PassStatus,
    GateLog,
    StaffAction,
    LogAction,
    TERMINAL_STATUSES,
    GATE_FREE_ACTIONS,
    _parse_dt,
)

# Configure module logger
logger = logging.getLogger(__name__)


# Columns that guarded updates may write alongside the status
UPDATABLE_FIELDS = frozenset([
    "pass_category",
    "reason",
    "departure_at",
    "return_at",
    "gate_action",
    "forwarded_to",
    "verification_token",
    "verify_code",
    "decided_by",
    "decision_reason",
    "cancelled_at",
])

REQUEST_COLUMNS = (
    "id, student_id, pass_category, reason, departure_at, return_at, status, "
    "gate_action, forwarded_to, verification_token, verify_code, decided_by, "
    "decision_reason, cancelled_at, correlation_id, created_at, updated_at"
)


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")


class PassStore:
    """
    Request, gate log and staff action persistence.

    Reliability Level: L6 Critical
    Input Constraints: db_session should be a SQLAlchemy session or None
    Side Effects: Database writes (SQL path), logs all failures
    """

    def __init__(self, db_session: Optional[Any] = None) -> None:
        self._db_session = db_session
        self._lock = threading.RLock()

        # In-memory storage for running without a database
        self._requests: Dict[str, PassRequest] = {}
        self._gate_logs: Dict[str, List[GateLog]] = {}
        self._staff_actions: Dict[str, List[StaffAction]] = {}

        logger.info(
            f"[PASS-STORE] Store initialized | "
            f"db_session={'connected' if db_session is not None else 'in-memory'}"
        )

    # =========================================================================
    # SQL helpers
    # =========================================================================

    def _write(self, query: Any, params: Dict[str, Any]) -> Any:
        try:
            result = self._db_session.execute(query, params)
            self._db_session.commit()
            return result
        except IntegrityError:
            self._db_session.rollback()
            raise
        except Exception as e:
            self._db_session.rollback()
            logger.error(
                f"[{PassErrorCode.SYSTEM_FAILURE}] Write failed: {str(e)}"
            )
            raise PassSystemError(f"Persistence failure: {str(e)}") from e

    def _read(self, query: Any, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            result = self._db_session.execute(query, params)
            return [dict(row) for row in result.mappings().all()]
        except Exception as e:
            logger.error(
                f"[{PassErrorCode.SYSTEM_FAILURE}] Query failed: {str(e)}"
            )
            raise PassSystemError(f"Persistence failure: {str(e)}") from e

    # =========================================================================
    # Requests
    # =========================================================================

    def insert_request(self, request: PassRequest) -> PassRequest:
        """
        Insert a new request.

        Raises:
            ValidationError: VAL-004 if the student already has an open request
        """
        if self._db_session is not None:
            query = text(f"""
                INSERT INTO pass_requests ({REQUEST_COLUMNS})
                VALUES (
                    :id, :student_id, :pass_category, :reason, :departure_at,
                    :return_at, :status, :gate_action, :forwarded_to,
                    :verification_token, :verify_code, :decided_by,
                    :decision_reason, :cancelled_at, :correlation_id,
                    :created_at, :updated_at
                )
            """)
            params = dataclasses.asdict(request)
            try:
                self._write(query, params)
            except IntegrityError as e:
                logger.warning(
                    f"[{PassErrorCode.OPEN_REQUEST_EXISTS}] Open request exists | "
                    f"student_id={request.student_id} | "
                    f"correlation_id={request.correlation_id}"
                )
                raise ValidationError(
                    "An open request already exists for this student",
                    error_code=PassErrorCode.OPEN_REQUEST_EXISTS,
                    correlation_id=request.correlation_id,
                ) from e
            return request

        with self._lock:
            if self._find_open_locked(request.student_id) is not None:
                logger.warning(
                    f"[{PassErrorCode.OPEN_REQUEST_EXISTS}] Open request exists | "
                    f"student_id={request.student_id} | "
                    f"correlation_id={request.correlation_id}"
                )
                raise ValidationError(
                    "An open request already exists for this student",
                    error_code=PassErrorCode.OPEN_REQUEST_EXISTS,
                    correlation_id=request.correlation_id,
                )
            self._requests[request.id] = dataclasses.replace(request)
        return request

    def get_request(self, request_id: str) -> Optional[PassRequest]:
        if self._db_session is not None:
            rows = self._read(
                text(f"SELECT {REQUEST_COLUMNS} FROM pass_requests WHERE id = :id"),
                {"id": request_id},
            )
            return PassRequest.from_dict(rows[0]) if rows else None

        with self._lock:
            request = self._requests.get(request_id)
            return dataclasses.replace(request) if request else None

    def find_open_request(self, student_id: str) -> Optional[PassRequest]:
        """The student's single non-terminal request, if any."""
        if self._db_session is not None:
            query = text(f"""
                SELECT {REQUEST_COLUMNS} FROM pass_requests
                WHERE student_id = :student_id AND status NOT IN :terminal
                ORDER BY created_at DESC
                LIMIT 1
            """).bindparams(bindparam("terminal", expanding=True))
            rows = self._read(query, {"student_id": student_id, "terminal": TERMINAL_STATUSES})
            return PassRequest.from_dict(rows[0]) if rows else None

        with self._lock:
            request = self._find_open_locked(student_id)
            return dataclasses.replace(request) if request else None

    def _find_open_locked(self, student_id: str) -> Optional[PassRequest]:
        for request in self._requests.values():
            if request.student_id == student_id and request.status not in TERMINAL_STATUSES:
                return request
        return None

    def latest_request_for_student(self, student_id: str) -> Optional[PassRequest]:
        if self._db_session is not None:
            query = text(f"""
                SELECT {REQUEST_COLUMNS} FROM pass_requests
                WHERE student_id = :student_id
                ORDER BY created_at DESC
                LIMIT 1
            """)
            rows = self._read(query, {"student_id": student_id})
            return PassRequest.from_dict(rows[0]) if rows else None

        with self._lock:
            own = [r for r in self._requests.values() if r.student_id == student_id]
            if not own:
                return None
            return dataclasses.replace(max(own, key=lambda r: r.created_at))

    def find_by_token(self, token: str) -> Optional[PassRequest]:
        """Most recent request carrying the given verification token."""
        if self._db_session is not None:
            query = text(f"""
                SELECT {REQUEST_COLUMNS} FROM pass_requests
                WHERE verification_token = :token
                ORDER BY created_at DESC
                LIMIT 1
            """)
            rows = self._read(query, {"token": token})
            return PassRequest.from_dict(rows[0]) if rows else None

        with self._lock:
            matches = [r for r in self._requests.values() if r.verification_token == token]
            if not matches:
                return None
            return dataclasses.replace(max(matches, key=lambda r: r.created_at))

    def list_requests(
        self,
        statuses: Optional[List[str]] = None,
        student_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[PassRequest]:
        """Requests filtered by status and/or student, newest first."""
        if self._db_session is not None:
            clauses = []
            params: Dict[str, Any] = {"limit": limit}
            query_params = []
            if statuses:
                clauses.append("status IN :statuses")
                params["statuses"] = list(statuses)
                query_params.append(bindparam("statuses", expanding=True))
            if student_id:
                clauses.append("student_id = :student_id")
                params["student_id"] = student_id
            where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
            query = text(f"""
                SELECT {REQUEST_COLUMNS} FROM pass_requests
                {where}
                ORDER BY created_at DESC
                LIMIT :limit
            """)
            if query_params:
                query = query.bindparams(*query_params)
            return [PassRequest.from_dict(row) for row in self._read(query, params)]

        with self._lock:
            matches = [
                dataclasses.replace(r) for r in self._requests.values()
                if (not statuses or r.status in statuses)
                and (not student_id or r.student_id == student_id)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit]

    def count_requests_since(self, student_id: str, since: datetime) -> int:
        """Requests created by the student at or after `since` (any status)."""
        if self._db_session is not None:
            query = text("""
                SELECT COUNT(*) AS total FROM pass_requests
                WHERE student_id = :student_id AND created_at >= :since
            """)
            rows = self._read(query, {"student_id": student_id, "since": since})
            return int(rows[0]["total"]) if rows else 0

        with self._lock:
            return sum(
                1 for r in self._requests.values()
                if r.student_id == student_id and r.created_at >= since
            )

    def list_cancellation_times(self, student_id: str, since: datetime) -> List[datetime]:
        """Cancellation timestamps at or after `since`, oldest first."""
        if self._db_session is not None:
            query = text("""
                SELECT cancelled_at FROM pass_requests
                WHERE student_id = :student_id
                  AND status = :cancelled
                  AND cancelled_at >= :since
                ORDER BY cancelled_at ASC
            """)
            rows = self._read(query, {
                "student_id": student_id,
                "cancelled": PassStatus.CANCELLED.value,
                "since": since,
            })
            return [_parse_dt(row["cancelled_at"]) for row in rows]

        with self._lock:
            times = [
                r.cancelled_at for r in self._requests.values()
                if r.student_id == student_id
                and r.status == PassStatus.CANCELLED.value
                and r.cancelled_at is not None
                and r.cancelled_at >= since
            ]
        return sorted(times)

    # =========================================================================
    # Guarded updates
    # =========================================================================

    def compare_and_set_status(
        self,
        request_id: str,
        expected_status: str,
        target_status: str,
        now: datetime,
        fields: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        UPDATE ... SET status = target WHERE id = ? AND status = expected.

        Returns:
            Number of rows changed (0 or 1)
        """
        fields = dict(fields or {})
        _check_fields(fields)

        if self._db_session is not None:
            assignments = "".join(f", {name} = :{name}" for name in fields)
            query = text(f"""
                UPDATE pass_requests
                SET status = :target_status, updated_at = :now{assignments}
                WHERE id = :id AND status = :expected_status
            """)
            params = dict(fields)
            params.update({
                "id": request_id,
                "target_status": target_status,
                "expected_status": expected_status,
                "now": now,
            })
            return self._write(query, params).rowcount

        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != expected_status:
                return 0
            self._requests[request_id] = dataclasses.replace(
                request, status=target_status, updated_at=now, **fields
            )
            return 1

    def bulk_compare_and_set_status(
        self,
        request_ids: List[str],
        expected_status: str,
        target_status: str,
        now: datetime,
    ) -> List[str]:
        """Guarded bulk status update; returns the ids that actually moved."""
        if not request_ids:
            return []

        if self._db_session is not None:
            query = text("""
                UPDATE pass_requests
                SET status = :target_status, updated_at = :now
                WHERE id IN :ids AND status = :expected_status
                RETURNING id
            """).bindparams(bindparam("ids", expanding=True))
            result = self._write(query, {
                "ids": list(request_ids),
                "target_status": target_status,
                "expected_status": expected_status,
                "now": now,
            })
            return [str(row[0]) for row in result.fetchall()]

        moved: List[str] = []
        with self._lock:
            for request_id in request_ids:
                request = self._requests.get(request_id)
                if request is not None and request.status == expected_status:
                    self._requests[request_id] = dataclasses.replace(
                        request, status=target_status, updated_at=now
                    )
                    moved.append(request_id)
        return moved

    def update_fields_guarded(
        self,
        request_id: str,
        expected_statuses: List[str],
        fields: Dict[str, Any],
        now: datetime,
    ) -> int:
        """
        Update non-status columns while the request is in one of
        expected_statuses. Used by edit and forward.

        Returns:
            Number of rows changed (0 or 1)
        """
        _check_fields(fields)

        if self._db_session is not None:
            assignments = "".join(f", {name} = :{name}" for name in fields)
            query = text(f"""
                UPDATE pass_requests
                SET updated_at = :now{assignments}
                WHERE id = :id AND status IN :expected_statuses
            """).bindparams(bindparam("expected_statuses", expanding=True))
            params = dict(fields)
            params.update({
                "id": request_id,
                "expected_statuses": list(expected_statuses),
                "now": now,
            })
            return self._write(query, params).rowcount

        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status not in expected_statuses:
                return 0
            self._requests[request_id] = dataclasses.replace(request, updated_at=now, **fields)
            return 1

    # =========================================================================
    # Expiry selection
    # =========================================================================

    def select_return_elapsed(self, statuses: List[str], now: datetime) -> List[PassRequest]:
        """Requests in `statuses` whose return time has passed."""
        if self._db_session is not None:
            query = text(f"""
                SELECT {REQUEST_COLUMNS} FROM pass_requests
                WHERE status IN :statuses AND return_at < :now
                ORDER BY return_at ASC
            """).bindparams(bindparam("statuses", expanding=True))
            rows = self._read(query, {"statuses": list(statuses), "now": now})
            return [PassRequest.from_dict(row) for row in rows]

        with self._lock:
            matches = [
                dataclasses.replace(r) for r in self._requests.values()
                if r.status in statuses and r.return_at < now
            ]
        return sorted(matches, key=lambda r: r.return_at)

    def select_unused_approved(self, statuses: List[str], departed_before: datetime) -> List[PassRequest]:
        """
        Approved passes in `statuses` that need an exit scan, departed before
        the cutoff and never scanned out.
        """
        if self._db_session is not None:
            query = text(f"""
                SELECT {REQUEST_COLUMNS} FROM pass_requests r
                WHERE r.status IN :statuses
                  AND r.departure_at < :cutoff
                  AND r.gate_action NOT IN :gate_free
                  AND NOT EXISTS (
                      SELECT 1 FROM gate_logs g
                      WHERE g.request_id = r.id AND g.action = :exit_action
                  )
                ORDER BY r.departure_at ASC
            """).bindparams(
                bindparam("statuses", expanding=True),
                bindparam("gate_free", expanding=True),
            )
            rows = self._read(query, {
                "statuses": list(statuses),
                "cutoff": departed_before,
                "gate_free": GATE_FREE_ACTIONS,
                "exit_action": LogAction.EXIT.value,
            })
            return [PassRequest.from_dict(row) for row in rows]

        with self._lock:
            matches = [
                dataclasses.replace(r) for r in self._requests.values()
                if r.status in statuses
                and r.departure_at < departed_before
                and r.gate_action not in GATE_FREE_ACTIONS
                and not any(
                    log.action == LogAction.EXIT.value
                    for log in self._gate_logs.get(r.id, [])
                )
            ]
        return sorted(matches, key=lambda r: r.departure_at)

    # =========================================================================
    # Gate logs
    # =========================================================================

    def insert_gate_log(self, log: GateLog) -> GateLog:
        if self._db_session is not None:
            query = text("""
                INSERT INTO gate_logs (id, request_id, action, gatekeeper_id, comments, logged_at)
                VALUES (:id, :request_id, :action, :gatekeeper_id, :comments, :logged_at)
            """)
            self._write(query, dataclasses.asdict(log))
            return log

        with self._lock:
            self._gate_logs.setdefault(log.request_id, []).append(dataclasses.replace(log))
        return log

    def list_gate_logs(self, request_id: str) -> List[GateLog]:
        """Gate logs for a request, oldest first."""
        if self._db_session is not None:
            query = text("""
                SELECT id, request_id, action, gatekeeper_id, comments, logged_at
                FROM gate_logs
                WHERE request_id = :request_id
                ORDER BY logged_at ASC
            """)
            rows = self._read(query, {"request_id": request_id})
            return [self._log_from_row(row) for row in rows]

        with self._lock:
            logs = [dataclasses.replace(log) for log in self._gate_logs.get(request_id, [])]
        return sorted(logs, key=lambda log: log.logged_at)

    def latest_gate_log(self, request_id: str) -> Optional[GateLog]:
        logs = self.latest_gate_logs([request_id])
        return logs.get(request_id)

    def latest_gate_logs(self, request_ids: List[str]) -> Dict[str, GateLog]:
        """Most recent gate log per request, for the given ids."""
        if not request_ids:
            return {}

        if self._db_session is not None:
            query = text("""
                SELECT DISTINCT ON (request_id)
                       id, request_id, action, gatekeeper_id, comments, logged_at
                FROM gate_logs
                WHERE request_id IN :ids
                ORDER BY request_id, logged_at DESC
            """).bindparams(bindparam("ids", expanding=True))
            rows = self._read(query, {"ids": list(request_ids)})
            return {str(row["request_id"]): self._log_from_row(row) for row in rows}

        latest: Dict[str, GateLog] = {}
        with self._lock:
            for request_id in request_ids:
                logs = self._gate_logs.get(request_id)
                if logs:
                    latest[request_id] = dataclasses.replace(
                        max(logs, key=lambda log: log.logged_at)
                    )
        return latest

    @staticmethod
    def _log_from_row(row: Dict[str, Any]) -> GateLog:
        return GateLog(
            id=str(row["id"]),
            request_id=str(row["request_id"]),
            action=row["action"],
            gatekeeper_id=str(row["gatekeeper_id"]),
            comments=row.get("comments") or "",
            logged_at=_parse_dt(row["logged_at"]),
        )

    # =========================================================================
    # Staff actions
    # =========================================================================

    def insert_staff_action(self, action: StaffAction) -> StaffAction:
        if self._db_session is not None:
            query = text("""
                INSERT INTO staff_actions (
                    id, request_id, actor_id, action_type, from_status,
                    to_status, details, created_at
                ) VALUES (
                    :id, :request_id, :actor_id, :action_type, :from_status,
                    :to_status, :details, :created_at
                )
            """)
            params = dataclasses.asdict(action)
            params["details"] = json.dumps(action.details)
            self._write(query, params)
            return action

        with self._lock:
            self._staff_actions.setdefault(action.request_id, []).append(action)
        return action

    def list_staff_actions(self, request_id: str) -> List[StaffAction]:
        if self._db_session is not None:
            query = text("""
                SELECT id, request_id, actor_id, action_type, from_status,
                       to_status, details, created_at
                FROM staff_actions
                WHERE request_id = :request_id
                ORDER BY created_at ASC
            """)
            actions = []
            for row in self._read(query, {"request_id": request_id}):
                details = row.get("details") or {}
                actions.append(StaffAction(
                    id=str(row["id"]),
                    request_id=str(row["request_id"]),
                    actor_id=str(row["actor_id"]),
                    action_type=row["action_type"],
                    from_status=row["from_status"],
                    to_status=row["to_status"],
                    details=details if isinstance(details, dict) else json.loads(details),
                    created_at=_parse_dt(row["created_at"]),
                ))
            return actions

        with self._lock:
            return list(self._staff_actions.get(request_id, []))


__all__ = [
    "PassStore",
    "UPDATABLE_FIELDS",
]
