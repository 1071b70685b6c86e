"""
============================================================================
Directory Store - Students, Staff, Calendar and Policy Configuration
============================================================================

Reliability Level: L6 Critical

The DirectoryStore holds the records the gate pass services consult but do
not own the lifecycle of:
- students (trust score, pass block, cooldown override)
- staff members (role, department, residence)
- staff leave windows and delegation grants
- department year restrictions
- calendar holidays
- pass policies keyed by (student category, pass category)
- trust_history: append-only audit of every trust score change

PERSISTENCE PATHS:
    Same dual path as PassStore: sqlalchemy.text() SQL with commit/rollback
    when a session is supplied, thread-safe in-memory dicts otherwise.

ATOMICITY:
    record_trust_change() reads, clamps, updates and appends the history row
    in one transaction (SELECT ... FOR UPDATE in SQL, one lock in memory).
    activate_delegation() deactivates the authority's prior grant and
    inserts the new one in one transaction.

ERROR CODES:
    - NF-002: Student or staff member not found
    - SYS-500: Persistence failure

============================================================================
"""

from typing import Optional, Dict, Any, List, Callable, Tuple
from datetime import date, datetime
import dataclasses
import logging
import threading

from sqlalchemy import text

from services.pass_errors import PassErrorCode, NotFoundError, PassSystemError
from services.pass_models import (
    Student,
    StaffMember,
    LeaveRecord,
    DelegationGrant,
    YearRestriction,
    CalendarException,
    PassPolicy,
    TrustAdjustment,
    ActorRole,
    compute_audit_hash,
    new_id,
    _parse_dt,
    _parse_date,
)

# Configure module logger
logger = logging.getLogger(__name__)


STUDENT_COLUMNS = (
    "student_id, name, category, trust_score, pass_blocked, cooldown_override_at, "
    "mentor_id, department_id, residence_id, register_number, academic_year, is_active"
)

POLICY_COLUMNS = (
    "policy_id, student_category, pass_category, gate_action, working_start, "
    "working_end, holiday_behavior, holiday_start, holiday_end, max_duration_hours"
)


class DirectoryStore:
    """
    Directory and configuration persistence.

    Reliability Level: L6 Critical
    Input Constraints: db_session should be a SQLAlchemy session or None
    Side Effects: Database writes (SQL path), logs all failures
    """

    def __init__(self, db_session: Optional[Any] = None) -> None:
        self._db_session = db_session
        self._lock = threading.RLock()

        # In-memory storage for running without a database
        self._students: Dict[str, Student] = {}
        self._staff: Dict[str, StaffMember] = {}
        self._leaves: Dict[str, List[LeaveRecord]] = {}
        self._delegations: List[DelegationGrant] = []
        self._year_restrictions: Dict[Tuple[str, int], YearRestriction] = {}
        self._holidays: Dict[date, CalendarException] = {}
        self._policies: Dict[str, PassPolicy] = {}
        self._trust_history: Dict[str, List[TrustAdjustment]] = {}
        self._next_policy_id = 1

        logger.info(
            f"[DIRECTORY-STORE] Store initialized | "
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
        except Exception as e:
            self._db_session.rollback()
            logger.error(f"[{PassErrorCode.SYSTEM_FAILURE}] Write failed: {str(e)}")
            raise PassSystemError(f"Persistence failure: {str(e)}") from e

    def _read(self, query: Any, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            result = self._db_session.execute(query, params)
            return [dict(row) for row in result.mappings().all()]
        except Exception as e:
            logger.error(f"[{PassErrorCode.SYSTEM_FAILURE}] Query failed: {str(e)}")
            raise PassSystemError(f"Persistence failure: {str(e)}") from e

    # =========================================================================
    # Students
    # =========================================================================

    def upsert_student(self, student: Student) -> Student:
        if self._db_session is not None:
            query = text(f"""
                INSERT INTO students ({STUDENT_COLUMNS})
                VALUES (
                    :student_id, :name, :category, :trust_score, :pass_blocked,
                    :cooldown_override_at, :mentor_id, :department_id,
                    :residence_id, :register_number, :academic_year, :is_active
                )
                ON CONFLICT (student_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    category = EXCLUDED.category,
                    mentor_id = EXCLUDED.mentor_id,
                    department_id = EXCLUDED.department_id,
                    residence_id = EXCLUDED.residence_id,
                    register_number = EXCLUDED.register_number,
                    academic_year = EXCLUDED.academic_year,
                    is_active = EXCLUDED.is_active
            """)
            self._write(query, dataclasses.asdict(student))
            return student

        with self._lock:
            self._students[student.student_id] = dataclasses.replace(student)
        return student

    def get_student(self, student_id: str) -> Optional[Student]:
        if self._db_session is not None:
            rows = self._read(
                text(f"SELECT {STUDENT_COLUMNS} FROM students WHERE student_id = :student_id"),
                {"student_id": student_id},
            )
            return Student.from_dict(rows[0]) if rows else None

        with self._lock:
            student = self._students.get(student_id)
            return dataclasses.replace(student) if student else None

    def require_student(self, student_id: str, correlation_id: Optional[str] = None) -> Student:
        """
        Raises:
            NotFoundError: NF-002 if the student is unknown
        """
        student = self.get_student(student_id)
        if student is None:
            raise NotFoundError(
                f"Student not found: {student_id}",
                error_code=PassErrorCode.ACTOR_NOT_FOUND,
                correlation_id=correlation_id,
            )
        return student

    def find_student_by_register(self, register_number: str) -> Optional[Student]:
        if self._db_session is not None:
            rows = self._read(
                text(f"SELECT {STUDENT_COLUMNS} FROM students WHERE register_number = :reg"),
                {"reg": register_number},
            )
            return Student.from_dict(rows[0]) if rows else None

        with self._lock:
            for student in self._students.values():
                if student.register_number == register_number:
                    return dataclasses.replace(student)
        return None

    def set_pass_blocked(self, student_id: str, blocked: bool) -> int:
        if self._db_session is not None:
            query = text("""
                UPDATE students SET pass_blocked = :blocked
                WHERE student_id = :student_id
            """)
            return self._write(query, {"student_id": student_id, "blocked": blocked}).rowcount

        with self._lock:
            student = self._students.get(student_id)
            if student is None:
                return 0
            self._students[student_id] = dataclasses.replace(student, pass_blocked=blocked)
            return 1

    def set_cooldown_override(self, student_id: str, override_at: datetime) -> int:
        if self._db_session is not None:
            query = text("""
                UPDATE students SET cooldown_override_at = :override_at
                WHERE student_id = :student_id
            """)
            return self._write(
                query, {"student_id": student_id, "override_at": override_at}
            ).rowcount

        with self._lock:
            student = self._students.get(student_id)
            if student is None:
                return 0
            self._students[student_id] = dataclasses.replace(
                student, cooldown_override_at=override_at
            )
            return 1

    # =========================================================================
    # Trust score and history
    # =========================================================================

    def record_trust_change(
        self,
        student_id: str,
        compute: Callable[[int], int],
        adjusted_by: str,
        reason: str,
        now: datetime,
    ) -> TrustAdjustment:
        """
        Atomically apply compute(old_score) and append the history row.

        compute must return a score already clamped to 0..100.

        Raises:
            NotFoundError: NF-002 if the student is unknown
        """
        if self._db_session is not None:
            try:
                rows = self._db_session.execute(
                    text("""
                        SELECT trust_score FROM students
                        WHERE student_id = :student_id
                        FOR UPDATE
                    """),
                    {"student_id": student_id},
                ).fetchall()
                if not rows:
                    self._db_session.rollback()
                    raise NotFoundError(
                        f"Student not found: {student_id}",
                        error_code=PassErrorCode.ACTOR_NOT_FOUND,
                    )
                old_score = int(rows[0][0])
                adjustment = self._build_adjustment(
                    student_id, old_score, compute(old_score), adjusted_by, reason, now
                )
                self._db_session.execute(
                    text("""
                        UPDATE students SET trust_score = :new_score
                        WHERE student_id = :student_id
                    """),
                    {"student_id": student_id, "new_score": adjustment.new_score},
                )
                self._db_session.execute(
                    text("""
                        INSERT INTO trust_history (
                            id, student_id, adjusted_by, old_score, new_score,
                            reason, row_hash, created_at
                        ) VALUES (
                            :id, :student_id, :adjusted_by, :old_score, :new_score,
                            :reason, :row_hash, :created_at
                        )
                    """),
                    dataclasses.asdict(adjustment),
                )
                self._db_session.commit()
                return adjustment
            except NotFoundError:
                raise
            except Exception as e:
                self._db_session.rollback()
                logger.error(
                    f"[{PassErrorCode.SYSTEM_FAILURE}] Trust update failed: {str(e)} | "
                    f"student_id={student_id}"
                )
                raise PassSystemError(f"Persistence failure: {str(e)}") from e

        with self._lock:
            student = self._students.get(student_id)
            if student is None:
                raise NotFoundError(
                    f"Student not found: {student_id}",
                    error_code=PassErrorCode.ACTOR_NOT_FOUND,
                )
            adjustment = self._build_adjustment(
                student_id, student.trust_score, compute(student.trust_score),
                adjusted_by, reason, now,
            )
            self._students[student_id] = dataclasses.replace(
                student, trust_score=adjustment.new_score
            )
            self._trust_history.setdefault(student_id, []).append(adjustment)
            return adjustment

    @staticmethod
    def _build_adjustment(
        student_id: str,
        old_score: int,
        new_score: int,
        adjusted_by: str,
        reason: str,
        now: datetime,
    ) -> TrustAdjustment:
        adjustment = TrustAdjustment(
            id=new_id(),
            student_id=student_id,
            adjusted_by=adjusted_by,
            old_score=old_score,
            new_score=new_score,
            reason=reason,
            created_at=now,
        )
        adjustment.row_hash = compute_audit_hash(adjustment.hash_payload())
        return adjustment

    def list_trust_history(self, student_id: str) -> List[TrustAdjustment]:
        """Trust adjustments for a student, newest first."""
        if self._db_session is not None:
            query = text("""
                SELECT id, student_id, adjusted_by, old_score, new_score,
                       reason, row_hash, created_at
                FROM trust_history
                WHERE student_id = :student_id
                ORDER BY created_at DESC
            """)
            return [
                TrustAdjustment(
                    id=str(row["id"]),
                    student_id=str(row["student_id"]),
                    adjusted_by=str(row["adjusted_by"]),
                    old_score=int(row["old_score"]),
                    new_score=int(row["new_score"]),
                    reason=row["reason"],
                    created_at=_parse_dt(row["created_at"]),
                    row_hash=row.get("row_hash"),
                )
                for row in self._read(query, {"student_id": student_id})
            ]

        with self._lock:
            history = list(self._trust_history.get(student_id, []))
        return list(reversed(history))

    # =========================================================================
    # Staff
    # =========================================================================

    def upsert_staff(self, staff: StaffMember) -> StaffMember:
        if self._db_session is not None:
            query = text("""
                INSERT INTO staff (actor_id, role, name, department_id, residence_id)
                VALUES (:actor_id, :role, :name, :department_id, :residence_id)
                ON CONFLICT (actor_id) DO UPDATE SET
                    role = EXCLUDED.role,
                    name = EXCLUDED.name,
                    department_id = EXCLUDED.department_id,
                    residence_id = EXCLUDED.residence_id
            """)
            self._write(query, dataclasses.asdict(staff))
            return staff

        with self._lock:
            self._staff[staff.actor_id] = dataclasses.replace(staff)
        return staff

    def get_staff(self, actor_id: str) -> Optional[StaffMember]:
        if self._db_session is not None:
            rows = self._read(
                text("""
                    SELECT actor_id, role, name, department_id, residence_id
                    FROM staff WHERE actor_id = :actor_id
                """),
                {"actor_id": actor_id},
            )
            return self._staff_from_row(rows[0]) if rows else None

        with self._lock:
            staff = self._staff.get(actor_id)
            return dataclasses.replace(staff) if staff else None

    def find_department_head(self, department_id: Optional[str]) -> Optional[StaffMember]:
        return self._find_staff_by(ActorRole.HOD.value, "department_id", department_id)

    def find_hostel_authority(self, residence_id: Optional[str]) -> Optional[StaffMember]:
        return self._find_staff_by(ActorRole.WARDEN.value, "residence_id", residence_id)

    def _find_staff_by(self, role: str, column: str, value: Optional[str]) -> Optional[StaffMember]:
        if value is None:
            return None

        if self._db_session is not None:
            query = text(f"""
                SELECT actor_id, role, name, department_id, residence_id
                FROM staff
                WHERE role = :role AND {column} = :value
                ORDER BY actor_id
                LIMIT 1
            """)
            rows = self._read(query, {"role": role, "value": value})
            return self._staff_from_row(rows[0]) if rows else None

        with self._lock:
            matches = sorted(
                (s for s in self._staff.values() if s.role == role and getattr(s, column) == value),
                key=lambda s: s.actor_id,
            )
        return dataclasses.replace(matches[0]) if matches else None

    @staticmethod
    def _staff_from_row(row: Dict[str, Any]) -> StaffMember:
        return StaffMember(
            actor_id=str(row["actor_id"]),
            role=row["role"],
            name=row.get("name") or "",
            department_id=row.get("department_id"),
            residence_id=row.get("residence_id"),
        )

    # =========================================================================
    # Staff leave
    # =========================================================================

    def add_leave(self, leave: LeaveRecord) -> LeaveRecord:
        if self._db_session is not None:
            query = text("""
                INSERT INTO staff_leaves (id, actor_id, starts_on, ends_on, status, leave_type, reason)
                VALUES (:id, :actor_id, :starts_on, :ends_on, :status, :leave_type, :reason)
            """)
            self._write(query, dataclasses.asdict(leave))
            return leave

        with self._lock:
            self._leaves.setdefault(leave.actor_id, []).append(dataclasses.replace(leave))
        return leave

    def list_leaves(self, actor_id: str) -> List[LeaveRecord]:
        if self._db_session is not None:
            query = text("""
                SELECT id, actor_id, starts_on, ends_on, status, leave_type, reason
                FROM staff_leaves
                WHERE actor_id = :actor_id
                ORDER BY starts_on ASC
            """)
            return [
                LeaveRecord(
                    id=str(row["id"]),
                    actor_id=str(row["actor_id"]),
                    starts_on=_parse_date(row["starts_on"]),
                    ends_on=_parse_date(row["ends_on"]),
                    status=row["status"],
                    leave_type=row.get("leave_type") or "",
                    reason=row.get("reason") or "",
                )
                for row in self._read(query, {"actor_id": actor_id})
            ]

        with self._lock:
            return sorted(self._leaves.get(actor_id, []), key=lambda leave: leave.starts_on)

    def is_on_leave(self, actor_id: Optional[str], day: date) -> bool:
        if actor_id is None:
            return False
        return any(leave.covers(day) for leave in self.list_leaves(actor_id))

    # =========================================================================
    # Delegation grants
    # =========================================================================

    def activate_delegation(self, grant: DelegationGrant) -> DelegationGrant:
        """Deactivate the authority's current grant and insert the new one."""
        if self._db_session is not None:
            try:
                self._db_session.execute(
                    text("""
                        UPDATE delegations SET is_active = FALSE
                        WHERE authority_id = :authority_id AND is_active = TRUE
                    """),
                    {"authority_id": grant.authority_id},
                )
                self._db_session.execute(
                    text("""
                        INSERT INTO delegations (
                            id, authority_id, delegate_id, starts_on, ends_on,
                            is_active, created_at
                        ) VALUES (
                            :id, :authority_id, :delegate_id, :starts_on, :ends_on,
                            :is_active, :created_at
                        )
                    """),
                    dataclasses.asdict(grant),
                )
                self._db_session.commit()
                return grant
            except Exception as e:
                self._db_session.rollback()
                logger.error(
                    f"[{PassErrorCode.SYSTEM_FAILURE}] Delegation grant failed: {str(e)} | "
                    f"authority_id={grant.authority_id}"
                )
                raise PassSystemError(f"Persistence failure: {str(e)}") from e

        with self._lock:
            self._delegations = [
                dataclasses.replace(g, is_active=False) if g.authority_id == grant.authority_id else g
                for g in self._delegations
            ]
            self._delegations.append(dataclasses.replace(grant))
        return grant

    def revoke_delegation(self, authority_id: str) -> int:
        if self._db_session is not None:
            query = text("""
                UPDATE delegations SET is_active = FALSE
                WHERE authority_id = :authority_id AND is_active = TRUE
            """)
            return self._write(query, {"authority_id": authority_id}).rowcount

        revoked = 0
        with self._lock:
            updated = []
            for g in self._delegations:
                if g.authority_id == authority_id and g.is_active:
                    g = dataclasses.replace(g, is_active=False)
                    revoked += 1
                updated.append(g)
            self._delegations = updated
        return revoked

    def list_active_delegations(
        self,
        authority_id: Optional[str] = None,
        delegate_id: Optional[str] = None,
    ) -> List[DelegationGrant]:
        """Active grants (regardless of window) filtered by authority or delegate."""
        if self._db_session is not None:
            clauses = ["is_active = TRUE"]
            params: Dict[str, Any] = {}
            if authority_id is not None:
                clauses.append("authority_id = :authority_id")
                params["authority_id"] = authority_id
            if delegate_id is not None:
                clauses.append("delegate_id = :delegate_id")
                params["delegate_id"] = delegate_id
            query = text(f"""
                SELECT id, authority_id, delegate_id, starts_on, ends_on, is_active, created_at
                FROM delegations
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC
            """)
            return [
                DelegationGrant(
                    id=str(row["id"]),
                    authority_id=str(row["authority_id"]),
                    delegate_id=str(row["delegate_id"]),
                    starts_on=_parse_date(row["starts_on"]),
                    ends_on=_parse_date(row["ends_on"]),
                    is_active=bool(row["is_active"]),
                    created_at=_parse_dt(row.get("created_at")),
                )
                for row in self._read(query, params)
            ]

        with self._lock:
            return [
                dataclasses.replace(g) for g in self._delegations
                if g.is_active
                and (authority_id is None or g.authority_id == authority_id)
                and (delegate_id is None or g.delegate_id == delegate_id)
            ]

    # =========================================================================
    # Year restrictions
    # =========================================================================

    def set_year_restriction(self, restriction: YearRestriction) -> YearRestriction:
        if self._db_session is not None:
            query = text("""
                INSERT INTO year_restrictions (department_id, academic_year, reason)
                VALUES (:department_id, :academic_year, :reason)
                ON CONFLICT (department_id, academic_year) DO UPDATE SET
                    reason = EXCLUDED.reason
            """)
            self._write(query, dataclasses.asdict(restriction))
            return restriction

        with self._lock:
            key = (restriction.department_id, restriction.academic_year)
            self._year_restrictions[key] = dataclasses.replace(restriction)
        return restriction

    def remove_year_restriction(self, department_id: str, academic_year: int) -> int:
        if self._db_session is not None:
            query = text("""
                DELETE FROM year_restrictions
                WHERE department_id = :department_id AND academic_year = :academic_year
            """)
            return self._write(
                query, {"department_id": department_id, "academic_year": academic_year}
            ).rowcount

        with self._lock:
            return 1 if self._year_restrictions.pop((department_id, academic_year), None) else 0

    def get_year_restriction(
        self,
        department_id: Optional[str],
        academic_year: Optional[int],
    ) -> Optional[YearRestriction]:
        if department_id is None or academic_year is None:
            return None

        if self._db_session is not None:
            rows = self._read(
                text("""
                    SELECT department_id, academic_year, reason FROM year_restrictions
                    WHERE department_id = :department_id AND academic_year = :academic_year
                """),
                {"department_id": department_id, "academic_year": academic_year},
            )
            if not rows:
                return None
            row = rows[0]
            return YearRestriction(
                department_id=str(row["department_id"]),
                academic_year=int(row["academic_year"]),
                reason=row.get("reason") or "",
            )

        with self._lock:
            restriction = self._year_restrictions.get((department_id, academic_year))
            return dataclasses.replace(restriction) if restriction else None

    # =========================================================================
    # Calendar
    # =========================================================================

    def add_holiday(self, holiday: CalendarException) -> CalendarException:
        if self._db_session is not None:
            query = text("""
                INSERT INTO holidays (holiday_date, title, kind)
                VALUES (:holiday_date, :title, :kind)
                ON CONFLICT (holiday_date) DO UPDATE SET
                    title = EXCLUDED.title,
                    kind = EXCLUDED.kind
            """)
            self._write(query, dataclasses.asdict(holiday))
            return holiday

        with self._lock:
            self._holidays[holiday.holiday_date] = dataclasses.replace(holiday)
        return holiday

    def list_holidays(self) -> List[CalendarException]:
        if self._db_session is not None:
            query = text("SELECT holiday_date, title, kind FROM holidays ORDER BY holiday_date")
            return [
                CalendarException(
                    holiday_date=_parse_date(row["holiday_date"]),
                    title=row.get("title") or "",
                    kind=row.get("kind") or "holiday",
                )
                for row in self._read(query, {})
            ]

        with self._lock:
            return [self._holidays[day] for day in sorted(self._holidays)]

    def is_holiday_date(self, day: date) -> bool:
        if self._db_session is not None:
            rows = self._read(
                text("SELECT 1 AS hit FROM holidays WHERE holiday_date = :day"),
                {"day": day},
            )
            return bool(rows)

        with self._lock:
            return day in self._holidays

    # =========================================================================
    # Policies
    # =========================================================================

    def upsert_policy(self, policy: PassPolicy) -> PassPolicy:
        if self._db_session is not None:
            query = text(f"""
                INSERT INTO pass_policies ({POLICY_COLUMNS.replace('policy_id, ', '')})
                VALUES (
                    :student_category, :pass_category, :gate_action, :working_start,
                    :working_end, :holiday_behavior, :holiday_start, :holiday_end,
                    :max_duration_hours
                )
                ON CONFLICT (student_category, pass_category) DO UPDATE SET
                    gate_action = EXCLUDED.gate_action,
                    working_start = EXCLUDED.working_start,
                    working_end = EXCLUDED.working_end,
                    holiday_behavior = EXCLUDED.holiday_behavior,
                    holiday_start = EXCLUDED.holiday_start,
                    holiday_end = EXCLUDED.holiday_end,
                    max_duration_hours = EXCLUDED.max_duration_hours
                RETURNING policy_id
            """)
            params = dataclasses.asdict(policy)
            params.pop("policy_id")
            params.pop("source")
            result = self._write(query, params)
            row = result.fetchone()
            return dataclasses.replace(policy, policy_id=row[0] if row else None, source="table")

        with self._lock:
            existing = self._policies.get(policy.key)
            policy_id = existing.policy_id if existing else self._next_policy_id
            if existing is None:
                self._next_policy_id += 1
            stored = dataclasses.replace(policy, policy_id=policy_id, source="table")
            self._policies[policy.key] = stored
        return dataclasses.replace(stored)

    def get_policy(self, student_category: str, pass_category: str) -> Optional[PassPolicy]:
        if self._db_session is not None:
            rows = self._read(
                text(f"""
                    SELECT {POLICY_COLUMNS} FROM pass_policies
                    WHERE student_category = :student_category
                      AND pass_category = :pass_category
                """),
                {"student_category": student_category, "pass_category": pass_category},
            )
            return PassPolicy.from_dict(rows[0]) if rows else None

        with self._lock:
            policy = self._policies.get(f"{student_category}:{pass_category}")
            return dataclasses.replace(policy) if policy else None

    def list_policies(self) -> List[PassPolicy]:
        if self._db_session is not None:
            query = text(f"""
                SELECT {POLICY_COLUMNS} FROM pass_policies
                ORDER BY student_category, pass_category
            """)
            return [PassPolicy.from_dict(row) for row in self._read(query, {})]

        with self._lock:
            return [dataclasses.replace(self._policies[k]) for k in sorted(self._policies)]

    def delete_policy(self, student_category: str, pass_category: str) -> int:
        if self._db_session is not None:
            query = text("""
                DELETE FROM pass_policies
                WHERE student_category = :student_category AND pass_category = :pass_category
            """)
            return self._write(
                query, {"student_category": student_category, "pass_category": pass_category}
            ).rowcount

        with self._lock:
            return 1 if self._policies.pop(f"{student_category}:{pass_category}", None) else 0


__all__ = [
    "DirectoryStore",
]
