"""
============================================================================
Pass Expiry Worker - Background Sweeps for Stale Passes
============================================================================

Reliability Level: L6 Critical
Traceability: Each sweep runs under its own correlation_id

This module implements the PassExpiryWorker background job. Each run
performs two independent bulk sweeps:

    (a) Return time elapsed while still pending or approved (never exited)
        -> expired, gate-free passes included.
    (b) Approved passes (any stage) that need an exit scan, departed more
        than the no-exit buffer ago and never scanned out -> expired.

Both sweeps select in bulk and transition in bulk with the guarded status
predicate, so a request approved or scanned while the sweep runs is
skipped rather than expired. Requesters are notified per row; a failed
notification is logged and skipped.

SCHEDULING:
    Fixed interval plus random jitter. A failing run doubles the wait,
    capped at MAX_BACKOFF_MULTIPLIER intervals, until a run succeeds.

ERROR CODES:
    - EXP-001: Sweep failed (logged, retried on the next run)

============================================================================
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import asyncio
import logging
import random
import time
import uuid

from app.observability.metrics import record_expiry_sweep, record_transition
from services.pass_config import GatePassConfig
from services.pass_event_bus import PassEventType
from services.pass_models import (
    PassRequest,
    PassStatus,
    PRE_EXIT_STATUSES,
    APPROVED_STATUSES,
)
from services.pass_state_machine import bulk_transition

# Configure module logger
logger = logging.getLogger(__name__)


class ExpiryErrorCode:
    """Expiry worker error codes."""
    SWEEP_FAILED = "EXP-001"


MAX_BACKOFF_MULTIPLIER = 8


@dataclass
class ExpirySweepResult:
    """Identifiers moved by one run of both sweeps."""
    correlation_id: str
    expired: List[str] = field(default_factory=list)
    unused_expired: List[str] = field(default_factory=list)
    notification_failures: int = 0
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return len(self.expired) + len(self.unused_expired)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "expired": list(self.expired),
            "unused_expired": list(self.unused_expired),
            "notification_failures": self.notification_failures,
            "duration_seconds": self.duration_seconds,
        }


def _group_by_status(requests: List[PassRequest]) -> Dict[str, List[PassRequest]]:
    groups: Dict[str, List[PassRequest]] = {}
    for request in requests:
        groups.setdefault(request.status, []).append(request)
    return groups


class PassExpiryWorker:
    """
    Background job expiring passes that were never used.

    ============================================================================
    WORKER RESPONSIBILITIES:
    ============================================================================
    1. Run both sweeps at a jittered fixed interval
    2. Transition in bulk through the state machine's guarded predicate
    3. Notify each affected requester
    4. Record sweep duration and counts in Prometheus
    5. Back off after failures without stopping
    ============================================================================

    Reliability Level: L6 Critical
    Side Effects: Database writes, metrics updates, notifications
    """

    def __init__(
        self,
        pass_store: Any,
        config: Optional[GatePassConfig] = None,
        event_bus: Optional[Any] = None,
    ) -> None:
        self._store = pass_store
        self._config = config or GatePassConfig()
        self._event_bus = event_bus
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0

        logger.info(
            f"[EXPIRY-WORKER] Initialized | "
            f"interval_seconds={self._config.expiry_interval_seconds} | "
            f"jitter_seconds={self._config.expiry_jitter_seconds}"
        )

    @property
    def interval_seconds(self) -> int:
        return self._config.expiry_interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # =========================================================================
    # Scheduling
    # =========================================================================

    def next_delay(self) -> float:
        """Seconds until the next run, including backoff and jitter."""
        multiplier = min(2 ** self._consecutive_failures, MAX_BACKOFF_MULTIPLIER)
        base = self._config.expiry_interval_seconds * multiplier
        jitter = random.uniform(0, self._config.expiry_jitter_seconds)
        return base + jitter

    async def start(self) -> None:
        if self._running:
            logger.warning("[EXPIRY-WORKER] Already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("[EXPIRY-WORKER] Started")

    async def stop(self) -> None:
        if not self._running:
            logger.warning("[EXPIRY-WORKER] Not running, ignoring stop request")
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("[EXPIRY-WORKER] Stopped")

    async def _run_loop(self) -> None:
        logger.info("[EXPIRY-WORKER] Starting main loop")

        while self._running:
            try:
                result = await asyncio.to_thread(self.process_expired)
                self._consecutive_failures = 0
                if result.total > 0:
                    logger.info(
                        f"[EXPIRY-WORKER] Sweep moved {result.total} requests | "
                        f"correlation_id={result.correlation_id}"
                    )
            except Exception as e:
                self._consecutive_failures += 1
                logger.error(
                    f"[{ExpiryErrorCode.SWEEP_FAILED}] Error in main loop | "
                    f"consecutive_failures={self._consecutive_failures} | "
                    f"error={str(e)}"
                )

            try:
                await asyncio.sleep(self.next_delay())
            except asyncio.CancelledError:
                break

        logger.info("[EXPIRY-WORKER] Main loop exited")

    # =========================================================================
    # process_expired() Method
    # =========================================================================

    def process_expired(self, now: Optional[datetime] = None) -> ExpirySweepResult:
        """
        Run both sweeps once.

        ========================================================================
        SWEEP PROCEDURE:
        ========================================================================
        1. Select requests in pre-exit statuses whose return time passed
        2. Group by current status
        3. Bulk transition each group to expired with the guarded predicate
        4. Select approved passes departed before now - no-exit buffer
           with no exit log; bulk transition each status group to expired
        5. Notify each expired requester
        6. Record duration and counts
        ========================================================================
        """
        started = time.monotonic()
        now = now or datetime.now(timezone.utc)
        result = ExpirySweepResult(correlation_id=str(uuid.uuid4()))

        # Steps 1-3: return time elapsed
        elapsed = self._store.select_return_elapsed(PRE_EXIT_STATUSES, now)
        for current, requests in _group_by_status(elapsed).items():
            moved = self._transition_group(
                requests, current, PassStatus.EXPIRED.value, now, result.correlation_id,
            )
            result.expired.extend(r.id for r in moved)
            result.notification_failures += self._notify(
                moved, "Your pass expired, the return time passed before it was used"
            )

        # Steps 4-5: approved but never scanned out
        cutoff = now - timedelta(hours=self._config.no_exit_expiry_hours)
        unused = self._store.select_unused_approved(APPROVED_STATUSES, cutoff)
        for current, requests in _group_by_status(unused).items():
            moved = self._transition_group(
                requests, current, PassStatus.EXPIRED.value, now, result.correlation_id,
            )
            result.unused_expired.extend(r.id for r in moved)
            result.notification_failures += self._notify(
                moved, "Your pass expired, no exit was recorded after departure time"
            )

        # Step 6: Metrics
        result.duration_seconds = time.monotonic() - started
        record_expiry_sweep(
            result.duration_seconds,
            expired=len(result.expired),
            unused_expired=len(result.unused_expired),
        )

        logger.debug(
            f"[EXPIRY-WORKER] Sweep complete | "
            f"expired={len(result.expired)} | "
            f"unused_expired={len(result.unused_expired)} | "
            f"correlation_id={result.correlation_id}"
        )
        return result

    def _transition_group(
        self,
        requests: List[PassRequest],
        current: str,
        target: str,
        now: datetime,
        correlation_id: str,
    ) -> List[PassRequest]:
        moved_ids = set(bulk_transition(
            self._store,
            [r.id for r in requests],
            current_state=current,
            target_state=target,
            correlation_id=correlation_id,
            now=now,
        ))
        if moved_ids:
            record_transition(current, target, count=len(moved_ids))
        skipped = len(requests) - len(moved_ids)
        if skipped:
            logger.info(
                f"[EXPIRY-WORKER] Skipped requests that changed state during the sweep | "
                f"skipped={skipped} | "
                f"{current} -> {target} | "
                f"correlation_id={correlation_id}"
            )
        return [r for r in requests if r.id in moved_ids]

    def _notify(self, requests: List[PassRequest], message: str) -> int:
        if self._event_bus is None:
            return 0
        failures = 0
        for request in requests:
            published = self._event_bus.publish(
                PassEventType.EXPIRED,
                payload={"request_id": request.id, "message": message},
                recipients=[request.student_id],
                correlation_id=request.correlation_id,
            )
            if not published.success:
                failures += 1
                logger.error(
                    f"[{ExpiryErrorCode.SWEEP_FAILED}] Expiry notification not queued | "
                    f"request_id={request.id} | "
                    f"error={published.error_message} | "
                    f"correlation_id={request.correlation_id}"
                )
        return failures


# =============================================================================
# Factory Functions
# =============================================================================

_expiry_worker_instance: Optional[PassExpiryWorker] = None


def get_pass_expiry_worker(
    pass_store: Optional[Any] = None,
    config: Optional[GatePassConfig] = None,
    event_bus: Optional[Any] = None,
) -> PassExpiryWorker:
    """Get or create the singleton PassExpiryWorker instance."""
    global _expiry_worker_instance

    if _expiry_worker_instance is None:
        if pass_store is None:
            raise ValueError("pass_store is required to create the expiry worker")
        _expiry_worker_instance = PassExpiryWorker(
            pass_store=pass_store,
            config=config,
            event_bus=event_bus,
        )

    return _expiry_worker_instance


def reset_pass_expiry_worker() -> None:
    """Reset the singleton instance (for testing)."""
    global _expiry_worker_instance
    _expiry_worker_instance = None


__all__ = [
    "ExpiryErrorCode",
    "ExpirySweepResult",
    "PassExpiryWorker",
    "MAX_BACKOFF_MULTIPLIER",
    "get_pass_expiry_worker",
    "reset_pass_expiry_worker",
]
