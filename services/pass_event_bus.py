"""
============================================================================
Gate Pass Event Bus - Best-Effort Notification Delivery
============================================================================

Reliability Level: L5 High
Traceability: Every event carries the request correlation_id

This module decouples the lifecycle from concrete notification channels:
- PassEventBus: thread-safe publish/subscribe with event history
- NotificationDispatcher: background queue that delivers each event to
  each subscriber with exponential backoff and jitter between retries
- WebhookSubscriber: posts events to an external notification service
  using httpx

DELIVERY GUARANTEES:
    Events are published only after the state change they describe has
    been committed. Delivery is best-effort: a subscriber that keeps
    failing is logged (NTF-001) and counted, never propagated back to
    the caller, and never rolls back the transition.

EVENT TYPES:
    - pass.created: Request submitted
    - pass.approval_required: A stage now awaits the named authority
    - pass.decided: Approval stage approved or rejected
    - pass.cancelled: Student cancelled the request
    - pass.gate_logged: Exit or entry recorded at the gate
    - pass.expired: Expiry sweep closed the request
    - trust.adjusted: Trust score changed

ERROR CODES:
    - NTF-001: Delivery failed after all retries

============================================================================
"""

from typing import Optional, Dict, Any, List, Callable, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from queue import Queue, Empty
import json
import logging
import random
import threading
import time
import uuid

import httpx

from app.observability.metrics import record_notification_failure

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

class NotificationErrorCode:
    """Notification-specific error codes for audit logging."""
    DELIVERY_FAILED = "NTF-001"


DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 0.5
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 5.0


# =============================================================================
# Event Type Enum
# =============================================================================

class PassEventType(Enum):
    """Events published by the gate pass services."""
    CREATED = "pass.created"
    APPROVAL_REQUIRED = "pass.approval_required"
    DECIDED = "pass.decided"
    CANCELLED = "pass.cancelled"
    GATE_LOGGED = "pass.gate_logged"
    EXPIRED = "pass.expired"
    TRUST_ADJUSTED = "trust.adjusted"


# =============================================================================
# Event Data Classes
# =============================================================================

@dataclass
class PassEvent:
    """
    Event envelope.

    {
        "type": "pass.decided",
        "recipients": ["student-1"],
        "payload": { ... request data ... },
        "correlation_id": "uuid",
        "timestamp": "ISO8601"
    }
    """
    type: str
    payload: Dict[str, Any]
    recipients: List[str]
    correlation_id: str
    timestamp: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type,
            "recipients": list(self.recipients),
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), default=str)


@dataclass
class PublishResult:
    """Result of a publish call; delivery itself happens later."""
    success: bool
    event_type: str
    correlation_id: str
    subscribers_queued: int
    error_message: Optional[str] = None


# =============================================================================
# NotificationDispatcher Class
# =============================================================================

class NotificationDispatcher:
    """
    Best-effort delivery queue with retry, backoff and jitter.

    With async_delivery=True a daemon worker thread drains the queue.
    With async_delivery=False deliveries run inline in the publisher's
    thread, still isolated from its exceptions (used by tests).

    Reliability Level: L5 High
    Side Effects: Starts a daemon thread in async mode
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        async_delivery: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got: {max_retries}")

        self._max_retries = max_retries
        self._base_delay = base_delay
        self._backoff_multiplier = backoff_multiplier
        self._max_delay = max_delay
        self._async_delivery = async_delivery
        self._sleep = sleep

        self._queue = Queue()  # type: Queue[Tuple[Any, PassEvent]]
        self._worker_thread = None  # type: Optional[threading.Thread]
        self._shutdown_flag = threading.Event()

        self._delivered = 0
        self._failed = 0
        self._stats_lock = threading.Lock()

        if self._async_delivery:
            self._start_worker_thread()

        logger.info(
            f"[NOTIFY-DISPATCHER] Initialized | "
            f"max_retries={max_retries} | "
            f"base_delay={base_delay}s | "
            f"async={async_delivery}"
        )

    def _start_worker_thread(self) -> None:
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            name="PassNotificationWorker",
            daemon=True
        )
        self._worker_thread.start()
        logger.debug("[NOTIFY-DISPATCHER] Background thread started")

    def _worker_loop(self) -> None:
        while not self._shutdown_flag.is_set() or not self._queue.empty():
            try:
                subscriber, event = self._queue.get(timeout=1.0)
            except Empty:
                continue
            try:
                self._deliver(subscriber, event)
            except Exception as e:
                logger.error(
                    f"[NOTIFY-DISPATCHER] Unexpected worker error: {str(e)}"
                )
            finally:
                self._queue.task_done()

    def calculate_delay(self, attempt: int) -> float:
        """Exponential backoff capped at max_delay, plus 0-25% jitter."""
        delay = self._base_delay * (self._backoff_multiplier ** attempt)
        delay = min(delay, self._max_delay)
        jitter = delay * random.uniform(0, 0.25)
        return delay + jitter

    def submit(self, subscriber: Any, event: PassEvent) -> None:
        """Queue one delivery. Never raises."""
        if self._async_delivery and not self._shutdown_flag.is_set():
            self._queue.put((subscriber, event))
            return
        self._deliver(subscriber, event)

    def _deliver(self, subscriber: Any, event: PassEvent) -> bool:
        last_error = None
        for attempt in range(self._max_retries + 1):
            try:
                if hasattr(subscriber, 'on_event') and callable(getattr(subscriber, 'on_event')):
                    subscriber.on_event(event)
                else:
                    subscriber.send(event.to_json())
                with self._stats_lock:
                    self._delivered += 1
                return True
            except Exception as e:
                last_error = e
                if attempt < self._max_retries:
                    delay = self.calculate_delay(attempt)
                    logger.warning(
                        f"[NOTIFY-DISPATCHER] Delivery failed, retrying | "
                        f"attempt={attempt + 1} | "
                        f"delay={delay:.2f}s | "
                        f"subscriber_type={type(subscriber).__name__} | "
                        f"event_type={event.type} | "
                        f"correlation_id={event.correlation_id}"
                    )
                    self._sleep(delay)

        with self._stats_lock:
            self._failed += 1
        record_notification_failure(event.type)
        logger.error(
            f"[{NotificationErrorCode.DELIVERY_FAILED}] Delivery abandoned | "
            f"error={str(last_error)} | "
            f"subscriber_type={type(subscriber).__name__} | "
            f"event_type={event.type} | "
            f"correlation_id={event.correlation_id}"
        )
        return False

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {
                "delivered": self._delivered,
                "failed": self._failed,
                "queued": self._queue.qsize(),
            }

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting work, drain the queue, then stop the worker."""
        if self._worker_thread is None:
            return
        logger.info("[NOTIFY-DISPATCHER] Shutting down...")
        self._shutdown_flag.set()
        self._worker_thread.join(timeout=timeout)
        self._worker_thread = None
        logger.info("[NOTIFY-DISPATCHER] Shutdown complete")


# =============================================================================
# PassEventBus Class
# =============================================================================

class PassEventBus:
    """
    Publish/subscribe bus for gate pass events.

    Subscribers implement on_event(event: PassEvent) or send(message: str).
    Publishing only enqueues deliveries; it never blocks on a subscriber.

    THREAD SAFETY:
        All operations are thread-safe using locks.
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_history_size: int = 100,
    ) -> None:
        if max_history_size <= 0:
            raise ValueError(
                f"max_history_size must be positive, got: {max_history_size}"
            )

        self._dispatcher = dispatcher or NotificationDispatcher()
        self._max_history_size = max_history_size

        self._subscribers: List[Any] = []
        self._subscribers_lock = threading.Lock()

        self._event_history: List[PassEvent] = []
        self._history_lock = threading.Lock()

        self._event_counts: Dict[str, int] = {t.value: 0 for t in PassEventType}
        self._counts_lock = threading.Lock()

        logger.info(
            f"[PASS-EVENT-BUS] Initialized | "
            f"max_history_size={max_history_size}"
        )

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    # =========================================================================
    # Subscriber Management
    # =========================================================================

    def add_subscriber(self, subscriber: Any) -> bool:
        has_on_event = callable(getattr(subscriber, 'on_event', None))
        has_send = callable(getattr(subscriber, 'send', None))

        if not (has_on_event or has_send):
            logger.warning(
                f"[PASS-EVENT-BUS] Invalid subscriber - no on_event/send method | "
                f"subscriber_type={type(subscriber).__name__}"
            )
            return False

        with self._subscribers_lock:
            if subscriber in self._subscribers:
                return False
            self._subscribers.append(subscriber)
            logger.info(
                f"[PASS-EVENT-BUS] Subscriber added | "
                f"subscriber_type={type(subscriber).__name__} | "
                f"total_subscribers={len(self._subscribers)}"
            )
            return True

    def remove_subscriber(self, subscriber: Any) -> bool:
        with self._subscribers_lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
                return True
            return False

    def get_subscriber_count(self) -> int:
        with self._subscribers_lock:
            return len(self._subscribers)

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(
        self,
        event_type: PassEventType,
        payload: Dict[str, Any],
        recipients: Optional[List[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> PublishResult:
        """
        Publish an event to every subscriber. Never raises.

        Args:
            event_type: PassEventType
            payload: Event data (typically the request dict plus a message)
            recipients: Actor ids the event is addressed to
            correlation_id: Audit trail identifier
        """
        event = PassEvent(
            type=event_type.value,
            payload=payload,
            recipients=[r for r in (recipients or []) if r],
            correlation_id=correlation_id or str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        with self._subscribers_lock:
            subscribers = self._subscribers.copy()

        queued = 0
        errors: List[str] = []
        for subscriber in subscribers:
            try:
                self._dispatcher.submit(subscriber, event)
                queued += 1
            except Exception as e:
                errors.append(str(e))
                logger.error(
                    f"[{NotificationErrorCode.DELIVERY_FAILED}] Could not queue delivery | "
                    f"error={str(e)} | "
                    f"event_type={event.type} | "
                    f"correlation_id={event.correlation_id}"
                )

        with self._history_lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history_size:
                self._event_history = self._event_history[-self._max_history_size:]

        with self._counts_lock:
            self._event_counts[event.type] = self._event_counts.get(event.type, 0) + 1

        logger.debug(
            f"[PASS-EVENT-BUS] Event published | "
            f"event_type={event.type} | "
            f"recipients={event.recipients} | "
            f"subscribers_queued={queued} | "
            f"correlation_id={event.correlation_id}"
        )

        return PublishResult(
            success=not errors,
            event_type=event.type,
            correlation_id=event.correlation_id,
            subscribers_queued=queued,
            error_message="; ".join(errors) if errors else None,
        )

    # =========================================================================
    # History and Statistics
    # =========================================================================

    def get_event_history(
        self,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PassEvent]:
        with self._history_lock:
            events = list(self._event_history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def get_event_counts(self) -> Dict[str, int]:
        with self._counts_lock:
            return dict(self._event_counts)

    def clear_history(self) -> None:
        with self._history_lock:
            self._event_history.clear()

    def shutdown(self) -> None:
        self._dispatcher.shutdown()


# =============================================================================
# WebhookSubscriber Class
# =============================================================================

class WebhookSubscriber:
    """
    Forwards events to an external notification service.

    Non-2xx responses raise so the dispatcher retries with backoff.
    """

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)
        logger.info(f"[WEBHOOK-SUBSCRIBER] Initialized | url={url}")

    def on_event(self, event: PassEvent) -> None:
        response = self._client.post(
            self._url,
            json=event.to_dict(),
            headers={"X-Correlation-ID": event.correlation_id},
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


__all__ = [
    "NotificationErrorCode",
    "PassEventType",
    "PassEvent",
    "PublishResult",
    "NotificationDispatcher",
    "PassEventBus",
    "WebhookSubscriber",
]
