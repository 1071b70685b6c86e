"""
============================================================================
Gate Pass Service Wiring
============================================================================

Reliability Level: L6 Critical

Builds the service graph shared by the HTTP layer, the expiry worker and
the tests:

    DirectoryStore, PassStore
        -> PolicyEngine, EscalationResolver, TrustLedger
        -> RequestLifecycle, GateVerifier, PassExpiryWorker

With a SQLAlchemy session both stores issue SQL; without one they run in
memory.

============================================================================
"""

from dataclasses import dataclass
from typing import Optional, Any
import logging

from services.directory_store import DirectoryStore
from services.escalation_resolver import EscalationResolver
from services.gate_verifier import GateVerifier
from services.pass_config import GatePassConfig
from services.pass_event_bus import PassEventBus, NotificationDispatcher, WebhookSubscriber
from services.pass_expiry_worker import PassExpiryWorker
from services.pass_store import PassStore
from services.policy_engine import PolicyEngine
from services.request_lifecycle import RequestLifecycle
from services.trust_ledger import TrustLedger

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class GatePassServices:
    """Wired gate pass components."""
    config: GatePassConfig
    pass_store: PassStore
    directory: DirectoryStore
    event_bus: PassEventBus
    policy_engine: PolicyEngine
    resolver: EscalationResolver
    trust_ledger: TrustLedger
    lifecycle: RequestLifecycle
    gate: GateVerifier
    expiry_worker: PassExpiryWorker

    def shutdown(self) -> None:
        self.event_bus.shutdown()


def create_event_bus(config: GatePassConfig, async_delivery: bool = True) -> PassEventBus:
    """Event bus with the configured retry policy and optional webhook."""
    dispatcher = NotificationDispatcher(
        max_retries=config.notify_max_retries,
        base_delay=config.notify_base_delay_seconds,
        async_delivery=async_delivery,
    )
    bus = PassEventBus(dispatcher=dispatcher)
    if config.notify_webhook_url:
        bus.add_subscriber(WebhookSubscriber(config.notify_webhook_url))
    return bus


def create_gatepass_services(
    config: Optional[GatePassConfig] = None,
    db_session: Optional[Any] = None,
    event_bus: Optional[PassEventBus] = None,
) -> GatePassServices:
    """
    Wire every gate pass component.

    Args:
        config: GatePassConfig (defaults apply when None)
        db_session: SQLAlchemy session or scoped_session; None for in-memory
        event_bus: Pre-built bus (tests pass a synchronous one)
    """
    config = config or GatePassConfig()
    event_bus = event_bus or create_event_bus(config)

    pass_store = PassStore(db_session=db_session)
    directory = DirectoryStore(db_session=db_session)
    policy_engine = PolicyEngine(directory, config=config)
    resolver = EscalationResolver(directory)
    trust_ledger = TrustLedger(directory, pass_store, event_bus=event_bus, config=config)

    lifecycle = RequestLifecycle(
        pass_store=pass_store,
        directory=directory,
        policy_engine=policy_engine,
        resolver=resolver,
        trust_ledger=trust_ledger,
        event_bus=event_bus,
        config=config,
    )
    gate = GateVerifier(
        pass_store=pass_store,
        directory=directory,
        policy_engine=policy_engine,
        event_bus=event_bus,
        config=config,
    )
    expiry_worker = PassExpiryWorker(pass_store, config=config, event_bus=event_bus)

    logger.info(
        f"[GATEPASS-SERVICES] Services wired | "
        f"storage={'sql' if db_session is not None else 'in-memory'} | "
        f"webhook={'enabled' if config.notify_webhook_url else 'disabled'}"
    )

    return GatePassServices(
        config=config,
        pass_store=pass_store,
        directory=directory,
        event_bus=event_bus,
        policy_engine=policy_engine,
        resolver=resolver,
        trust_ledger=trust_ledger,
        lifecycle=lifecycle,
        gate=gate,
        expiry_worker=expiry_worker,
    )


__all__ = [
    "GatePassServices",
    "create_event_bus",
    "create_gatepass_services",
]
