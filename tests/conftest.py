"""
============================================================================
Shared Test Builders - Campus Gate Pass
============================================================================

A small campus used across the suite:

    Department cse:  mentor-1, mentor-2 (mentors), hod-1 (department head)
    Department ece:  hod-2
    Residence h1:    warden-1
    Gate:            gate-1
    Admin:           admin-1

    ds-1   day scholar, cse, year 3, register 21CS001, mentor mentor-1
    res-1  resident,    cse, year 2, register 21CS002, mentor mentor-1, h1

NOW is Monday 2026-10-19 08:00 UTC, so default rest days (Sat/Sun) never
interfere unless a test moves the clock on purpose.

Every service is wired in memory with a synchronous event bus, so
notifications are observable through RecordingSubscriber without
threads or sleeps.
============================================================================
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.gatepass_services import GatePassServices, create_gatepass_services
from services.pass_config import GatePassConfig
from services.pass_event_bus import PassEventBus, NotificationDispatcher, PassEvent
from services.pass_models import (
    ActorRole,
    PassRequest,
    StaffMember,
    Student,
    StudentCategory,
)
from services.request_lifecycle import ReviewDecision


NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)

TEST_SECRET = "campus-gatepass-test-secret-0123456789"


# =============================================================================
# Builders
# =============================================================================

class RecordingSubscriber:
    """Collects every delivered event."""

    def __init__(self) -> None:
        self.events: List[PassEvent] = []

    def on_event(self, event: PassEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[PassEvent]:
        return [e for e in self.events if e.type == event_type]


def make_config(**overrides) -> GatePassConfig:
    overrides.setdefault("token_secret", TEST_SECRET)
    return GatePassConfig(**overrides)


def make_bus() -> PassEventBus:
    return PassEventBus(
        dispatcher=NotificationDispatcher(async_delivery=False, sleep=lambda seconds: None)
    )


def seed_campus(directory) -> None:
    for staff in (
        StaffMember("mentor-1", ActorRole.MENTOR.value, "Mentor One", department_id="cse"),
        StaffMember("mentor-2", ActorRole.MENTOR.value, "Mentor Two", department_id="cse"),
        StaffMember("hod-1", ActorRole.HOD.value, "Head CSE", department_id="cse"),
        StaffMember("hod-2", ActorRole.HOD.value, "Head ECE", department_id="ece"),
        StaffMember("warden-1", ActorRole.WARDEN.value, "Warden H1", residence_id="h1"),
        StaffMember("gate-1", ActorRole.GATEKEEPER.value, "Main Gate"),
        StaffMember("admin-1", ActorRole.ADMIN.value, "Registrar"),
    ):
        directory.upsert_staff(staff)

    directory.upsert_student(Student(
        student_id="ds-1",
        name="Asha",
        category=StudentCategory.DAY_SCHOLAR.value,
        mentor_id="mentor-1",
        department_id="cse",
        register_number="21CS001",
        academic_year=3,
    ))
    directory.upsert_student(Student(
        student_id="res-1",
        name="Ravi",
        category=StudentCategory.RESIDENT.value,
        mentor_id="mentor-1",
        department_id="cse",
        residence_id="h1",
        register_number="21CS002",
        academic_year=2,
    ))


def build_services(config: Optional[GatePassConfig] = None) -> GatePassServices:
    services = create_gatepass_services(config=config or make_config(), event_bus=make_bus())
    seed_campus(services.directory)
    return services


def submit(
    services: GatePassServices,
    student_id: str = "res-1",
    pass_category: str = "outing",
    departure_in: timedelta = timedelta(hours=1),
    duration: timedelta = timedelta(hours=5),
    now: datetime = NOW,
) -> PassRequest:
    departure = now + departure_in
    return services.lifecycle.create(
        student_id=student_id,
        pass_category=pass_category,
        reason="Family visit",
        departure_at=departure,
        return_at=departure + duration,
        now=now,
    )


def approve_to_final(
    services: GatePassServices,
    request: PassRequest,
    now: datetime = NOW,
) -> PassRequest:
    """Walk a request through every approval stage its holder needs."""
    lifecycle = services.lifecycle
    request = lifecycle.review(request.id, "mentor-1", ReviewDecision.APPROVE, now=now)
    request = lifecycle.review(request.id, "hod-1", ReviewDecision.APPROVE, now=now)
    if request.status == "approved_stage2":
        request = lifecycle.verify(request.id, "warden-1", ReviewDecision.APPROVE, now=now)
    return request


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def services() -> GatePassServices:
    return build_services()


@pytest.fixture
def recorder(services: GatePassServices) -> RecordingSubscriber:
    subscriber = RecordingSubscriber()
    services.event_bus.add_subscriber(subscriber)
    return subscriber
