import pytest

from careroute.collection import CollectionStateMachine
from careroute.config import Settings
from careroute.database import CareRouteDatabase
from careroute.escalation import EscalationTimer
from careroute.lab_sla import LabSlaMonitor
from careroute.scheduler import AssignmentScheduler
from factories import NOW, OPERATOR, Clock, RecordingNotifier


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def settings() -> Settings:
    return Settings(operator_ids=[OPERATOR], slot_timezone="UTC")


@pytest.fixture
def db() -> CareRouteDatabase:
    return CareRouteDatabase()


@pytest.fixture
def notifier(settings: Settings) -> RecordingNotifier:
    return RecordingNotifier(operator_ids=settings.operator_ids)


@pytest.fixture
def scheduler(db, notifier, settings, clock) -> AssignmentScheduler:
    return AssignmentScheduler(db, notifier, settings, now_fn=clock)


@pytest.fixture
def collection(db, scheduler, notifier, settings, clock) -> CollectionStateMachine:
    return CollectionStateMachine(db, scheduler, notifier, settings, now_fn=clock)


@pytest.fixture
def timer(db, scheduler, notifier, settings, clock) -> EscalationTimer:
    return EscalationTimer(db, scheduler, notifier, settings, now_fn=clock)


@pytest.fixture
def lab_sla(db, scheduler, notifier, settings, clock) -> LabSlaMonitor:
    return LabSlaMonitor(db, scheduler, notifier, settings, now_fn=clock)
