import os

# Settings and the engine are built at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["DISPATCH_ENABLED"] = "false"

from datetime import datetime, timedelta

import pytest

from deadswitch.db.init_db import create_tables
from deadswitch.db.session import SessionLocal, engine
from deadswitch.main import app
from deadswitch.models.base import Base
from deadswitch.models.message import Message
from deadswitch.services.conditions import ConditionService
from deadswitch.services.dispatcher import Dispatcher
from deadswitch.services.events import EventNotifier, GLOBAL
from deadswitch.services.sender import DeliveryResult

T0 = datetime(2030, 1, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSender:
    """Returns queued outcomes (True/False/Exception) in order, then succeeds."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def send(self, entry, condition, message):
        self.calls.append((entry.id, entry.reminder_type))
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            return DeliveryResult(success=True)
        return DeliveryResult(success=False, error="provider unavailable")


@pytest.fixture(autouse=True)
def _schema():
    create_tables()
    app.state.cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return EventNotifier()


@pytest.fixture
def published(events):
    received = []
    events.subscribe(GLOBAL, received.append)
    return received


@pytest.fixture
def service(db, events, clock):
    return ConditionService(db, events, clock=clock)


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def dispatcher(db, sender, events):
    return Dispatcher(db, sender, events)


def make_message(db, user_id: str = "user-1", title: str = "Letter") -> Message:
    m = Message(user_id=user_id, title=title, created_at=T0)
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


def make_condition(service, db, user_id: str = "user-1", arm: bool = True, **config):
    config.setdefault("condition_type", "no_check_in")
    if config["condition_type"] in ("no_check_in", "regular_check_in", "inactivity_to_date"):
        config.setdefault("hours_threshold", 24)
    message = make_message(db, user_id)
    return service.create(user_id, message.id, config, arm=arm)
