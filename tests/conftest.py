import os
import sys
import uuid
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  registers tables
from coordinator import RideLifecycleCoordinator
from db import get_session, utcnow
from errors import NotificationDeliveryFailed
from models import Ride, RequestStatus, User
from notifications import NotificationGateway
from repository import RideRepository
from seats import SeatPolicy


# ────────────────────────── fixtures ────────────────────────────────────────

@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh database file."""
    import db as db_mod
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = create_engine(
        test_db, echo=False, connect_args={"check_same_thread": False, "timeout": 10}
    )
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    yield new_engine
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


class RecordingGateway(NotificationGateway):
    """Keeps every notification call in memory; can be told to fail."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.scheduled = {}
        self.cancelled = []
        self.marked = []

    def send_immediate(self, user_id, title, body, data=None):
        if self.fail:
            raise NotificationDeliveryFailed("push service down")
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": dict(data or {})})

    def schedule_at(self, user_id, when, payload):
        if when <= utcnow():
            return None
        reminder_id = uuid.uuid4().hex
        self.scheduled[reminder_id] = {"user_id": user_id, "when": when, "payload": payload}
        return reminder_id

    def cancel(self, notification_id):
        self.cancelled.append(notification_id)

    def mark_read(self, user_id, kind=None, ride_id=None):
        self.marked.append((user_id, kind, ride_id))
        return 0

    def sent_to(self, user_id):
        return [n for n in self.sent if n["user_id"] == user_id]


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def repository():
    return RideRepository()


@pytest.fixture
def coordinator(repository, gateway):
    return RideLifecycleCoordinator(repository=repository, notifier=gateway,
                                    policy=SeatPolicy("check_in"), retry_backoff=0)


def make_user(name="Alice", gender=None, push_token=None):
    session = get_session()
    u = User(name=name, gender=gender, push_token=push_token)
    session.add(u)
    session.commit()
    session.refresh(u)
    session.close()
    return u


def make_ride(driver_id, seats=2, hours_ahead=3, required_gender="either", status="pending",
              scheduled_at=None, recurrence=None, recurrence_until=None):
    session = get_session()
    ride = Ride(
        driver_id=driver_id,
        origin_address="Central Station",
        destination_address="Airport Terminal 1",
        scheduled_at=scheduled_at or utcnow() + timedelta(hours=hours_ahead),
        seats_total=seats,
        available_seats=seats,
        required_gender=required_gender,
        status=status,
        recurrence=recurrence,
        recurrence_until=recurrence_until,
    )
    session.add(ride)
    session.commit()
    session.refresh(ride)
    session.close()
    return ride


def seats_left(ride_id):
    with get_session() as session:
        return session.get(Ride, ride_id).available_seats


def request_status(request_id):
    from models import RideRequest
    with get_session() as session:
        return RequestStatus(session.get(RideRequest, request_id).status)
