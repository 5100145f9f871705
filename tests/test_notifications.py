import json
from datetime import timedelta

import httpx
import pytest

from conftest import make_user
from db import get_session, utcnow
from errors import NotificationDeliveryFailed
from models import ReminderStatus, ScheduledReminder
from notifications import PushNotificationGateway


def push_gateway(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PushNotificationGateway(client=client, push_url="https://push.test/send")


def reminder_status(reminder_id):
    with get_session() as session:
        return ReminderStatus(session.get(ScheduledReminder, reminder_id).status)


# ────────────────────────── immediate ───────────────────────────────────────

def test_send_immediate_pushes_and_records_inbox():
    posted = []

    def handler(request):
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"status": "ok"}})

    user = make_user("U", push_token="ExponentPushToken[abc]")
    gateway = push_gateway(handler)
    gateway.send_immediate(user.id, "Hello", "World", {"kind": "ride_status", "ride_id": 3})

    assert posted == [{"to": "ExponentPushToken[abc]", "sound": "default", "title": "Hello",
                       "body": "World", "data": {"kind": "ride_status", "ride_id": 3}}]
    [note] = gateway.inbox(user.id)
    assert (note.title, note.kind, note.ride_id, note.read) == ("Hello", "ride_status", 3, False)


def test_no_push_token_means_inbox_only():
    def handler(request):
        raise AssertionError("push service should not be called")

    user = make_user("U")
    gateway = push_gateway(handler)
    gateway.send_immediate(user.id, "Hi", "there")
    assert len(gateway.inbox(user.id)) == 1


def test_push_error_raises_delivery_failed():
    user = make_user("U", push_token="tok")
    gateway = push_gateway(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(NotificationDeliveryFailed):
        gateway.send_immediate(user.id, "Hi", "there")
    # the in-app record is kept
    assert len(gateway.inbox(user.id)) == 1


def test_push_timeout_raises_delivery_failed():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    user = make_user("U", push_token="tok")
    with pytest.raises(NotificationDeliveryFailed):
        push_gateway(handler).send_immediate(user.id, "Hi", "there")


# ────────────────────────── inbox ───────────────────────────────────────────

def test_mark_read_filters_by_kind_and_ride():
    user = make_user("U")
    gateway = push_gateway(lambda r: httpx.Response(200))
    gateway.send_immediate(user.id, "a", "a", {"kind": "ride_request", "ride_id": 1})
    gateway.send_immediate(user.id, "b", "b", {"kind": "ride_request", "ride_id": 2})
    gateway.send_immediate(user.id, "c", "c", {"kind": "ride_status", "ride_id": 1})
    assert gateway.mark_read(user.id, kind="ride_request", ride_id=1) == 1
    unread = {n.title for n in gateway.inbox(user.id, unread_only=True)}
    assert unread == {"b", "c"}
    assert gateway.mark_read(user.id) == 2
    assert gateway.inbox(user.id, unread_only=True) == []


def test_mark_one_read():
    user = make_user("U")
    gateway = push_gateway(lambda r: httpx.Response(200))
    gateway.send_immediate(user.id, "a", "a")
    [note] = gateway.inbox(user.id)
    assert gateway.mark_one_read(note.id)
    assert not gateway.mark_one_read(note.id + 100)


# ────────────────────────── reminders ───────────────────────────────────────

def test_schedule_in_past_returns_none():
    user = make_user("U")
    gateway = push_gateway(lambda r: httpx.Response(200))
    assert gateway.schedule_at(user.id, utcnow() - timedelta(minutes=1), {"title": "t", "body": "b"}) is None


def test_dispatch_due_sends_and_skips_cancelled():
    user = make_user("U")
    gateway = push_gateway(lambda r: httpx.Response(200))
    soon = utcnow() + timedelta(minutes=1)
    keep = gateway.schedule_at(user.id, soon, {"title": "Reminder", "body": "go", "ride_id": 7})
    drop = gateway.schedule_at(user.id, soon, {"title": "Reminder", "body": "go", "ride_id": 8})
    later = gateway.schedule_at(user.id, utcnow() + timedelta(hours=5), {"title": "Later", "body": "x"})
    gateway.cancel(drop)

    counts = gateway.dispatch_due(now=utcnow() + timedelta(minutes=2))
    assert counts == {"sent": 1, "failed": 0}
    assert reminder_status(keep) == ReminderStatus.sent
    assert reminder_status(drop) == ReminderStatus.cancelled
    assert reminder_status(later) == ReminderStatus.scheduled
    [note] = gateway.inbox(user.id)
    assert (note.kind, note.ride_id) == ("ride_reminder", 7)

    # nothing fires twice
    assert gateway.dispatch_due(now=utcnow() + timedelta(minutes=2)) == {"sent": 0, "failed": 0}


def test_dispatch_failure_is_isolated():
    ok_user = make_user("Ok")
    bad_user = make_user("Bad", push_token="tok")
    gateway = push_gateway(lambda r: httpx.Response(503))
    soon = utcnow() + timedelta(minutes=1)
    bad = gateway.schedule_at(bad_user.id, soon, {"title": "t", "body": "b"})
    good = gateway.schedule_at(ok_user.id, soon, {"title": "t", "body": "b"})
    counts = gateway.dispatch_due(now=soon + timedelta(minutes=1))
    assert counts == {"sent": 1, "failed": 1}
    assert reminder_status(bad) == ReminderStatus.failed
    assert reminder_status(good) == ReminderStatus.sent


def test_seeding_fills_driver_inbox():
    import random
    from sample_data import _InboxOnly, seed

    random.seed(7)
    seed(drivers=2, passengers=6)
    gateway = _InboxOnly()
    driver_inboxes = [gateway.inbox(driver_id) for driver_id in (1, 2)]
    assert any(driver_inboxes)
    assert {n.kind for inbox in driver_inboxes for n in inbox} == {"ride_request"}
