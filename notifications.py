"""Push notifications, reminders and the in-app inbox.

Every immediate notification is recorded in the user's inbox and, when the user
has registered a push token, posted to the Expo push service. Reminders are
stored rows fired by ``dispatch_due`` once their time comes.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from db import session_scope, utcnow
from errors import NotificationDeliveryFailed
from models import Notification, ReminderStatus, ScheduledReminder, User
from settings import PUSH_TIMEOUT_SECONDS, PUSH_URL

logger = logging.getLogger(__name__)


class NotificationGateway:
    """What the coordinator needs from a notification service."""

    def send_immediate(self, user_id: int, title: str, body: str, data: Optional[Dict] = None) -> None:
        raise NotImplementedError

    def schedule_at(self, user_id: int, when: datetime, payload: Dict) -> Optional[str]:
        raise NotImplementedError

    def cancel(self, notification_id: str) -> None:
        raise NotImplementedError

    def mark_read(self, user_id: int, kind: Optional[str] = None, ride_id: Optional[int] = None) -> int:
        raise NotImplementedError


class PushNotificationGateway(NotificationGateway):
    def __init__(self, client: Optional[httpx.Client] = None, push_url: str = PUSH_URL):
        self.client = client or httpx.Client(timeout=PUSH_TIMEOUT_SECONDS)
        self.push_url = push_url

    # ───────────────────────── immediate ─────────────────────────

    def send_immediate(self, user_id, title, body, data=None):
        data = dict(data or {})
        with session_scope() as session:
            session.add(Notification(
                user_id=user_id,
                title=title,
                body=body,
                kind=data.get("kind", "ride_status"),
                ride_id=data.get("ride_id"),
                request_id=data.get("request_id"),
            ))
            session.commit()
            user = session.get(User, user_id)
            token = user.push_token if user else None
        if not token:
            logger.debug("No push token for user %s; inbox only", user_id)
            return
        self._push(token, title, body, data)

    def _push(self, token, title, body, data):
        message = {"to": token, "sound": "default", "title": title, "body": body, "data": data}
        try:
            response = self.client.post(self.push_url, json=message, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise NotificationDeliveryFailed(f"push request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotificationDeliveryFailed(f"push service answered {response.status_code}: {response.text}")

    # ───────────────────────── reminders ─────────────────────────

    def schedule_at(self, user_id, when, payload):
        if when <= utcnow():
            logger.warning("Not scheduling reminder for user %s in the past: %s", user_id, when.isoformat())
            return None
        reminder = ScheduledReminder(
            id=uuid.uuid4().hex,
            user_id=user_id,
            title=payload["title"],
            body=payload["body"],
            ride_id=payload.get("ride_id"),
            fire_at=when,
        )
        with session_scope() as session:
            session.add(reminder)
            session.commit()
        logger.info("Reminder %s scheduled for user %s at %s", reminder.id, user_id, when.isoformat())
        return reminder.id

    def cancel(self, notification_id):
        with session_scope() as session:
            updated = (
                session.query(ScheduledReminder)
                .filter(ScheduledReminder.id == notification_id,
                        ScheduledReminder.status == ReminderStatus.scheduled)
                .update({"status": ReminderStatus.cancelled}, synchronize_session=False)
            )
            session.commit()
        if updated:
            logger.info("Reminder %s cancelled", notification_id)

    def dispatch_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Fire every reminder whose time has come; one failure does not stop the rest."""
        now = now or utcnow()
        with session_scope() as session:
            due = (
                session.query(ScheduledReminder)
                .filter(ScheduledReminder.status == ReminderStatus.scheduled,
                        ScheduledReminder.fire_at <= now)
                .order_by(ScheduledReminder.fire_at)
                .all()
            )
        sent = failed = 0
        for reminder in due:
            if not self._claim(reminder.id):
                continue  # cancelled or taken by another dispatcher meanwhile
            try:
                self.send_immediate(reminder.user_id, reminder.title, reminder.body,
                                    {"kind": "ride_reminder", "ride_id": reminder.ride_id})
                sent += 1
            except Exception:
                logger.exception("Reminder %s could not be delivered", reminder.id)
                self._set_status(reminder.id, ReminderStatus.failed)
                failed += 1
        return {"sent": sent, "failed": failed}

    def _claim(self, reminder_id) -> bool:
        with session_scope() as session:
            updated = (
                session.query(ScheduledReminder)
                .filter(ScheduledReminder.id == reminder_id,
                        ScheduledReminder.status == ReminderStatus.scheduled)
                .update({"status": ReminderStatus.sent}, synchronize_session=False)
            )
            session.commit()
        return bool(updated)

    def _set_status(self, reminder_id, status):
        with session_scope() as session:
            session.query(ScheduledReminder).filter(ScheduledReminder.id == reminder_id).update(
                {"status": status}, synchronize_session=False)
            session.commit()

    # ───────────────────────── inbox ─────────────────────────

    def inbox(self, user_id: int, unread_only: bool = False) -> List[Notification]:
        with session_scope() as session:
            q = session.query(Notification).filter(Notification.user_id == user_id)
            if unread_only:
                q = q.filter(Notification.read.is_(False))
            return q.order_by(Notification.created_at.desc(), Notification.id.desc()).all()

    def mark_read(self, user_id, kind=None, ride_id=None):
        with session_scope() as session:
            q = session.query(Notification).filter(Notification.user_id == user_id,
                                                   Notification.read.is_(False))
            if kind is not None:
                q = q.filter(Notification.kind == kind)
            if ride_id is not None:
                q = q.filter(Notification.ride_id == ride_id)
            updated = q.update({"read": True}, synchronize_session=False)
            session.commit()
        return updated

    def mark_one_read(self, notification_id: int, user_id: Optional[int] = None) -> bool:
        with session_scope() as session:
            q = session.query(Notification).filter(Notification.id == notification_id)
            if user_id is not None:
                q = q.filter(Notification.user_id == user_id)
            updated = q.update({"read": True}, synchronize_session=False)
            session.commit()
        return bool(updated)
