from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import CheckConstraint, Column, DateTime, Index, text
from datetime import datetime
import enum

from db import utcnow


class Gender(str, enum.Enum):
    male = "male"
    female = "female"
    either = "either"


class RideStatus(str, enum.Enum):
    pending = "pending"
    ended = "ended"


class RequestStatus(str, enum.Enum):
    waiting = "waiting"
    accepted = "accepted"
    rejected = "rejected"
    checked_in = "checked_in"
    checked_out = "checked_out"
    cancelled = "cancelled"


ACTIVE_STATUSES = frozenset({RequestStatus.waiting, RequestStatus.accepted, RequestStatus.checked_in})
TERMINAL_STATUSES = frozenset({RequestStatus.rejected, RequestStatus.checked_out, RequestStatus.cancelled})


def utc_column(**kwargs):
    # timestamps are stored as naive UTC (see db.utcnow), never as timezone-aware values
    return Column(DateTime(timezone=False), **kwargs)


class ReminderStatus(str, enum.Enum):
    scheduled = "scheduled"
    sent = "sent"
    cancelled = "cancelled"
    failed = "failed"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    gender: Optional[str] = None  # free-form profile value, see identity.resolve_gender
    push_token: Optional[str] = None


class Ride(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_ride_available_seats_non_negative"),
        CheckConstraint("available_seats <= seats_total", name="ck_ride_available_seats_capacity"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    driver_id: int = Field(index=True)
    origin_address: str
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None
    destination_address: str
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    scheduled_at: datetime = Field(sa_column=utc_column(index=True, nullable=False))
    recurrence: Optional[str] = None  # comma-separated weekday labels, see schedule.py
    recurrence_until: Optional[datetime] = Field(default=None, sa_column=utc_column())
    seats_total: int = 4
    available_seats: int = 4
    required_gender: Gender = Gender.either
    no_smoking: bool = False
    no_children: bool = False
    no_music: bool = False
    status: RideStatus = Field(default=RideStatus.pending, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))


class RideRequest(SQLModel, table=True):
    __table_args__ = (
        # one live request per passenger per ride; terminal requests are kept for history
        Index(
            "uq_riderequest_active",
            "ride_id",
            "user_id",
            unique=True,
            sqlite_where=text("status IN ('waiting', 'accepted', 'checked_in')"),
            postgresql_where=text("status IN ('waiting', 'accepted', 'checked_in')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(index=True, foreign_key="ride.id")
    user_id: int = Field(index=True)
    driver_id: int = Field(index=True)
    status: RequestStatus = Field(default=RequestStatus.waiting, index=True)
    rating: Optional[int] = None
    notification_id: Optional[str] = None
    driver_notification_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    title: str
    body: str
    kind: str = Field(default="ride_status", index=True)  # ride_request, ride_status, ride_reminder, rating_prompt
    ride_id: Optional[int] = Field(default=None, index=True)
    request_id: Optional[int] = None
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))


class ScheduledReminder(SQLModel, table=True):
    id: str = Field(primary_key=True)
    user_id: int = Field(index=True)
    title: str
    body: str
    ride_id: Optional[int] = None
    fire_at: datetime = Field(sa_column=utc_column(index=True, nullable=False))
    status: ReminderStatus = Field(default=ReminderStatus.scheduled, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
