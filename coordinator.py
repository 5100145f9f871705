"""
Ride lifecycle coordinator.

One entry point per user action. Each call reads the ride and booking fresh,
validates the action against the state machine, commits the booking change and
any seat change in a single transaction, and only then notifies the other
party. Callers always get an ActionResult back; errors are values, not raised.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from db import utcnow
from errors import (
    ActiveRequestExists,
    AlreadyRated,
    InvalidRating,
    InvalidTransition,
    NotFound,
    NotificationDeliveryFailed,
    RideError,
    ScheduleConflict,
    TransientFailure,
    ValidationFailed,
)
from identity import IdentityProvider, UserDirectory, resolve_gender
from models import ACTIVE_STATUSES, RequestStatus, Ride, RideRequest, RideStatus
from notifications import NotificationGateway, PushNotificationGateway
from repository import RideRepository
from schedule import format_weekdays, parse_datetime, parse_weekdays
from seats import SeatLedger, SeatPolicy
from settings import (
    REMINDER_LEAD_MINUTES,
    SCHEDULE_CONFLICT_MINUTES,
    SEAT_RESERVATION,
    STORE_RETRY_ATTEMPTS,
    STORE_RETRY_BACKOFF_SECONDS,
)
from state_machine import Action, authorize, check_booking, next_status

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of a lifecycle action."""
    ok: bool
    request: Optional[RideRequest] = None
    ride: Optional[Ride] = None
    error: Optional[RideError] = None
    message: str = ""
    extra: Optional[Dict[str, Any]] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None


class RideLifecycleCoordinator:
    def __init__(
        self,
        repository: Optional[RideRepository] = None,
        notifier: Optional[NotificationGateway] = None,
        identity: Optional[IdentityProvider] = None,
        policy: Optional[SeatPolicy] = None,
        clock: Callable = utcnow,
        retry_attempts: int = STORE_RETRY_ATTEMPTS,
        retry_backoff: float = STORE_RETRY_BACKOFF_SECONDS,
    ):
        self.repository = repository or RideRepository()
        self.notifier = notifier or PushNotificationGateway()
        self.identity = identity or UserDirectory()
        self.ledger = SeatLedger(self.repository)
        self.policy = policy or SeatPolicy(SEAT_RESERVATION)
        self.clock = clock
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff

    # ───────────────────────── plumbing ─────────────────────────

    def _run(self, action: str, persist: Callable[[], ActionResult],
             effects: Optional[Callable[[ActionResult], None]] = None) -> ActionResult:
        """Run ``persist`` with bounded retries, then best-effort ``effects``."""
        attempt = 0
        while True:
            attempt += 1
            try:
                result = persist()
                break
            except TransientFailure as exc:
                if attempt >= self.retry_attempts:
                    logger.error("%s failed after %s attempts: %s", action, attempt, exc)
                    return ActionResult(ok=False, error=exc, message=exc.message)
                logger.warning("%s hit a transient failure (attempt %s); retrying", action, attempt)
                time.sleep(self.retry_backoff * attempt)
            except RideError as exc:
                logger.info("%s refused: %s %s", action, exc.code, exc.context)
                return ActionResult(ok=False, error=exc, message=exc.message)
        if effects is not None:
            try:
                effects(result)
            except Exception:
                logger.exception("Side effects of %s failed after commit", action)
        return result

    def _notify(self, user_id: int, title: str, body: str, **data) -> None:
        try:
            self.notifier.send_immediate(user_id, title, body, data)
        except NotificationDeliveryFailed as exc:
            logger.warning("Notification to user %s not delivered: %s", user_id, exc.message)
        except Exception:
            logger.exception("Notification to user %s failed", user_id)

    def _cancel_reminders(self, request: RideRequest) -> None:
        for reminder_id in (request.notification_id, request.driver_notification_id):
            if not reminder_id:
                continue
            try:
                self.notifier.cancel(reminder_id)
            except Exception:
                logger.exception("Could not cancel reminder %s", reminder_id)

    def _load(self, ride_id: int, request_id: int):
        ride = self.repository.get_ride(ride_id)
        request = self.repository.get_request(request_id)
        if request.ride_id != ride.id:
            raise NotFound("This booking request does not belong to this ride.",
                           ride_id=ride_id, request_id=request_id)
        return ride, request

    def _passenger_request(self, ride_id: int, user_id: int, request_id: Optional[int]):
        if request_id is not None:
            return self._load(ride_id, request_id)
        ride = self.repository.get_ride(ride_id)
        request = self.repository.latest_request(ride.id, user_id)
        if request is None:
            raise NotFound("You have no booking on this ride.", ride_id=ride_id, user_id=user_id)
        return ride, request

    def _transition(self, action: Action, ride: Ride, request: RideRequest, user_id: int) -> ActionResult:
        """Validate and commit one state change as a compare-and-set on the current status."""
        authorize(action, ride, request, user_id)
        source = RequestStatus(request.status)
        target = next_status(action, source)
        with self.repository.transaction() as session:
            if not self.repository.update_request(request.id, {"status": target},
                                                  conditions={"status": source}, session=session):
                # someone else moved the request first
                raise InvalidTransition(action=action.value, status=source.value, request_id=request.id)
            if self.policy.reserves(source, target):
                self.ledger.reserve(ride.id, session=session)
            elif self.policy.releases(source, target):
                self.ledger.release(ride.id, session=session)
            request = session.get(RideRequest, request.id)
            ride = session.get(Ride, ride.id)
        logger.info("Request %s on ride %s: %s -> %s (%s)", request.id, ride.id,
                    source.value, target.value, action.value)
        return ActionResult(ok=True, request=request, ride=ride, extra={"previous_status": source.value})

    # ───────────────────────── driver publishes ─────────────────────────

    def publish_ride(self, driver_id: int, origin_address: str, destination_address: str,
                     scheduled_at, seats: int, recurrence=None, recurrence_until=None,
                     required_gender="either", no_smoking=False, no_children=False, no_music=False,
                     origin_lat=None, origin_lng=None, dest_lat=None, dest_lng=None) -> ActionResult:
        def persist():
            self.identity.profile(driver_id)
            if not origin_address or not destination_address:
                raise ValidationFailed("Origin and destination are required.")
            if isinstance(seats, bool) or not isinstance(seats, int) or seats < 1:
                raise ValidationFailed("A ride needs at least one seat.")
            when = parse_datetime(scheduled_at)
            if when <= self.clock():
                raise ValidationFailed("A ride cannot be scheduled in the past.")
            gender = resolve_gender(required_gender)
            if gender is None:
                raise ValidationFailed(f"Unknown gender requirement: {required_gender}")
            days = parse_weekdays(recurrence)
            until = parse_datetime(recurrence_until) if recurrence_until else None
            if until is not None and until < when:
                raise ValidationFailed("A recurring ride cannot stop before its first departure.")

            window = timedelta(minutes=SCHEDULE_CONFLICT_MINUTES)
            clashes = self.repository.list_rides(status=RideStatus.pending, driver_id=driver_id,
                                                 scheduled_after=when - window,
                                                 scheduled_before=when + window)
            if clashes:
                raise ScheduleConflict(ride_id=clashes[0].id)

            ride = self.repository.add_ride(Ride(
                driver_id=driver_id,
                origin_address=origin_address,
                origin_lat=origin_lat,
                origin_lng=origin_lng,
                destination_address=destination_address,
                dest_lat=dest_lat,
                dest_lng=dest_lng,
                scheduled_at=when,
                recurrence=format_weekdays(days),
                recurrence_until=until,
                seats_total=seats,
                available_seats=seats,
                required_gender=gender,
                no_smoking=bool(no_smoking),
                no_children=bool(no_children),
                no_music=bool(no_music),
            ))
            logger.info("Driver %s published ride %s for %s", driver_id, ride.id, when.isoformat())
            return ActionResult(ok=True, ride=ride, message="Ride published.")

        return self._run("publish_ride", persist)

    # ───────────────────────── passenger books ─────────────────────────

    def book(self, ride_id: int, user_id: int) -> ActionResult:
        def persist():
            ride = self.repository.get_ride(ride_id)
            profile = self.identity.profile(user_id)
            check_booking(ride, user_id, profile.gender)
            next_status(Action.book, None)
            if self.repository.find_requests(ride_id=ride.id, user_id=user_id, status=ACTIVE_STATUSES):
                raise ActiveRequestExists(ride_id=ride.id, user_id=user_id)
            request = self.repository.add_request(RideRequest(
                ride_id=ride.id,
                user_id=user_id,
                driver_id=ride.driver_id,
                status=RequestStatus.waiting,
            ))
            logger.info("User %s requested ride %s (request %s)", user_id, ride.id, request.id)
            return ActionResult(ok=True, request=request, ride=ride, message="Booking request sent.",
                                extra={"passenger_name": profile.name})

        def effects(result):
            ride = result.ride
            self._notify(
                ride.driver_id,
                "New booking request",
                f"{result.extra['passenger_name']} wants to join your ride from "
                f"{ride.origin_address} to {ride.destination_address}",
                kind="ride_request", ride_id=ride.id, request_id=result.request.id,
            )

        return self._run("book", persist, effects)

    # ───────────────────────── driver answers ─────────────────────────

    def accept(self, ride_id: int, user_id: int, request_id: int) -> ActionResult:
        def persist():
            ride, request = self._load(ride_id, request_id)
            result = self._transition(Action.accept, ride, request, user_id)
            result.message = "Booking accepted."
            return result

        def effects(result):
            ride, request = result.ride, result.request
            try:
                self._schedule_reminders(ride, request)
            except Exception:
                logger.exception("Could not schedule reminders for request %s", request.id)
            self._notify(
                request.user_id,
                "Your booking was accepted!",
                f"Your booking for the ride from {ride.origin_address} to {ride.destination_address} was accepted",
                kind="ride_status", ride_id=ride.id, request_id=request.id,
            )
            self.notifier.mark_read(ride.driver_id, kind="ride_request", ride_id=ride.id)

        return self._run("accept", persist, effects)

    def _schedule_reminders(self, ride: Ride, request: RideRequest) -> None:
        when = ride.scheduled_at - timedelta(minutes=REMINDER_LEAD_MINUTES)
        payload = {
            "title": "Reminder: your ride is about to start!",
            "body": f"Get ready to leave from {ride.origin_address} to {ride.destination_address}",
            "ride_id": ride.id,
        }
        passenger_reminder = self.notifier.schedule_at(request.user_id, when, payload)
        driver_reminder = self.notifier.schedule_at(ride.driver_id, when, payload)
        if passenger_reminder is None and driver_reminder is None:
            return
        saved = self.repository.update_request(
            request.id,
            {"notification_id": passenger_reminder, "driver_notification_id": driver_reminder},
            conditions={"status": RequestStatus.accepted},
        )
        if saved:
            request.notification_id = passenger_reminder
            request.driver_notification_id = driver_reminder
        else:
            # the request moved on before the reminders were recorded
            for reminder_id in (passenger_reminder, driver_reminder):
                if reminder_id:
                    self.notifier.cancel(reminder_id)

    def reject(self, ride_id: int, user_id: int, request_id: int) -> ActionResult:
        def persist():
            ride, request = self._load(ride_id, request_id)
            result = self._transition(Action.reject, ride, request, user_id)
            result.message = "Booking rejected."
            return result

        def effects(result):
            ride, request = result.ride, result.request
            self._notify(
                request.user_id,
                "Your booking was declined",
                f"Sorry, your booking for the ride from {ride.origin_address} to "
                f"{ride.destination_address} was declined",
                kind="ride_status", ride_id=ride.id, request_id=request.id,
            )

        return self._run("reject", persist, effects)

    # ───────────────────────── passenger progress ─────────────────────────

    def check_in(self, ride_id: int, user_id: int, request_id: Optional[int] = None) -> ActionResult:
        def persist():
            ride, request = self._passenger_request(ride_id, user_id, request_id)
            result = self._transition(Action.check_in, ride, request, user_id)
            result.message = "You are checked in."
            return result

        def effects(result):
            self._notify(result.ride.driver_id, "Passenger checked in",
                         "A passenger has checked in for your ride",
                         kind="ride_status", ride_id=result.ride.id, request_id=result.request.id)

        return self._run("check_in", persist, effects)

    def check_out(self, ride_id: int, user_id: int, request_id: Optional[int] = None) -> ActionResult:
        def persist():
            ride, request = self._passenger_request(ride_id, user_id, request_id)
            result = self._transition(Action.check_out, ride, request, user_id)
            result.message = "You are checked out. How was your ride?"
            result.extra["rating_prompt"] = True
            return result

        def effects(result):
            ride, request = result.ride, result.request
            self._cancel_reminders(request)
            self._notify(ride.driver_id, "Passenger checked out",
                         "A passenger has checked out of your ride",
                         kind="ride_status", ride_id=ride.id, request_id=request.id)
            self._notify(request.user_id, "Rate your ride",
                         f"How was your ride from {ride.origin_address} to {ride.destination_address}?",
                         kind="rating_prompt", ride_id=ride.id, request_id=request.id)

        return self._run("check_out", persist, effects)

    def cancel(self, ride_id: int, user_id: int, request_id: Optional[int] = None) -> ActionResult:
        def persist():
            ride, request = self._passenger_request(ride_id, user_id, request_id)
            result = self._transition(Action.cancel, ride, request, user_id)
            result.message = "Your booking was cancelled."
            return result

        def effects(result):
            ride, request = result.ride, result.request
            self._cancel_reminders(request)
            self._notify(ride.driver_id, "Booking cancelled",
                         "A passenger has cancelled their booking",
                         kind="ride_status", ride_id=ride.id, request_id=request.id)

        return self._run("cancel", persist, effects)

    def rate(self, ride_id: int, user_id: int, rating, request_id: Optional[int] = None) -> ActionResult:
        def persist():
            if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                raise InvalidRating(rating=rating)
            ride, request = self._passenger_request(ride_id, user_id, request_id)
            authorize(Action.rate, ride, request, user_id)
            next_status(Action.rate, RequestStatus(request.status))
            if request.rating is not None:
                raise AlreadyRated(request_id=request.id)
            if not self.repository.update_request(
                request.id, {"rating": rating},
                conditions={"status": RequestStatus.checked_out, "rating": None},
            ):
                raise AlreadyRated(request_id=request.id)
            request.rating = rating
            logger.info("User %s rated ride %s: %s", user_id, ride.id, rating)
            return ActionResult(ok=True, request=request, ride=ride, message="Thanks for your rating!")

        def effects(result):
            self._notify(result.ride.driver_id, "New rating",
                         f"A passenger rated your ride {rating} stars",
                         kind="ride_status", ride_id=result.ride.id, request_id=result.request.id)

        return self._run("rate", persist, effects)
