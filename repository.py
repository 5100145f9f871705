"""Storage access for rides and ride requests.

All writes that must be atomic go through ``transaction()``; helpers accept an
optional open ``session`` so several conditional updates can share one commit.
Subscribers registered with ``subscribe`` receive a snapshot of each document
after the write that changed it has committed.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from db import STORE_ERRORS, get_session, session_scope, utcnow
from errors import ActiveRequestExists, NotFound, TransientFailure
from models import Ride, RideRequest, RideStatus

logger = logging.getLogger(__name__)

RIDES = "rides"
RIDE_REQUESTS = "ride_requests"

_MODELS = {RIDES: Ride, RIDE_REQUESTS: RideRequest}


class ChangeFeed:
    """In-process fan-out of committed document changes to subscribers."""

    def __init__(self):
        self._listeners = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, collection: str, predicates: Optional[Dict] = None,
                  on_change: Callable[[dict], None] = None) -> Callable[[], None]:
        if collection not in _MODELS:
            raise ValueError(f"unknown collection {collection}")
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = (collection, dict(predicates or {}), on_change)

        def unsubscribe():
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def has_listeners(self, collection: str) -> bool:
        with self._lock:
            return any(c == collection for c, _, _ in self._listeners.values())

    def publish(self, collection: str, document: dict):
        with self._lock:
            listeners = [(p, cb) for c, p, cb in self._listeners.values() if c == collection]
        for predicates, callback in listeners:
            if all(document.get(k) == v for k, v in predicates.items()):
                try:
                    callback(document)
                except Exception:
                    logger.exception("Subscriber callback failed for %s %s", collection, document.get("id"))


def _snapshot(obj) -> dict:
    return obj.model_dump(mode="json")


def _conditions(query, model, conditions):
    for field, expected in (conditions or {}).items():
        column = getattr(model, field)
        if expected is None:
            query = query.filter(column.is_(None))
        elif isinstance(expected, (set, frozenset, list, tuple)):
            query = query.filter(column.in_(list(expected)))
        else:
            query = query.filter(column == expected)
    return query


class RideRepository:
    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()

    # ───────────────────────── units of work ─────────────────────────

    @contextmanager
    def transaction(self):
        """Open a session, commit on success, roll back on any error.

        Operational store errors (lock timeouts, dropped connections) surface as
        TransientFailure. Documents touched through this repository are pushed to
        subscribers after the commit.
        """
        session = get_session()
        session.info["changed"] = []
        try:
            yield session
            session.commit()
        except STORE_ERRORS as exc:
            session.rollback()
            logger.warning("Store operation failed: %s", exc)
            raise TransientFailure() from exc
        except Exception:
            session.rollback()
            raise
        else:
            self._publish(session.info["changed"])
        finally:
            session.close()

    def _reading(self):
        return session_scope()

    @contextmanager
    def _unit(self, session):
        if session is not None:
            yield session
        else:
            with self.transaction() as own:
                yield own

    def _publish(self, changed):
        # the write has committed; a failed push to subscribers must not undo that
        seen = set()
        for collection, doc_id in changed:
            if (collection, doc_id) in seen or not self.feed.has_listeners(collection):
                continue
            seen.add((collection, doc_id))
            try:
                with self._reading() as session:
                    obj = session.get(_MODELS[collection], doc_id)
            except TransientFailure:
                logger.exception("Could not load %s %s for subscribers", collection, doc_id)
                continue
            if obj is not None:
                self.feed.publish(collection, _snapshot(obj))

    def subscribe(self, collection: str, predicates: Optional[Dict] = None,
                  on_change: Callable[[dict], None] = None) -> Callable[[], None]:
        return self.feed.subscribe(collection, predicates, on_change)

    # ───────────────────────── rides ─────────────────────────

    def add_ride(self, ride: Ride) -> Ride:
        with self.transaction() as session:
            session.add(ride)
            session.flush()
            session.info["changed"].append((RIDES, ride.id))
        return ride

    def get_ride(self, ride_id: int) -> Ride:
        with self._reading() as session:
            ride = session.get(Ride, ride_id)
        if ride is None:
            raise NotFound("This ride could not be found.", ride_id=ride_id)
        return ride

    def list_rides(self, status: Optional[RideStatus] = None, driver_id: Optional[int] = None,
                   scheduled_before: Optional[datetime] = None,
                   scheduled_after: Optional[datetime] = None) -> List[Ride]:
        with self._reading() as session:
            q = session.query(Ride)
            if status is not None:
                q = q.filter(Ride.status == status)
            if driver_id is not None:
                q = q.filter(Ride.driver_id == driver_id)
            if scheduled_before is not None:
                q = q.filter(Ride.scheduled_at < scheduled_before)
            if scheduled_after is not None:
                q = q.filter(Ride.scheduled_at > scheduled_after)
            return q.order_by(Ride.scheduled_at, Ride.id).all()

    def update_ride(self, ride_id: int, patch: Dict, conditions: Optional[Dict] = None,
                    session=None) -> bool:
        """Apply ``patch`` only if every condition still holds; returns whether a row changed."""
        with self._unit(session) as s:
            q = _conditions(s.query(Ride).filter(Ride.id == ride_id), Ride, conditions)
            updated = q.update(patch, synchronize_session=False)
            if updated:
                s.info.setdefault("changed", []).append((RIDES, ride_id))
            return bool(updated)

    def adjust_available_seats(self, ride_id: int, delta: int, session=None) -> bool:
        """Move the seat counter by +1/-1 without leaving [0, seats_total]."""
        with self._unit(session) as s:
            q = s.query(Ride).filter(Ride.id == ride_id)
            if delta < 0:
                q = q.filter(Ride.available_seats + delta >= 0)
            else:
                q = q.filter(Ride.available_seats + delta <= Ride.seats_total)
            updated = q.update({Ride.available_seats: Ride.available_seats + delta}, synchronize_session=False)
            if updated:
                s.info.setdefault("changed", []).append((RIDES, ride_id))
            return bool(updated)

    # ───────────────────────── ride requests ─────────────────────────

    def add_request(self, request: RideRequest) -> RideRequest:
        try:
            with self.transaction() as session:
                session.add(request)
                session.flush()
                session.info["changed"].append((RIDE_REQUESTS, request.id))
        except IntegrityError as exc:
            # the partial unique index caught a concurrent live request
            raise ActiveRequestExists(ride_id=request.ride_id, user_id=request.user_id) from exc
        return request

    def get_request(self, request_id: int) -> RideRequest:
        with self._reading() as session:
            request = session.get(RideRequest, request_id)
        if request is None:
            raise NotFound("This booking request could not be found.", request_id=request_id)
        return request

    def find_requests(self, **predicates) -> List[RideRequest]:
        with self._reading() as session:
            q = _conditions(session.query(RideRequest), RideRequest, predicates)
            return q.order_by(RideRequest.created_at, RideRequest.id).all()

    def latest_request(self, ride_id: int, user_id: int) -> Optional[RideRequest]:
        with self._reading() as session:
            return (
                session.query(RideRequest)
                .filter(RideRequest.ride_id == ride_id, RideRequest.user_id == user_id)
                .order_by(RideRequest.id.desc())
                .first()
            )

    def update_request(self, request_id: int, patch: Dict, conditions: Optional[Dict] = None,
                       session=None) -> bool:
        """Compare-and-set on a request; ``conditions`` usually pins the current status."""
        patch = dict(patch)
        patch.setdefault("updated_at", utcnow())
        with self._unit(session) as s:
            q = _conditions(s.query(RideRequest).filter(RideRequest.id == request_id), RideRequest, conditions)
            updated = q.update(patch, synchronize_session=False)
            if updated:
                s.info.setdefault("changed", []).append((RIDE_REQUESTS, request_id))
            return bool(updated)
