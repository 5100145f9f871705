"""Lifecycle rules for one passenger's booking on one ride.

The transition table is data: every action names the actor allowed to take it,
the states it may start from and the state it leads to. Nothing here touches
storage; the coordinator applies the result.
"""
import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from errors import GenderMismatch, InvalidTransition, RideEnded, SelfBookingForbidden, Unauthorized
from models import TERMINAL_STATUSES, Gender, RequestStatus, Ride, RideRequest, RideStatus


class Action(str, enum.Enum):
    book = "book"
    accept = "accept"
    reject = "reject"
    check_in = "check_in"
    check_out = "check_out"
    cancel = "cancel"
    rate = "rate"


class Actor(str, enum.Enum):
    driver = "driver"
    passenger = "passenger"


@dataclass(frozen=True)
class Transition:
    actor: Actor
    sources: FrozenSet[RequestStatus]
    target: RequestStatus


S = RequestStatus

TRANSITIONS: Dict[Action, Transition] = {
    Action.book: Transition(Actor.passenger, frozenset(), S.waiting),
    Action.accept: Transition(Actor.driver, frozenset({S.waiting}), S.accepted),
    Action.reject: Transition(Actor.driver, frozenset({S.waiting}), S.rejected),
    Action.check_in: Transition(Actor.passenger, frozenset({S.accepted}), S.checked_in),
    Action.check_out: Transition(Actor.passenger, frozenset({S.checked_in}), S.checked_out),
    Action.cancel: Transition(Actor.passenger, frozenset({S.waiting, S.accepted, S.checked_in}), S.cancelled),
    Action.rate: Transition(Actor.passenger, frozenset({S.checked_out}), S.checked_out),
}

# rating annotates a finished request; it is not a move between states
_ANNOTATIONS = frozenset({Action.rate})


def _check_table():
    missing = set(Action) - set(TRANSITIONS)
    if missing:
        raise RuntimeError(f"transition table has no entry for {sorted(a.value for a in missing)}")
    for action, transition in TRANSITIONS.items():
        unknown = (transition.sources | {transition.target}) - set(RequestStatus)
        if unknown:
            raise RuntimeError(f"{action.value} refers to unknown states {unknown}")
    for status in TERMINAL_STATUSES:
        if reachable(status):
            raise RuntimeError(f"terminal state {status.value} has outgoing moves")


def next_status(action: Action, current: Optional[RequestStatus]) -> RequestStatus:
    transition = TRANSITIONS[action]
    if current is None:
        if transition.sources:
            raise InvalidTransition(action=action.value, status=None)
        return transition.target
    if current not in transition.sources:
        raise InvalidTransition(action=action.value, status=RequestStatus(current).value)
    return transition.target


def reachable(status: RequestStatus) -> FrozenSet[RequestStatus]:
    """States one action away from ``status``; empty for terminal states."""
    return frozenset(
        t.target
        for action, t in TRANSITIONS.items()
        if status in t.sources and action not in _ANNOTATIONS
    )


_check_table()


def authorize(action: Action, ride: Ride, request: RideRequest, user_id: int) -> None:
    if TRANSITIONS[action].actor is Actor.driver:
        if ride.driver_id != user_id:
            raise Unauthorized("Only the driver of this ride can answer booking requests.")
    elif request.user_id != user_id:
        raise Unauthorized("This booking belongs to another passenger.")


def gender_allows(required: Gender, gender: Optional[Gender]) -> bool:
    if required == Gender.either:
        return True
    return gender == required


def check_booking(ride: Ride, user_id: int, gender: Optional[Gender]) -> None:
    """Eligibility of a passenger to book ``ride``; raises the first rule broken."""
    if ride.status != RideStatus.pending:
        raise RideEnded(ride_id=ride.id)
    if ride.driver_id == user_id:
        raise SelfBookingForbidden(ride_id=ride.id)
    if not gender_allows(ride.required_gender, gender):
        raise GenderMismatch(ride_id=ride.id)
