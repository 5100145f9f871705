import threading

import pytest

from conftest import make_ride, make_user, seats_left
from errors import NotFound, SeatsUnavailable
from models import RequestStatus as S
from seats import SeatLedger, SeatPolicy


def test_reserve_decrements(repository):
    ride = make_ride(make_user("D").id, seats=2)
    SeatLedger(repository).reserve(ride.id)
    assert seats_left(ride.id) == 1


def test_reserve_last_seat_then_unavailable(repository):
    ride = make_ride(make_user("D").id, seats=1)
    ledger = SeatLedger(repository)
    ledger.reserve(ride.id)
    with pytest.raises(SeatsUnavailable):
        ledger.reserve(ride.id)
    assert seats_left(ride.id) == 0


def test_release_never_exceeds_capacity(repository):
    ride = make_ride(make_user("D").id, seats=2)
    ledger = SeatLedger(repository)
    ledger.reserve(ride.id)
    ledger.release(ride.id)
    ledger.release(ride.id)
    assert seats_left(ride.id) == 2


def test_unknown_ride(repository):
    with pytest.raises(NotFound):
        SeatLedger(repository).reserve(12345)


def test_reserve_inside_rolled_back_transaction(repository):
    ride = make_ride(make_user("D").id, seats=1)
    ledger = SeatLedger(repository)
    with pytest.raises(RuntimeError):
        with repository.transaction() as session:
            ledger.reserve(ride.id, session=session)
            raise RuntimeError("abort")
    assert seats_left(ride.id) == 1


def test_racing_reservations_on_last_seat(repository):
    ride = make_ride(make_user("D").id, seats=1)
    ledger = SeatLedger(repository)
    outcomes = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        try:
            ledger.reserve(ride.id)
            outcomes.append("ok")
        except SeatsUnavailable:
            outcomes.append("full")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(outcomes) == ["full", "full", "full", "ok"]
    assert seats_left(ride.id) == 0


# ────────────────────────── policy ──────────────────────────────────────────

def test_check_in_policy():
    policy = SeatPolicy("check_in")
    assert policy.reserves(S.accepted, S.checked_in)
    assert not policy.reserves(S.waiting, S.accepted)
    assert policy.releases(S.checked_in, S.cancelled)
    assert not policy.releases(S.accepted, S.cancelled)
    assert not policy.releases(S.checked_in, S.checked_out)


def test_accept_policy():
    policy = SeatPolicy("accept")
    assert policy.reserves(S.waiting, S.accepted)
    assert not policy.reserves(S.accepted, S.checked_in)
    assert policy.releases(S.accepted, S.cancelled)
    assert policy.releases(S.checked_in, S.cancelled)
    assert not policy.releases(S.waiting, S.cancelled)


def test_unknown_policy():
    with pytest.raises(ValueError):
        SeatPolicy("board")
