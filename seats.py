import logging

from errors import SeatsUnavailable
from models import RequestStatus
from repository import RideRepository

logger = logging.getLogger(__name__)


class SeatLedger:
    """Keeps Ride.available_seats consistent under concurrent bookings.

    Both operations are single conditional UPDATEs evaluated by the store, so
    two check-ins racing on the last seat cannot both succeed.
    """

    def __init__(self, repository: RideRepository):
        self.repository = repository

    def reserve(self, ride_id: int, session=None) -> None:
        if not self.repository.adjust_available_seats(ride_id, -1, session=session):
            self.repository.get_ride(ride_id)  # NotFound beats SeatsUnavailable
            raise SeatsUnavailable(ride_id=ride_id)

    def release(self, ride_id: int, session=None) -> None:
        if not self.repository.adjust_available_seats(ride_id, +1, session=session):
            self.repository.get_ride(ride_id)
            logger.warning("Seat release on ride %s ignored: already at capacity", ride_id)


class SeatPolicy:
    """Which request states hold a seat.

    ``check_in``: a seat is taken at check-in and returned when a checked-in
    passenger cancels. ``accept``: the seat is taken when the driver accepts and
    returned when an accepted or checked-in passenger cancels.
    """

    def __init__(self, reserve_at: str = "check_in"):
        if reserve_at == "check_in":
            self.reserve_status = RequestStatus.checked_in
            self.holding = frozenset({RequestStatus.checked_in})
        elif reserve_at == "accept":
            self.reserve_status = RequestStatus.accepted
            self.holding = frozenset({RequestStatus.accepted, RequestStatus.checked_in})
        else:
            raise ValueError(f"unknown seat reservation policy {reserve_at!r}")
        self.name = reserve_at

    def reserves(self, source: RequestStatus, target: RequestStatus) -> bool:
        return target == self.reserve_status and source not in self.holding

    def releases(self, source: RequestStatus, target: RequestStatus) -> bool:
        return target == RequestStatus.cancelled and source in self.holding
