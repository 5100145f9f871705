import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from db import utcnow
from models import RideStatus
from repository import RideRepository

logger = logging.getLogger(__name__)


@dataclass
class ExpiryReport:
    ended: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def __bool__(self):
        return bool(self.ended or self.failed)

    def to_dict(self):
        return {"ended": self.ended, "failed": self.failed}


class ExpiryWatcher:
    """Moves past-due pending rides to ``ended``.

    Recurring rides end like any other once their departure has passed.
    Ride requests are left as they are.
    """

    def __init__(self, repository: RideRepository, clock=utcnow):
        self.repository = repository
        self.clock = clock

    def sweep(self, now: Optional[datetime] = None) -> ExpiryReport:
        now = now or self.clock()
        report = ExpiryReport()
        for ride in self.repository.list_rides(status=RideStatus.pending, scheduled_before=now):
            try:
                # the guard makes a concurrent or repeated sweep a no-op
                if self.repository.update_ride(ride.id, {"status": RideStatus.ended},
                                               conditions={"status": RideStatus.pending}):
                    report.ended.append(ride.id)
            except Exception:
                logger.exception("Could not expire ride %s", ride.id)
                report.failed.append(ride.id)
        if report:
            logger.info("Expiry sweep at %s: %s", now.isoformat(), report.to_dict())
        return report
