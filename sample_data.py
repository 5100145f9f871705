from datetime import timedelta
import random

from coordinator import RideLifecycleCoordinator
from db import init_db, get_session, utcnow
from models import User
from notifications import PushNotificationGateway


class _InboxOnly(PushNotificationGateway):
    """Seeded notifications land in the in-app inbox; nothing is pushed to devices."""

    def _push(self, token, title, body, data):
        pass


def seed(drivers=5, passengers=15):
    init_db()
    session = get_session()
    # add users
    genders = ["male", "female"]
    users = [User(name=f"user{i}", gender=random.choice(genders)) for i in range(1, drivers + passengers + 1)]
    session.add_all(users)
    session.commit()
    coordinator = RideLifecycleCoordinator(notifier=_InboxOnly())
    places = ["Central Station", "University Gate", "Airport Terminal 1", "Old Town Square", "Tech Park"]
    ride_ids = []
    for i, driver in enumerate(users[:drivers]):
        origin, destination = random.sample(places, 2)
        result = coordinator.publish_ride(
            driver.id,
            origin,
            destination,
            utcnow() + timedelta(hours=2 + i),
            seats=random.choice([1, 2, 3, 4]),
            recurrence=random.choice([None, "monday,wednesday", "sunday"]),
            required_gender=random.choice(["either", "either", "male", "female"]),
            no_smoking=random.random() < 0.5,
        )
        if result.ok:
            ride_ids.append(result.ride.id)
    # each passenger asks for a random ride; gender rules refuse some of them
    for passenger in users[drivers:]:
        coordinator.book(random.choice(ride_ids), passenger.id)
    session.close()
    print(f"Seeded {len(users)} users and {len(ride_ids)} rides")


if __name__ == "__main__":
    seed()
