"""Concurrency demo: several passengers race to check in on a ride with one seat left.
This runs in-process against the ASGI app and doesn't require the server to be started separately.
Exactly one check-in succeeds; the others get seats_unavailable.
Run: python concurrency_demo.py
"""
import asyncio
from datetime import timedelta

import httpx

from db import init_db, get_session, utcnow
from main import app
from models import User


async def run(passengers=5):
    init_db()
    session = get_session()
    driver = User(name="demo-driver")
    riders = [User(name=f"demo-rider{i}") for i in range(passengers)]
    session.add_all([driver, *riders])
    session.commit()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        ride = (await client.post("/rides", json={
            "driver_id": driver.id,
            "origin_address": "Central Station",
            "destination_address": "Airport Terminal 1",
            "scheduled_at": (utcnow() + timedelta(hours=1)).isoformat(),
            "seats": 1,
        })).json()
        ride_id = ride["ride_id"]
        for rider in riders:
            booked = (await client.post(f"/rides/{ride_id}/book", json={"user_id": rider.id})).json()
            await client.post(f"/rides/{ride_id}/requests/{booked['request_id']}/accept",
                              json={"user_id": driver.id})
        tasks = [client.post(f"/rides/{ride_id}/check-in", json={"user_id": r.id}) for r in riders]
        res = await asyncio.gather(*tasks)
        for r in res:
            print(r.status_code, r.json().get("error") or r.json()["request"]["status"])
        print("seats left:", (await client.get(f"/rides/{ride_id}")).json()["available_seats"])


if __name__ == "__main__":
    asyncio.run(run())
