import contextlib
import logging

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from coordinator import RideLifecycleCoordinator
from db import init_db
from errors import RideError
from expiry import ExpiryWatcher
from models import RequestStatus, RideStatus
from monitor import PeriodicMonitor
from settings import ENABLE_MONITORS, EXPIRY_INTERVAL_SECONDS, LOG_LEVEL, REMINDER_INTERVAL_SECONDS

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

coordinator = RideLifecycleCoordinator()
watcher = ExpiryWatcher(coordinator.repository)


def error_response(exc: RideError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def result_response(result, **extra):
    if not result.ok:
        return error_response(result.error)
    body = {"message": result.message}
    if result.ride is not None:
        body["ride"] = result.ride.model_dump(mode="json")
    if result.request is not None:
        body["request"] = result.request.model_dump(mode="json")
    if result.extra:
        body.update({k: v for k, v in result.extra.items() if k != "passenger_name"})
    body.update(extra)
    return JSONResponse(body)


async def read_payload(request: Request, required=()):
    try:
        payload = await request.json()
    except ValueError:
        return None, JSONResponse({"error": "invalid JSON body"}, status_code=400)
    if not isinstance(payload, dict):
        return None, JSONResponse({"error": "expected a JSON object"}, status_code=400)
    for k in required:
        if k not in payload:
            return None, JSONResponse({"error": f"missing {k}"}, status_code=400)
    for k in ("user_id", "driver_id", "request_id", "seats"):
        if k in payload and payload[k] is not None and (isinstance(payload[k], bool) or not isinstance(payload[k], int)):
            return None, JSONResponse({"error": f"{k} must be an integer"}, status_code=400)
    return payload, None


# ────────────────────────── rides ──────────────────────────

async def publish_ride(request: Request):
    required = ["driver_id", "origin_address", "destination_address", "scheduled_at", "seats"]
    payload, error = await read_payload(request, required)
    if error:
        return error
    optional = ["recurrence", "recurrence_until", "required_gender", "no_smoking", "no_children",
                "no_music", "origin_lat", "origin_lng", "dest_lat", "dest_lng"]
    result = await run_in_threadpool(
        coordinator.publish_ride,
        payload["driver_id"],
        payload["origin_address"],
        payload["destination_address"],
        payload["scheduled_at"],
        payload["seats"],
        **{k: payload[k] for k in optional if k in payload},
    )
    if result.ok:
        return result_response(result, ride_id=result.ride.id)
    return result_response(result)


async def list_rides(request: Request):
    status = request.query_params.get("status")
    driver_id = request.query_params.get("driver_id")
    try:
        status = RideStatus(status) if status else None
        driver_id = int(driver_id) if driver_id else None
    except ValueError:
        return JSONResponse({"error": "invalid filter"}, status_code=400)
    try:
        # listing is also a natural moment to retire departed rides
        await run_in_threadpool(watcher.sweep)
        rides = await run_in_threadpool(coordinator.repository.list_rides, status, driver_id)
    except RideError as exc:
        return error_response(exc)
    return JSONResponse([r.model_dump(mode="json") for r in rides])


async def get_ride(request: Request):
    ride_id = request.path_params["ride_id"]
    try:
        ride = await run_in_threadpool(coordinator.repository.get_ride, ride_id)
    except RideError as exc:
        return error_response(exc)
    return JSONResponse(ride.model_dump(mode="json"))


async def ride_requests(request: Request):
    ride_id = request.path_params["ride_id"]
    filters = {"ride_id": ride_id}
    status = request.query_params.get("status")
    if status:
        try:
            filters["status"] = RequestStatus(status)
        except ValueError:
            return JSONResponse({"error": f"unknown status {status}"}, status_code=400)
    try:
        await run_in_threadpool(coordinator.repository.get_ride, ride_id)
        rows = await run_in_threadpool(lambda: coordinator.repository.find_requests(**filters))
    except RideError as exc:
        return error_response(exc)
    return JSONResponse([r.model_dump(mode="json") for r in rows])


# ────────────────────────── booking actions ──────────────────────────

async def book_ride(request: Request):
    payload, error = await read_payload(request, ["user_id"])
    if error:
        return error
    result = await run_in_threadpool(coordinator.book, request.path_params["ride_id"], payload["user_id"])
    if result.ok:
        return result_response(result, request_id=result.request.id)
    return result_response(result)


def driver_action(name):
    async def handler(request: Request):
        payload, error = await read_payload(request, ["user_id"])
        if error:
            return error
        action = getattr(coordinator, name)
        result = await run_in_threadpool(
            action, request.path_params["ride_id"], payload["user_id"], request.path_params["request_id"])
        return result_response(result)
    handler.__name__ = f"{name}_request"
    return handler


def passenger_action(name):
    async def handler(request: Request):
        payload, error = await read_payload(request, ["user_id"])
        if error:
            return error
        action = getattr(coordinator, name)
        result = await run_in_threadpool(
            action, request.path_params["ride_id"], payload["user_id"], payload.get("request_id"))
        return result_response(result)
    handler.__name__ = f"{name}_ride"
    return handler


async def rate_ride(request: Request):
    payload, error = await read_payload(request, ["user_id", "rating"])
    if error:
        return error
    result = await run_in_threadpool(
        coordinator.rate, request.path_params["ride_id"], payload["user_id"], payload["rating"],
        payload.get("request_id"))
    return result_response(result)


# ────────────────────────── notifications ──────────────────────────

async def user_notifications(request: Request):
    user_id = request.path_params["user_id"]
    unread_only = request.query_params.get("unread") == "true"
    try:
        rows = await run_in_threadpool(coordinator.notifier.inbox, user_id, unread_only)
    except RideError as exc:
        return error_response(exc)
    return JSONResponse([n.model_dump(mode="json") for n in rows])


async def read_notification(request: Request):
    payload, error = await read_payload(request, ["user_id"])
    if error:
        return error
    notification_id = request.path_params["notification_id"]
    try:
        updated = await run_in_threadpool(coordinator.notifier.mark_one_read, notification_id, payload["user_id"])
    except RideError as exc:
        return error_response(exc)
    if not updated:
        return JSONResponse({"error": "notification not found"}, status_code=404)
    return JSONResponse({"id": notification_id, "read": True})


async def read_all_notifications(request: Request):
    user_id = request.path_params["user_id"]
    try:
        count = await run_in_threadpool(coordinator.notifier.mark_read, user_id)
    except RideError as exc:
        return error_response(exc)
    return JSONResponse({"user_id": user_id, "marked_read": count})


# ────────────────────────── maintenance ──────────────────────────

async def run_expiry(request: Request):
    try:
        report = await run_in_threadpool(watcher.sweep)
    except RideError as exc:
        return error_response(exc)
    return JSONResponse(report.to_dict())


async def dispatch_reminders(request: Request):
    try:
        counts = await run_in_threadpool(coordinator.notifier.dispatch_due)
    except RideError as exc:
        return error_response(exc)
    return JSONResponse(counts)


@contextlib.asynccontextmanager
async def lifespan(app):
    init_db()
    monitors = []
    if ENABLE_MONITORS:
        monitors = [
            PeriodicMonitor("ride-expiry", EXPIRY_INTERVAL_SECONDS, watcher.sweep),
            PeriodicMonitor("ride-reminders", REMINDER_INTERVAL_SECONDS, coordinator.notifier.dispatch_due),
        ]
        for m in monitors:
            m.start()
    yield
    for m in monitors:
        m.stop()


routes = [
    Route("/rides", publish_ride, methods=["POST"]),
    Route("/rides", list_rides, methods=["GET"]),
    Route("/rides/{ride_id:int}", get_ride, methods=["GET"]),
    Route("/rides/{ride_id:int}/requests", ride_requests, methods=["GET"]),
    Route("/rides/{ride_id:int}/book", book_ride, methods=["POST"]),
    Route("/rides/{ride_id:int}/requests/{request_id:int}/accept", driver_action("accept"), methods=["POST"]),
    Route("/rides/{ride_id:int}/requests/{request_id:int}/reject", driver_action("reject"), methods=["POST"]),
    Route("/rides/{ride_id:int}/check-in", passenger_action("check_in"), methods=["POST"]),
    Route("/rides/{ride_id:int}/check-out", passenger_action("check_out"), methods=["POST"]),
    Route("/rides/{ride_id:int}/cancel", passenger_action("cancel"), methods=["POST"]),
    Route("/rides/{ride_id:int}/rate", rate_ride, methods=["POST"]),
    Route("/users/{user_id:int}/notifications", user_notifications, methods=["GET"]),
    Route("/users/{user_id:int}/notifications/read", read_all_notifications, methods=["POST"]),
    Route("/notifications/{notification_id:int}/read", read_notification, methods=["POST"]),
    Route("/expiry/run", run_expiry, methods=["POST"]),
    Route("/reminders/dispatch", dispatch_reminders, methods=["POST"]),
]

app = Starlette(debug=False, routes=routes, lifespan=lifespan)
