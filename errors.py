"""Error taxonomy for ride lifecycle actions.

Every domain error carries a stable ``code`` and a user-facing ``message``;
the HTTP layer maps ``status_code`` straight onto the response.
"""


class RideError(Exception):
    """Base class for errors returned by lifecycle actions."""
    code = "ride_error"
    status_code = 400
    default_message = "The ride action could not be completed."

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class InvalidTransition(RideError):
    """Raised when an action is not allowed from the request's current state."""
    code = "invalid_transition"
    status_code = 409
    default_message = "This booking has changed since you last saw it. Refresh and try again."


class RideEnded(InvalidTransition):
    code = "ride_ended"
    default_message = "This ride has already departed and can no longer be booked."


class ActiveRequestExists(InvalidTransition):
    code = "active_request_exists"
    default_message = "You already have a booking request on this ride."


class AlreadyRated(InvalidTransition):
    code = "already_rated"
    default_message = "You have already rated this ride."


class Unauthorized(RideError):
    """Raised when the actor is not the ride's driver or the request's owner."""
    code = "unauthorized"
    status_code = 403
    default_message = "You are not allowed to act on this booking."


class SelfBookingForbidden(RideError):
    code = "self_booking_forbidden"
    status_code = 403
    default_message = "You cannot book a ride you are driving."


class GenderMismatch(RideError):
    code = "gender_mismatch"
    status_code = 403
    default_message = "This ride is restricted to passengers of a different gender."


class SeatsUnavailable(RideError):
    code = "seats_unavailable"
    status_code = 409
    default_message = "There are no seats left on this ride."


class NotFound(RideError):
    code = "not_found"
    status_code = 404
    default_message = "The ride or booking could not be found."


class TransientFailure(RideError):
    """Raised when a collaborator timed out or was unreachable; safe to retry."""
    code = "transient_failure"
    status_code = 503
    default_message = "We could not reach the server. Please try again."


class ValidationFailed(RideError):
    code = "validation_failed"
    status_code = 400
    default_message = "Some ride details are missing or invalid."


class InvalidRating(ValidationFailed):
    code = "invalid_rating"
    default_message = "Ratings must be a whole number from 1 to 5."


class ScheduleConflict(ValidationFailed):
    code = "schedule_conflict"
    status_code = 409
    default_message = "You already have a ride scheduled around this time."


class NotificationDeliveryFailed(RideError):
    """Non-fatal: logged by the coordinator, never returned to the caller."""
    code = "notification_delivery_failed"
    status_code = 502
    default_message = "The notification could not be delivered."
