class BookingError(Exception):
    """
    Expected, caller-facing failure of a booking operation.

    Routes let these propagate; the app-level error handler renders them as
    {"error": <reason>, "code": <code>, ...details} with status_code.
    """

    status_code = 400
    code = "error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"error": self.message, "code": self.code}
        out.update(self.details)
        return out


class NotFound(BookingError):
    status_code = 404
    code = "not_found"


class InvalidWindow(BookingError):
    status_code = 400
    code = "invalid_window"


class InvalidTransition(BookingError):
    status_code = 409
    code = "invalid_transition"


class Conflict(BookingError):
    status_code = 409
    code = "conflict"


class Unauthorized(BookingError):
    status_code = 403
    code = "unauthorized"


class DownstreamFailure(BookingError):
    status_code = 503
    code = "downstream_failure"
