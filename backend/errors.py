"""Error taxonomy shared by the stores, the booking engine and the API layer.

Every business-rule violation is one of the ``BookingServiceError`` subclasses
below; the API turns them into ``{"detail": ...}`` responses using
``status_code``. ``PersistenceError`` is deliberately outside that hierarchy:
it means the durable state could not be written and is reported as a generic
server failure.
"""


class BookingServiceError(Exception):
    status_code = 400
    default_detail = "Bad request"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(BookingServiceError):
    status_code = 404
    default_detail = "Not found"


class Unauthorized(BookingServiceError):
    status_code = 401
    default_detail = "Invalid credentials"


class Forbidden(BookingServiceError):
    status_code = 403
    default_detail = "Forbidden"


class Conflict(BookingServiceError):
    status_code = 409
    default_detail = "Conflict"


class InvalidRequest(BookingServiceError):
    status_code = 400
    default_detail = "Invalid request"


class Expired(InvalidRequest):
    default_detail = "OTP has expired"


class InvalidCode(InvalidRequest):
    default_detail = "Invalid OTP"


class PersistenceError(Exception):
    """Raised by a gateway when a collection cannot be loaded or written."""
