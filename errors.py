# errors.py
"""Typed failures raised by the booking, payment and catalog layers.

Each error carries a stable ``kind`` (the taxonomy bucket), a ``code``
(the specific failure) and the HTTP status the API answers with.
"""


class ServiceError(Exception):
    kind = "ServiceError"
    code = "SERVICE_ERROR"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {
            "success": False,
            "kind": self.kind,
            "code": self.code,
            "detail": self.message,
        }


# -------------------------
# TAXONOMY
# -------------------------

class NotFound(ServiceError):
    kind = "NotFound"
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class Unauthorized(ServiceError):
    kind = "Unauthorized"
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Access token is required"


class Forbidden(ServiceError):
    kind = "Forbidden"
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied"


class ValidationFailed(ServiceError):
    kind = "ValidationError"
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Validation failed"


class Conflict(ServiceError):
    kind = "Conflict"
    code = "CONFLICT"
    status_code = 409
    default_message = "Resource already exists"


class StateConflict(ServiceError):
    kind = "StateConflict"
    code = "STATE_CONFLICT"
    status_code = 400
    default_message = "Operation not allowed in the current state"


class CapacityExceeded(ServiceError):
    kind = "CapacityExceeded"
    code = "CAPACITY_EXCEEDED"
    status_code = 400
    default_message = "Capacity exceeded"


class StorageError(ServiceError):
    kind = "StorageError"
    code = "STORAGE_ERROR"
    status_code = 503
    default_message = "Storage is temporarily unavailable, please retry"


# -------------------------
# BOOKING
# -------------------------

class ScheduleNotFound(NotFound):
    code = "SCHEDULE_NOT_FOUND"
    default_message = "Schedule not found"


class ReservationNotFound(NotFound):
    code = "RESERVATION_NOT_FOUND"
    default_message = "Reservation not found or access denied"


class NotBookable(StateConflict):
    code = "NOT_BOOKABLE"
    default_message = "Schedule is not available for booking"


class SoldOut(CapacityExceeded):
    code = "SOLD_OUT"
    default_message = "No seats available on this schedule"


class DuplicateReference(Conflict):
    code = "DUPLICATE_REFERENCE"
    default_message = "Could not allocate a unique reference, please retry"


class SeatTaken(Conflict):
    code = "SEAT_TAKEN"
    default_message = "Seat is already taken on this schedule"


class AlreadyCancelled(StateConflict):
    code = "ALREADY_CANCELLED"
    default_message = "Reservation is already cancelled"


# -------------------------
# PAYMENTS
# -------------------------

class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found or access denied"


class NotConfirmed(StateConflict):
    code = "NOT_CONFIRMED"
    default_message = "Cannot pay for cancelled or completed reservations"


class DuplicatePayment(StateConflict):
    code = "DUPLICATE_PAYMENT"
    default_message = "Payment already exists for this reservation"


class NotCompleted(StateConflict):
    code = "NOT_COMPLETED"
    default_message = "Can only refund completed payments"


class ExceedsAmount(CapacityExceeded):
    code = "EXCEEDS_AMOUNT"
    default_message = "Refund amount exceeds payment amount"


class InvalidTransition(StateConflict):
    code = "INVALID_TRANSITION"
    default_message = "Status transition not allowed"
