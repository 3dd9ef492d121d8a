# medibook/errors.py
"""Typed failures raised by the scheduling and settlement services.

Routers never build error responses for these by hand: a single exception
handler in ``medibook.main`` turns any ``SchedulingError`` into a JSON body of
the form ``{"detail": ..., "code": ...}`` with the class's status code.
"""
from typing import Optional


class SchedulingError(Exception):
    status_code = 400
    code = "SCHEDULING_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(SchedulingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(SchedulingError):
    status_code = 404
    code = "NOT_FOUND"


class Forbidden(SchedulingError):
    status_code = 403
    code = "FORBIDDEN"


class DoctorNotVerified(SchedulingError):
    status_code = 400
    code = "DOCTOR_NOT_VERIFIED"


class AppointmentTypeInactive(SchedulingError):
    status_code = 400
    code = "APPOINTMENT_TYPE_INACTIVE"


class LeadTimeViolation(SchedulingError):
    status_code = 400
    code = "LEAD_TIME_VIOLATION"


class SlotUnavailable(SchedulingError):
    status_code = 409
    code = "SLOT_UNAVAILABLE"


class SlotConflict(SlotUnavailable):
    """The slot was taken by another booking; callers may re-query and retry."""
    code = "SLOT_CONFLICT"

    def __init__(self, message: str = "This time slot is no longer available. Please choose another time."):
        super().__init__(message)


class InvalidTransition(SchedulingError):
    status_code = 409
    code = "INVALID_TRANSITION"


class DependencyFailure(SchedulingError):
    status_code = 502
    code = "DEPENDENCY_FAILURE"
