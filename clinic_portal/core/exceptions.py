"""Custom application exceptions."""

from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500, details: Any = None):
        """Initialize exception with message, status code and optional details."""
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error", details: Any = None):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422, details=details)


class ServiceUnavailableException(AppException):
    """Downstream service unavailable exception."""

    def __init__(self, message: str = "Service unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


# Appointment lifecycle


class InvalidTransitionException(ValidationException):
    """Appointment status change not allowed by the lifecycle."""

    def __init__(self, current: str, target: str):
        """Initialize with the rejected move."""
        self.current = current
        self.target = target
        super().__init__(f"Cannot change appointment status from '{current}' to '{target}'")


# Booking failures, one per classified kind


class AdvanceNoticeException(ValidationException):
    """Booking violates the minimum advance-notice rule."""

    def __init__(
        self,
        message: str = "Appointments must be booked at least 24 hours in advance.",
    ):
        """Initialize with 422 status code."""
        super().__init__(message)


class SlotConflictException(ConflictException):
    """Slot was taken concurrently or is already booked."""

    def __init__(self, message: str = "There is already an appointment booked at this time."):
        """Initialize with 409 status code."""
        super().__init__(message)


class SlotUnavailableException(ConflictException):
    """Slot is no longer open for booking."""

    def __init__(
        self,
        message: str = "This time slot is no longer available. Please select another.",
    ):
        """Initialize with 409 status code."""
        super().__init__(message)


class BookingFailedException(BadRequestException):
    """Booking failed for an unclassified reason."""

    def __init__(self, message: str = "Could not book the appointment. Please try again."):
        """Initialize with 400 status code."""
        super().__init__(message)


class BookingStepException(ValidationException):
    """Booking flow cannot move past the current step."""


# Notification delivery


class ChannelUnavailableException(ServiceUnavailableException):
    """No connected WhatsApp instance to send through."""

    def __init__(self, message: str = "WhatsApp is not connected"):
        """Initialize with 503 status code."""
        super().__init__(message)


class RetryExhaustedException(ConflictException):
    """Automatic retry refused for an exhausted delivery attempt."""

    def __init__(self, message: str = "Automatic retry limit reached"):
        """Initialize with 409 status code."""
        super().__init__(message)


# Managed backend


class RpcError(AppException):
    """Error returned by the managed backend."""

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        code: str | None = None,
        details: Any = None,
        hint: str | None = None,
    ):
        """Initialize with backend error fields."""
        self.code = code
        self.hint = hint
        super().__init__(message, status_code=status_code, details=details)


class RpcTransientError(RpcError):
    """Timeout, connectivity or 5xx failure from the managed backend."""

    def __init__(self, message: str = "Backend temporarily unavailable", status_code: int = 504):
        """Initialize with 504 status code."""
        super().__init__(message, status_code=status_code)
