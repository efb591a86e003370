"""
Exception hierarchy shared by the booking services.

Each error carries a short category string so the HTTP layer can map it to
a status code without inspecting messages.
"""

from typing import Optional


class BookingServiceError(Exception):
    """Base exception for booking service operations."""

    category = "booking_error"
    http_status = 500


class ValidationError(BookingServiceError):
    """Malformed input: identifier, date range, duration, request fields."""

    category = "validation_error"
    http_status = 400


class NotFoundError(BookingServiceError):
    """Unknown practice code or booking identifier."""

    category = "not_found"
    http_status = 404


class ExternalCallError(BookingServiceError):
    """A call to a practice endpoint failed or returned something unusable."""

    category = "external_call_error"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ConfigurationError(BookingServiceError):
    """Signing key or local identity is missing or invalid."""

    category = "configuration_error"
    http_status = 500


class StorageError(BookingServiceError):
    """The persistent store is unavailable."""

    category = "storage_unavailable"
    http_status = 503
