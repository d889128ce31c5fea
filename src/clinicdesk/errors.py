"""Exception types shared across the booking engine.

Transient scheduler failures are retried (see retry.py); everything else
surfaces to the turn processor, which turns it into a spoken fallback.
"""


class ClinicDeskError(Exception):
    """Base class for all errors raised by clinicdesk."""


class ConfigurationError(ClinicDeskError):
    """Missing or unusable setup: no eligible business, practitioner or
    appointment type, or an unreadable clinic knowledge file."""


class SchedulerError(ClinicDeskError):
    """Non-2xx response from the external scheduler."""

    def __init__(self, status_code: int, method: str = "", path: str = "", body: str = ""):
        self.status_code = status_code
        self.method = method
        self.path = path
        self.body = body
        super().__init__(f"{method} {path} returned {status_code}: {body[:200]}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500

    @property
    def method_not_allowed(self) -> bool:
        return self.status_code in (405, 501)


class BookingError(ClinicDeskError):
    """A booking-path operation failed after retries were exhausted."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")
