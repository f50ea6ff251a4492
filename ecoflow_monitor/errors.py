"""Exception types raised across the collection and history pipeline."""

from typing import Optional


class MonitorError(Exception):
    """Base class for all errors raised by this package."""


class VendorTransportError(MonitorError):
    """The EcoFlow API could not be reached (DNS, TLS, timeout, reset)."""

    retryable = True


class VendorAPIError(MonitorError):
    """
    The EcoFlow API answered, but not with a success envelope.

    ``code`` is the vendor response code (or the HTTP status as a string when
    the failure happened before an envelope was returned) and ``status`` is
    the HTTP-class status used to decide whether a retry can help.
    """

    def __init__(self, message: str, code: Optional[str] = None, status: int = 400):
        super().__init__(message)
        self.code = code
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status >= 500


class AuthenticationError(MonitorError):
    """No valid session accompanies the request."""


class AuthorizationError(MonitorError):
    """The caller does not own the requested device."""


class ValidationError(MonitorError):
    """Malformed time range, granularity or interval parameters."""


class CollectionRequestError(MonitorError):
    """
    The self-collection endpoint could not be called or refused the call.

    ``status`` is None when no HTTP response was received at all.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status >= 500


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))
