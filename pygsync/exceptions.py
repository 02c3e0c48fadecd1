"""Custom exceptions for PyGSync."""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .sync.operations import RunSummary


class GSyncError(Exception):
    """Base exception for all PyGSync errors."""

    pass


class ConfigError(GSyncError):
    """Configuration is missing or invalid."""

    pass


class AuthError(GSyncError):
    """Credentials were rejected or could not be refreshed."""

    pass


class APIError(GSyncError):
    """A Google Drive API request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(APIError):
    """The API rejected the request because of rate limiting."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ServerError(APIError):
    """The API returned a 5xx status."""

    pass


class NetworkError(APIError):
    """Timeout or connection failure while talking to the API."""

    pass


class QuotaExceededError(APIError):
    """Storage quota of the account is exhausted."""

    pass


class NotFoundError(APIError):
    """The remote object does not exist."""

    pass


class DrivePermissionError(APIError):
    """Access to the remote object is forbidden."""

    pass


class InvalidResponseError(APIError):
    """The API returned a response that could not be understood."""

    pass


class ScanError(GSyncError):
    """A local path could not be scanned."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot scan '{path}': {reason}")
        self.path = path
        self.reason = reason


class PlanError(GSyncError):
    """An operation cannot be applied because its plan context is missing."""

    pass


class StateStoreError(GSyncError):
    """The sync state database could not be read or written."""

    pass


class SyncAbortedError(GSyncError):
    """A sync run stopped early because of a fatal error."""

    def __init__(self, message: str, summary: "RunSummary", cause: Any = None):
        super().__init__(message)
        self.summary = summary
        self.cause = cause
