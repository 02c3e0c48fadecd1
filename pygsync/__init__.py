"""PyGSync - one-way backup of local directories to Google Drive."""

from .api import DriveClient
from .auth import OAuthCredentials
from .exceptions import (
    APIError,
    AuthError,
    ConfigError,
    DrivePermissionError,
    GSyncError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    PlanError,
    QuotaExceededError,
    RateLimitError,
    ScanError,
    ServerError,
    StateStoreError,
    SyncAbortedError,
)
from .utils import file_fingerprint

__version__ = "0.1.0"

__all__ = [
    "DriveClient",
    "OAuthCredentials",
    "APIError",
    "AuthError",
    "ConfigError",
    "DrivePermissionError",
    "GSyncError",
    "InvalidResponseError",
    "NetworkError",
    "NotFoundError",
    "PlanError",
    "QuotaExceededError",
    "RateLimitError",
    "ScanError",
    "ServerError",
    "StateStoreError",
    "SyncAbortedError",
    "file_fingerprint",
]
