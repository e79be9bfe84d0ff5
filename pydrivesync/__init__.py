"""pydrivesync - keep a local directory and a cloud drive folder in sync."""

from .api import DriveClient
from .config import Config
from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    DriveConfigError,
    DriveDownloadError,
    DriveError,
    DriveFileNotFoundError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveQuotaExceededError,
    DriveRateLimitError,
    DriveServerError,
    DriveTimeoutError,
    DriveUploadError,
    DriveVerificationError,
    InvalidCursorError,
)
from .utils import calculate_md5

__version__ = "0.1.0"

__all__ = [
    "Config",
    "DriveClient",
    "DriveError",
    "DriveAPIError",
    "DriveAuthenticationError",
    "DriveConfigError",
    "DriveDownloadError",
    "DriveFileNotFoundError",
    "DriveInvalidResponseError",
    "DriveNetworkError",
    "DriveNotFoundError",
    "DrivePermissionError",
    "DriveQuotaExceededError",
    "DriveRateLimitError",
    "DriveServerError",
    "DriveTimeoutError",
    "DriveUploadError",
    "DriveVerificationError",
    "InvalidCursorError",
    "calculate_md5",
]
