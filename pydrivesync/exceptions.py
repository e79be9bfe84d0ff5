"""Exceptions raised by the drive client and the sync engine."""

from typing import Optional


class DriveError(Exception):
    """Base class for all pydrivesync errors."""


class DriveConfigError(DriveError):
    """Invalid or missing configuration (detected before any I/O)."""


class DriveFileNotFoundError(DriveError):
    """A local file given to an operation does not exist."""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class InvalidCursorError(DriveError):
    """The change cursor is empty, unknown or rejected by the remote.

    The caller is expected to fall back to a full remote listing.
    """


class DriveAPIError(DriveError):
    """Error returned by, or while talking to, the drive API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DriveAuthenticationError(DriveAPIError):
    """Access token missing, invalid or expired (HTTP 401)."""


class DrivePermissionError(DriveAPIError):
    """Access to the resource is forbidden (HTTP 403)."""


class DriveNotFoundError(DriveAPIError):
    """The remote resource does not exist (HTTP 404)."""


class DriveQuotaExceededError(DriveAPIError):
    """The storage quota of the drive is exhausted."""


class DriveRateLimitError(DriveAPIError):
    """Too many requests (HTTP 429 or a rate-limit 403)."""


class DriveServerError(DriveAPIError):
    """Server side failure (HTTP 5xx)."""


class DriveNetworkError(DriveAPIError):
    """Connection level failure."""


class DriveTimeoutError(DriveAPIError):
    """No data was transferred within the stall timeout."""


class DriveInvalidResponseError(DriveAPIError):
    """The server answered with something we cannot parse."""


class DriveUploadError(DriveAPIError):
    """An upload could not be completed."""


class DriveDownloadError(DriveAPIError):
    """A download could not be completed."""


class DriveVerificationError(DriveAPIError):
    """Transferred content does not match what was planned."""


TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    DriveNetworkError,
    DriveRateLimitError,
    DriveServerError,
    DriveTimeoutError,
    DriveVerificationError,
)


def is_transient(error: BaseException) -> bool:
    """Return True if the error is worth retrying.

    Network errors, rate limiting, 5xx responses, stall timeouts and
    verification mismatches are transient. Authentication, permission,
    not-found and quota errors are not, and neither are local I/O errors.

    Examples:
        >>> is_transient(DriveServerError("boom", status_code=503))
        True
        >>> is_transient(DriveQuotaExceededError("full", status_code=403))
        False
    """
    return isinstance(error, TRANSIENT_ERRORS)
