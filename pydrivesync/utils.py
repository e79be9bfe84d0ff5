"""Utility functions for pydrivesync."""

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# =============================================================================
# Constants for sync and transfer operations
# =============================================================================

# Chunk size for uploads and downloads (8 MiB)
DEFAULT_CHUNK_SIZE: int = 8 * 1024 * 1024

# Stall timeout in seconds, 0 disables it
DEFAULT_TIMEOUT: int = 5 * 60

# Files smaller than this are re-hashed every run instead of cached (5 MiB)
MIN_CACHE_FILE_SIZE: int = 5 * 1024 * 1024

# Attempts per transfer for transient errors
MAX_ERROR_RETRIES: int = 5

# Minimum interval between two progress events of one transfer
PROGRESS_INTERVAL: float = 1.0

# Tolerated modification time difference between local and remote files
DEFAULT_MTIME_TOLERANCE: float = 2.0

# Number of change pages pulled per run before falling back to a listing
DEFAULT_MAX_CHANGE_BATCHES: int = 10

# Width of the path column of `sync content`, 0 prints full paths
DEFAULT_PATH_WIDTH: int = 60
MIN_PATH_WIDTH: int = 9

DEFAULT_CACHE_FILE_NAME = "file_cache.json"
DEFAULT_IGNORE_FILE = ".drivesyncignore"

# Suffix of partially downloaded files (never synced)
TEMP_FILE_SUFFIX = ".pydrivesync-part"

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

_HASH_BLOCK_SIZE = 1024 * 1024


# =============================================================================
# Timestamp utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[float]:
    """Parse an RFC3339 timestamp from the drive API into a Unix timestamp.

    Args:
        timestamp_str: Timestamp string (e.g., "2025-01-15T10:30:00.000Z")

    Returns:
        Unix timestamp (seconds, UTC) or None if parsing fails

    Examples:
        >>> parse_iso_timestamp("1970-01-01T00:00:10Z")
        10.0
        >>> parse_iso_timestamp("not a date") is None
        True
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"

        # fromisoformat before 3.11 only accepts 3 or 6 fractional digits
        if "." in timestamp_str:
            head, rest = timestamp_str.split(".", 1)
            digits = ""
            while rest and rest[0].isdigit():
                digits += rest[0]
                rest = rest[1:]
            timestamp_str = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

        dt = datetime.fromisoformat(timestamp_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except (ValueError, AttributeError):
        return None


def format_rfc3339(timestamp: float) -> str:
    """Format a Unix timestamp as an RFC3339 UTC string.

    Microsecond precision is kept so the value can be compared exactly
    against a later stat of the same file.

    Examples:
        >>> format_rfc3339(10.5)
        '1970-01-01T00:00:10.500000Z'
    """
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


def truncate_string(text: str, max_length: int) -> str:
    """Shorten text to ``max_length`` characters, ending in "...".

    A ``max_length`` of 0 keeps the text as is.
    """
    if max_length <= 0 or len(text) <= max_length:
        return text
    indicator = "..."
    return text[: max(0, max_length - len(indicator))] + indicator


# =============================================================================
# Hash and file utilities
# =============================================================================


def calculate_md5(path: Path) -> str:
    """Stream a file through MD5 and return the hex digest.

    Args:
        path: File to hash

    Returns:
        Lowercase hex digest

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.md5()  # noqa: S324 - matches the remote md5Checksum
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(_HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` through a temp file and an atomic rename.

    A crash while writing leaves either the old file or the new file,
    never a truncated one.

    Args:
        path: Destination file
        data: JSON serializable data

    Raises:
        OSError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

