"""Persistent checksum cache.

The cache maps absolute local paths to the size, modification time and MD5
digest observed when the file was last hashed. It only saves work: a
missing, deleted or corrupt cache file costs a rehash, never a wrong result.

A record is trusted only while the file's current ``(size, mtime)`` is
exactly the stored pair. A content change that keeps both evades detection;
this is a known limitation of keying on stat data.
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from ..utils import (
    MIN_CACHE_FILE_SIZE,
    calculate_md5,
    format_rfc3339,
    write_json_atomic,
)

logger = logging.getLogger(__name__)


@dataclass
class CacheRecord:
    """Digest of one file at a given size and modification time."""

    path: str
    """Absolute local path"""

    size: int
    """File size in bytes when hashed"""

    mod_time: str
    """RFC3339 modification time when hashed"""

    checksum: str
    """MD5 hex digest"""

    def matches(self, size: int, mod_time: str) -> bool:
        return self.size == size and self.mod_time == mod_time

    def to_dict(self) -> dict:
        """Convert record to its persisted form (path is the key)."""
        return {"size": self.size, "modTime": self.mod_time, "checksum": self.checksum}

    @classmethod
    def from_dict(cls, path: str, data: dict) -> "CacheRecord":
        """Create a record from its persisted form.

        Raises:
            KeyError, TypeError, ValueError: If the data is malformed
        """
        return cls(
            path=path,
            size=int(data["size"]),
            mod_time=str(data["modTime"]),
            checksum=str(data["checksum"]),
        )


class ChecksumCache:
    """Persisted path -> (size, modTime, checksum) table.

    Thread-safe: a single lock guards every read-modify-write of a record.
    """

    def __init__(self, path: Path, min_size: int = MIN_CACHE_FILE_SIZE):
        """Initialize the cache.

        Args:
            path: JSON file the cache is persisted to
            min_size: Files smaller than this are hashed but never cached
        """
        self.path = path
        self.min_size = min_size
        self._records: dict[str, CacheRecord] = {}
        self._lock = threading.Lock()
        self._dirty = False
        self.hash_count = 0
        """Number of digests computed by this instance"""

    def __len__(self) -> int:
        return len(self._records)

    def load(self) -> None:
        """Load the cache file.

        A missing file is a cold start. An unreadable or malformed file is
        logged and treated as empty; it is overwritten by the next save.
        """
        with self._lock:
            self._records = {}
            self._dirty = False

            if not self.path.exists():
                logger.debug(f"No checksum cache at {self.path}, starting cold")
                return

            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("cache root is not an object")
                records = {
                    key: CacheRecord.from_dict(key, value)
                    for key, value in data.items()
                }
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(
                    f"Ignoring unreadable checksum cache {self.path}: {e}"
                )
                # Force a rewrite so the corrupt file does not linger
                self._dirty = True
                return

            self._records = records
            logger.debug(f"Loaded {len(records)} checksum cache record(s)")

    def lookup(self, path: Path, size: int, mtime: float) -> str:
        """Return the MD5 digest of a file, hashing only when needed.

        The cached digest is returned only if the stored record's size and
        modification time exactly equal ``size`` and ``mtime``. Otherwise the
        file is hashed; files at or above ``min_size`` get a fresh record.

        Args:
            path: Absolute path of the file
            size: Current size of the file
            mtime: Current modification time (Unix timestamp)

        Returns:
            MD5 hex digest

        Raises:
            OSError: If the file has to be hashed and cannot be read
        """
        key = str(path)
        mod_time = format_rfc3339(mtime)

        with self._lock:
            record = self._records.get(key)
            if record is not None and record.matches(size, mod_time):
                return record.checksum

            checksum = calculate_md5(path)
            self.hash_count += 1

            if size >= self.min_size:
                self._records[key] = CacheRecord(key, size, mod_time, checksum)
                self._dirty = True
            elif record is not None:
                # File shrank below the threshold; drop the stale record
                del self._records[key]
                self._dirty = True

            return checksum

    def store(self, path: Path, size: int, mtime: float, checksum: str) -> None:
        """Record a digest that is already known (e.g. after a download)."""
        if size < self.min_size:
            return
        key = str(path)
        with self._lock:
            self._records[key] = CacheRecord(
                key, size, format_rfc3339(mtime), checksum
            )
            self._dirty = True

    def discard(self, path: Path) -> None:
        """Forget a path (e.g. after the file was deleted)."""
        with self._lock:
            if self._records.pop(str(path), None) is not None:
                self._dirty = True

    def save(self) -> bool:
        """Persist the cache atomically if anything changed.

        Failures are logged, not raised: the cache is advisory.

        Returns:
            True if the file was written
        """
        with self._lock:
            if not self._dirty:
                return False
            data = {key: rec.to_dict() for key, rec in sorted(self._records.items())}
            try:
                write_json_atomic(self.path, data)
            except OSError as e:
                logger.warning(f"Failed to save checksum cache: {e}")
                return False
            self._dirty = False
            logger.debug(f"Saved {len(data)} checksum cache record(s) to {self.path}")
            return True
