"""Directory scanning utilities for sync operations."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..models import FileEntry
from ..utils import TEMP_FILE_SUFFIX
from .ignore import IGNORE_FILE_NAME, IgnoreFileManager

logger = logging.getLogger(__name__)

# Native documents (Docs, Sheets, ...) have no binary content to download
_NATIVE_MIME_PREFIX = "application/vnd.google-apps."


@dataclass
class LocalFile:
    """Represents a local file or directory with metadata."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes (0 for directories)"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    is_dir: bool = False
    """True for directories"""

    @property
    def kind(self) -> str:
        return "directory" if self.is_dir else "file"

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> "LocalFile":
        """Create LocalFile from a path.

        Args:
            file_path: Absolute path to the file
            base_path: Base path for calculating relative paths

        Returns:
            LocalFile instance
        """
        stat = file_path.stat()
        is_dir = file_path.is_dir()
        # Use as_posix() to ensure forward slashes on all platforms
        relative_path = file_path.relative_to(base_path).as_posix()

        return cls(
            path=file_path,
            relative_path=relative_path,
            size=0 if is_dir else stat.st_size,
            mtime=stat.st_mtime,
            is_dir=is_dir,
        )


@dataclass
class RemoteFile:
    """Represents a remote file or folder with metadata."""

    entry: FileEntry
    """Remote file entry from API"""

    relative_path: str
    """Relative path below the remote root folder"""

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def size(self) -> int:
        """File size in bytes."""
        return self.entry.size

    @property
    def mtime(self) -> Optional[float]:
        """Last modification time (Unix timestamp)."""
        return self.entry.mtime

    @property
    def checksum(self) -> Optional[str]:
        """MD5 hex digest reported by the remote, if any."""
        return self.entry.md5_checksum

    @property
    def is_dir(self) -> bool:
        return self.entry.is_folder

    @property
    def kind(self) -> str:
        return "directory" if self.is_dir else "file"


class DirectoryScanner:
    """Scans directories and builds file lists.

    Supports ``.drivesyncignore`` files for gitignore-style pattern matching.
    When scanning a directory, any ignore file in that directory or its
    subdirectories is loaded and applied hierarchically. The same rules are
    applied to the remote listing so ignored remote paths are never treated
    as extraneous.

    Examples:
        >>> scanner = DirectoryScanner(ignore_patterns=["*.tmp", "cache/"])
        >>> files = scanner.scan_local(Path("/sync/folder"))
    """

    def __init__(
        self,
        ignore_patterns: Optional[list[str]] = None,
        exclude_dot_files: bool = False,
        use_ignore_files: bool = True,
    ):
        """Initialize directory scanner.

        Args:
            ignore_patterns: List of glob patterns to ignore (e.g., ["*.log", "temp/*"])
            exclude_dot_files: Whether to exclude files/folders starting with dot
            use_ignore_files: Whether to load ignore files from directories
        """
        self.ignore_patterns = ignore_patterns or []
        self.exclude_dot_files = exclude_dot_files
        self.use_ignore_files = use_ignore_files
        self._ignore_manager: Optional[IgnoreFileManager] = None

    def _init_ignore_manager(self, base_path: Path) -> IgnoreFileManager:
        manager = IgnoreFileManager(base_path=base_path)
        if self.ignore_patterns:
            manager.load_cli_patterns(self.ignore_patterns)
        return manager

    def _is_ignored_name(self, name: str) -> bool:
        if name == IGNORE_FILE_NAME or name.endswith(TEMP_FILE_SUFFIX):
            return True
        return self.exclude_dot_files and name.startswith(".")

    def should_ignore(
        self,
        path: Path,
        base_path: Path,
        is_dir: bool = False,
    ) -> bool:
        """Check if a local path should be ignored.

        Args:
            path: Path to check
            base_path: Base path for relative path calculation
            is_dir: Whether the path is a directory

        Returns:
            True if path should be ignored
        """
        if self._is_ignored_name(path.name):
            return True

        if self._ignore_manager is not None:
            relative_path = path.relative_to(base_path).as_posix()
            if self._ignore_manager.is_ignored(relative_path, is_dir=is_dir):
                logger.debug(f"Ignoring (from rules): {relative_path}")
                return True

        return False

    def scan_local(
        self, directory: Path, base_path: Optional[Path] = None
    ) -> list[LocalFile]:
        """Recursively scan a local directory.

        Directories are returned as well as files, parents before children.

        Args:
            directory: Directory to scan
            base_path: Base path for calculating relative paths (defaults to directory)

        Returns:
            List of LocalFile objects
        """
        if base_path is None:
            base_path = directory
            self._ignore_manager = self._init_ignore_manager(base_path)

        files: list[LocalFile] = []

        try:
            if self.use_ignore_files and self._ignore_manager is not None:
                self._ignore_manager.load_from_directory(directory)

            for item in sorted(directory.iterdir()):
                is_dir = item.is_dir()
                if self.should_ignore(item, base_path, is_dir=is_dir):
                    continue

                if item.is_file():
                    try:
                        files.append(LocalFile.from_path(item, base_path))
                    except OSError as e:
                        logger.warning(f"Skipping unreadable file {item}: {e}")
                elif is_dir:
                    files.append(LocalFile.from_path(item, base_path))
                    files.extend(self.scan_local(item, base_path))
        except PermissionError as e:
            logger.warning(f"Skipping unreadable directory {directory}: {e}")

        return files

    def scan_remote(
        self, entries_with_paths: list[tuple[FileEntry, str]]
    ) -> list[RemoteFile]:
        """Process remote file entries into RemoteFile objects.

        Ignore rules loaded by the last :meth:`scan_local` (or the CLI
        patterns alone) are applied to the remote paths as well.

        Args:
            entries_with_paths: List of (FileEntry, relative_path) tuples

        Returns:
            List of RemoteFile objects, folders included
        """
        remote_files: list[RemoteFile] = []
        ignored_dirs: list[str] = []

        for entry, rel_path in entries_with_paths:
            if any(rel_path.startswith(d + "/") for d in ignored_dirs):
                continue
            if not entry.is_folder and entry.mime_type.startswith(_NATIVE_MIME_PREFIX):
                logger.debug(f"Skipping native document without content: {rel_path}")
                continue

            name = rel_path.rsplit("/", 1)[-1]
            ignored = self._is_ignored_name(name)
            if not ignored and self._ignore_manager is not None:
                ignored = self._ignore_manager.is_ignored(
                    rel_path, is_dir=entry.is_folder
                )
            if ignored:
                logger.debug(f"Ignoring remote path: {rel_path}")
                if entry.is_folder:
                    ignored_dirs.append(rel_path)
                continue

            remote_files.append(RemoteFile(entry=entry, relative_path=rel_path))

        return remote_files

    def prepare(self, base_path: Path) -> None:
        """Set up CLI ignore rules when there is no local tree to scan yet."""
        self._ignore_manager = self._init_ignore_manager(base_path)
