"""Data models for drive API responses."""

from dataclasses import dataclass, field
from typing import Any, Optional

from .utils import FOLDER_MIME_TYPE, parse_iso_timestamp


@dataclass
class FileEntry:
    """A file or folder as returned by the drive API."""

    id: str
    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    md5_checksum: Optional[str] = None
    modified_time: Optional[str] = None
    parents: list[str] = field(default_factory=list)
    trashed: bool = False

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def parent_id(self) -> Optional[str]:
        """First parent folder ID (drive files normally have exactly one)."""
        return self.parents[0] if self.parents else None

    @property
    def mtime(self) -> Optional[float]:
        """Modification time as a Unix timestamp."""
        return parse_iso_timestamp(self.modified_time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileEntry":
        """Create a FileEntry from an API ``File`` resource.

        Args:
            data: Resource dictionary (``size`` arrives as a string)

        Returns:
            FileEntry instance
        """
        size = data.get("size")
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            mime_type=data.get("mimeType", "application/octet-stream"),
            size=int(size) if size not in (None, "") else 0,
            md5_checksum=data.get("md5Checksum"),
            modified_time=data.get("modifiedTime"),
            parents=list(data.get("parents") or []),
            trashed=bool(data.get("trashed", False)),
        )


@dataclass
class FileEntriesResult:
    """One page of a folder listing."""

    entries: list[FileEntry]
    next_page_token: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "FileEntriesResult":
        return cls(
            entries=[FileEntry.from_dict(f) for f in data.get("files", [])],
            next_page_token=data.get("nextPageToken"),
        )


@dataclass
class ChangeRecord:
    """A single entry of the remote change feed."""

    file_id: str
    removed: bool = False
    file: Optional[FileEntry] = None
    time: Optional[str] = None

    @property
    def is_removal(self) -> bool:
        """True if the file is gone (deleted, trashed or no longer visible)."""
        return self.removed or self.file is None or self.file.trashed

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeRecord":
        file_data = data.get("file")
        return cls(
            file_id=str(data.get("fileId", "")),
            removed=bool(data.get("removed", False)),
            file=FileEntry.from_dict(file_data) if file_data else None,
            time=data.get("time"),
        )


@dataclass
class ChangesPage:
    """One page of the remote change feed.

    Exactly one of ``next_page_token`` (more pages follow) and
    ``new_start_page_token`` (feed exhausted) is normally set.
    """

    changes: list[ChangeRecord]
    next_page_token: Optional[str] = None
    new_start_page_token: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChangesPage":
        return cls(
            changes=[ChangeRecord.from_dict(c) for c in data.get("changes", [])],
            next_page_token=data.get("nextPageToken"),
            new_start_page_token=data.get("newStartPageToken"),
        )
