"""State management for incremental remote listings.

For every sync pair we remember the remote tree seen by the last run and
the change cursor pointing just before that listing. The next run pulls the
changes since the cursor and merges them onto the remembered tree instead of
listing the whole remote folder again.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models import FileEntry
from ..utils import FOLDER_MIME_TYPE, write_json_atomic

logger = logging.getLogger(__name__)


@dataclass
class RemoteItemState:
    """A remote file or folder as remembered between runs."""

    id: str
    name: str
    parent_id: str
    path: str
    """Relative path below the remote root"""

    mime_type: str = "application/octet-stream"
    size: int = 0
    modified_time: Optional[str] = None
    md5_checksum: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    def to_entry(self) -> FileEntry:
        return FileEntry(
            id=self.id,
            name=self.name,
            mime_type=self.mime_type,
            size=self.size,
            md5_checksum=self.md5_checksum,
            modified_time=self.modified_time,
            parents=[self.parent_id],
        )

    @classmethod
    def from_entry(
        cls, entry: FileEntry, parent_id: str, path: str
    ) -> "RemoteItemState":
        return cls(
            id=entry.id,
            name=entry.name,
            parent_id=parent_id,
            path=path,
            mime_type=entry.mime_type,
            size=entry.size,
            modified_time=entry.modified_time,
            md5_checksum=entry.md5_checksum,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "parentId": self.parent_id,
            "path": self.path,
            "mimeType": self.mime_type,
            "size": self.size,
            "modifiedTime": self.modified_time,
            "md5Checksum": self.md5_checksum,
        }

    @classmethod
    def from_dict(cls, item_id: str, data: dict) -> "RemoteItemState":
        return cls(
            id=item_id,
            name=data["name"],
            parent_id=data["parentId"],
            path=data["path"],
            mime_type=data.get("mimeType", "application/octet-stream"),
            size=int(data.get("size", 0)),
            modified_time=data.get("modifiedTime"),
            md5_checksum=data.get("md5Checksum"),
        )


class RemoteTree:
    """Snapshot of the remote tree below one root folder, keyed by item ID."""

    def __init__(
        self, root_id: str, items: Optional[dict[str, RemoteItemState]] = None
    ):
        self.root_id = root_id
        self.items: dict[str, RemoteItemState] = items or {}

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self.items

    @classmethod
    def from_entries(
        cls, root_id: str, entries_with_paths: list[tuple[FileEntry, str]]
    ) -> "RemoteTree":
        """Build a tree from a full recursive listing (parents before children)."""
        tree = cls(root_id)
        tree._insert_listing(root_id, "", entries_with_paths)
        return tree

    def _insert_listing(
        self,
        base_id: str,
        base_path: str,
        entries_with_paths: list[tuple[FileEntry, str]],
    ) -> int:
        folder_ids: dict[str, str] = {"": base_id}
        for entry, rel_path in entries_with_paths:
            parent_path = rel_path.rsplit("/", 1)[0] if "/" in rel_path else ""
            parent_id = folder_ids.get(parent_path, base_id)
            path = f"{base_path}/{rel_path}" if base_path else rel_path
            self.items[entry.id] = RemoteItemState.from_entry(entry, parent_id, path)
            if entry.is_folder:
                folder_ids[rel_path] = entry.id
        return len(entries_with_paths)

    def graft(
        self, folder_id: str, entries_with_paths: list[tuple[FileEntry, str]]
    ) -> int:
        """Insert the listed contents of a folder already in the tree.

        Args:
            folder_id: ID of the folder the listing was taken from
            entries_with_paths: Recursive listing of that folder, with paths
                relative to it (parents before children)

        Returns:
            Number of inserted items
        """
        folder = self.items[folder_id]
        return self._insert_listing(folder_id, folder.path, entries_with_paths)

    def to_entries(self) -> list[tuple[FileEntry, str]]:
        """Return (FileEntry, relative_path) tuples sorted by path."""
        return [
            (item.to_entry(), item.path)
            for item in sorted(self.items.values(), key=lambda i: i.path)
        ]

    def _descendant_ids(self, path: str) -> list[str]:
        prefix = path + "/"
        return [i.id for i in self.items.values() if i.path.startswith(prefix)]

    def remove(self, item_id: str) -> bool:
        """Remove an item and, for folders, everything below it.

        Returns:
            True if the item was part of the tree
        """
        item = self.items.pop(item_id, None)
        if item is None:
            return False
        if item.is_folder:
            for child_id in self._descendant_ids(item.path):
                del self.items[child_id]
        return True

    def upsert(self, entry: FileEntry) -> Optional[bool]:
        """Insert or update an item from its current metadata.

        Args:
            entry: Current metadata of the item

        Returns:
            True if the item is now in the tree, False if it left the tree
            (its parent is outside), None if its parent is not known yet
        """
        parent_id = entry.parent_id
        if parent_id == self.root_id:
            path = entry.name
        elif parent_id in self.items and self.items[parent_id].is_folder:
            path = f"{self.items[parent_id].path}/{entry.name}"
        else:
            if self.remove(entry.id):
                return False
            return None

        old = self.items.get(entry.id)
        if old is not None and old.is_folder and old.path != path:
            # Moved or renamed folder: rewrite the paths below it
            old_prefix = old.path + "/"
            for child_id in self._descendant_ids(old.path):
                child = self.items[child_id]
                child.path = path + "/" + child.path[len(old_prefix) :]

        self.items[entry.id] = RemoteItemState.from_entry(entry, parent_id, path)
        return True

    def to_dict(self) -> dict:
        return {
            item_id: item.to_dict() for item_id, item in sorted(self.items.items())
        }

    @classmethod
    def from_dict(cls, root_id: str, data: dict) -> "RemoteTree":
        items = {
            item_id: RemoteItemState.from_dict(item_id, d)
            for item_id, d in data.items()
        }
        return cls(root_id, items)


@dataclass
class SyncState:
    """Represents the state of a sync pair from a previous run."""

    local_path: str
    """Local directory path that was synced"""

    remote_id: str
    """Remote root folder ID that was synced"""

    cursor: Optional[str] = None
    """Change cursor taken just before the remembered listing"""

    tree: Optional[RemoteTree] = None
    """Remote tree as seen by the last run"""

    last_sync: Optional[str] = None
    """ISO timestamp of last successful sync"""

    def to_dict(self) -> dict:
        """Convert state to dictionary for JSON serialization."""
        return {
            "local_path": self.local_path,
            "remote_id": self.remote_id,
            "cursor": self.cursor,
            "last_sync": self.last_sync,
            "entries": self.tree.to_dict() if self.tree is not None else {},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncState":
        """Create SyncState from dictionary."""
        remote_id = data.get("remote_id", "")
        return cls(
            local_path=data.get("local_path", ""),
            remote_id=remote_id,
            cursor=data.get("cursor"),
            tree=RemoteTree.from_dict(remote_id, data.get("entries", {})),
            last_sync=data.get("last_sync"),
        )


class SyncStateManager:
    """Manages sync state persistence.

    The state is stored in a JSON file per sync pair in the configuration
    directory, keyed by a hash of the local path and the remote folder ID.
    """

    def __init__(self, state_dir: Path):
        """Initialize state manager.

        Args:
            state_dir: Directory to store state files
        """
        self.state_dir = state_dir

    def _get_state_key(self, local_path: Path, remote_id: str) -> str:
        """Generate a unique key for a sync pair.

        Args:
            local_path: Local directory path
            remote_id: Remote root folder ID

        Returns:
            Hash-based key for the sync pair
        """
        # Use absolute path for consistency
        local_abs = str(local_path.resolve())
        combined = f"{local_abs}:{remote_id}"
        return hashlib.sha256(combined.encode()).hexdigest()[:16]

    def get_state_file(self, local_path: Path, remote_id: str) -> Path:
        key = self._get_state_key(local_path, remote_id)
        return self.state_dir / f"{key}.json"

    def load_state(self, local_path: Path, remote_id: str) -> Optional[SyncState]:
        """Load sync state for a sync pair.

        Args:
            local_path: Local directory path
            remote_id: Remote root folder ID

        Returns:
            SyncState if found and readable, None otherwise
        """
        state_file = self.get_state_file(local_path, remote_id)

        if not state_file.exists():
            logger.debug(f"No sync state found at {state_file}")
            return None

        try:
            with open(state_file, encoding="utf-8") as f:
                data = json.load(f)
            state = SyncState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to load sync state: {e}")
            return None

        logger.debug(
            f"Loaded sync state with {len(state.tree or [])} remote item(s) "
            f"from {state.last_sync}"
        )
        return state

    def save_state(
        self,
        local_path: Path,
        remote_id: str,
        cursor: Optional[str],
        tree: RemoteTree,
    ) -> None:
        """Save sync state for a sync pair.

        Args:
            local_path: Local directory path
            remote_id: Remote root folder ID
            cursor: Change cursor to resume from next run
            tree: Remote tree matching the cursor
        """
        state = SyncState(
            local_path=str(local_path.resolve()),
            remote_id=remote_id,
            cursor=cursor,
            tree=tree,
            last_sync=datetime.now().isoformat(),
        )

        state_file = self.get_state_file(local_path, remote_id)

        try:
            write_json_atomic(state_file, state.to_dict())
            logger.debug(f"Saved sync state with {len(tree)} item(s) to {state_file}")
        except OSError as e:
            logger.warning(f"Failed to save sync state: {e}")

    def list_states(self) -> list[SyncState]:
        """Return the state of every sync pair synced so far.

        Unreadable state files are logged and skipped.
        """
        if not self.state_dir.is_dir():
            return []

        states = []
        for state_file in sorted(self.state_dir.glob("*.json")):
            try:
                with open(state_file, encoding="utf-8") as f:
                    states.append(SyncState.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping unreadable sync state {state_file}: {e}")
        return sorted(states, key=lambda s: (s.local_path, s.remote_id))

    def clear_state(self, local_path: Path, remote_id: str) -> bool:
        """Clear sync state for a sync pair.

        Returns:
            True if state was cleared, False if no state existed
        """
        state_file = self.get_state_file(local_path, remote_id)

        if state_file.exists():
            state_file.unlink()
            logger.debug(f"Cleared sync state at {state_file}")
            return True
        return False
