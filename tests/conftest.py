"""Shared fixtures: an in-memory remote store, temp directories and config."""

import hashlib
import tempfile
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pytest

from pydrivesync.config import Config
from pydrivesync.exceptions import (
    DriveAPIError,
    DriveNetworkError,
    DriveNotFoundError,
    DriveUploadError,
)
from pydrivesync.models import ChangeRecord, ChangesPage, FileEntry
from pydrivesync.utils import FOLDER_MIME_TYPE, format_rfc3339

ROOT_ID = "root-folder"


class FakeRemoteStore:
    """In-memory drive implementing the RemoteStore protocol.

    Every mutation is appended to a change log; cursors are positions in
    that log. Queue exceptions in ``upload_errors``/``download_errors`` to
    make the next transfers fail, or set ``chunk_delay`` to slow them down
    (only the files named in ``slow_names`` when that set is not empty). A
    delayed chunk ends early once the transfer's abort hook is called.
    """

    def __init__(self, root_id: str = ROOT_ID, page_size: int = 100):
        self.root_id = root_id
        self.page_size = page_size
        self.entries: dict[str, FileEntry] = {}
        self.contents: dict[str, bytes] = {}
        self.change_log: list[ChangeRecord] = []
        self.upload_errors: list[Exception] = []
        self.download_errors: list[Exception] = []
        self.chunk_delay = 0.0
        self.slow_names: set[str] = set()
        self.list_calls = 0
        self.upload_calls = 0
        self.deleted: list[str] = []
        self._next_id = 0
        self._lock = threading.Lock()

    # ---- helpers for tests ----

    def _delay(self, name: str, aborted: threading.Event) -> None:
        if self.chunk_delay and (not self.slow_names or name in self.slow_names):
            if aborted.wait(self.chunk_delay):
                raise DriveNetworkError(f"Transfer of {name} aborted")

    def _abort_event(self, register_abort) -> threading.Event:
        aborted = threading.Event()
        if register_abort is not None:
            register_abort(aborted.set)
        return aborted

    def _new_id(self) -> str:
        self._next_id += 1
        return f"id-{self._next_id}"

    def _log(self, entry: FileEntry, removed: bool = False) -> None:
        self.change_log.append(
            ChangeRecord(
                file_id=entry.id,
                removed=removed,
                file=None if removed else replace(entry, parents=list(entry.parents)),
                time=format_rfc3339(time.time()),
            )
        )

    def _child(self, parent_id: str, name: str) -> Optional[FileEntry]:
        for entry in self.entries.values():
            if entry.parent_id == parent_id and entry.name == name:
                return entry
        return None

    def _folder_for(self, relative_dir: str) -> str:
        parent_id = self.root_id
        if not relative_dir:
            return parent_id
        for name in relative_dir.split("/"):
            folder = self._child(parent_id, name)
            if folder is None:
                folder = self.create_folder(name, parent_id)
            parent_id = folder.id
        return parent_id

    def add_file(
        self, path: str, content: bytes, mtime: Optional[float] = None
    ) -> FileEntry:
        """Create a file (and its folders) directly on the remote."""
        parent_dir, _, name = path.rpartition("/")
        parent_id = self._folder_for(parent_dir)
        return self._store(
            content,
            name,
            parent_id=parent_id,
            file_id=None,
            mtime=mtime if mtime is not None else time.time(),
        )

    def add_folder(self, path: str) -> str:
        return self._folder_for(path)

    def move(self, file_id: str, parent_id: str) -> FileEntry:
        """Move an item to another parent; only the item itself is logged."""
        with self._lock:
            entry = replace(self.entries[file_id], parents=[parent_id])
            self.entries[file_id] = entry
            self._log(entry)
            return entry

    def path_of(self, file_id: str) -> str:
        parts = []
        entry = self.entries[file_id]
        while True:
            parts.append(entry.name)
            if entry.parent_id == self.root_id:
                break
            entry = self.entries[entry.parent_id]
        return "/".join(reversed(parts))

    def files(self) -> dict[str, bytes]:
        """Return the content of every remote file keyed by relative path."""
        return {
            self.path_of(file_id): content
            for file_id, content in self.contents.items()
        }

    def find(self, path: str) -> Optional[FileEntry]:
        for file_id, entry in self.entries.items():
            if self.path_of(file_id) == path:
                return entry
        return None

    def _store(
        self,
        content: bytes,
        name: str,
        parent_id: Optional[str],
        file_id: Optional[str],
        mtime: Optional[float],
    ) -> FileEntry:
        with self._lock:
            if file_id is None:
                file_id = self._new_id()
                parents = [parent_id] if parent_id else [self.root_id]
            else:
                parents = self.entries[file_id].parents
            entry = FileEntry(
                id=file_id,
                name=name,
                size=len(content),
                md5_checksum=hashlib.md5(content).hexdigest(),
                modified_time=format_rfc3339(
                    mtime if mtime is not None else time.time()
                ),
                parents=list(parents),
            )
            self.entries[file_id] = entry
            self.contents[file_id] = content
            self._log(entry)
            return entry

    # ---- RemoteStore protocol ----

    def list_tree(self, folder_id: str) -> list[tuple[FileEntry, str]]:
        self.list_calls += 1
        result: list[tuple[FileEntry, str]] = []

        def walk(parent_id: str, prefix: str) -> None:
            children = sorted(
                (e for e in self.entries.values() if e.parent_id == parent_id),
                key=lambda e: e.name,
            )
            for child in children:
                path = f"{prefix}/{child.name}" if prefix else child.name
                result.append((child, path))
                if child.is_folder:
                    walk(child.id, path)

        walk(folder_id, "")
        return result

    def create_folder(self, name: str, parent_id: str) -> FileEntry:
        with self._lock:
            entry = FileEntry(
                id=self._new_id(),
                name=name,
                mime_type=FOLDER_MIME_TYPE,
                modified_time=format_rfc3339(time.time()),
                parents=[parent_id],
            )
            self.entries[entry.id] = entry
            self._log(entry)
            return entry

    def upload(
        self,
        stream,
        name,
        size,
        parent_id=None,
        file_id=None,
        mtime=None,
        chunk_size=8 * 1024 * 1024,
        on_chunk=None,
        timeout=None,
        register_abort=None,
    ) -> FileEntry:
        aborted = self._abort_event(register_abort)
        with self._lock:
            self.upload_calls += 1
            error = self.upload_errors.pop(0) if self.upload_errors else None
        if error is not None:
            raise error

        data = b""
        while len(data) < size:
            chunk = stream.read(min(chunk_size, size - len(data)))
            if not chunk:
                raise DriveUploadError(f"Source of {name} ended early")
            self._delay(name, aborted)
            data += chunk
            if on_chunk is not None:
                on_chunk(len(chunk))
        return self._store(data, name, parent_id, file_id, mtime)

    def download(
        self,
        file_id,
        out,
        chunk_size=8 * 1024 * 1024,
        on_chunk=None,
        timeout=None,
        register_abort=None,
    ) -> int:
        aborted = self._abort_event(register_abort)
        with self._lock:
            error = self.download_errors.pop(0) if self.download_errors else None
        if error is not None:
            raise error
        if file_id not in self.contents:
            raise DriveNotFoundError("Resource not found", status_code=404)

        content = self.contents[file_id]
        written = 0
        for start in range(0, len(content), chunk_size):
            chunk = content[start : start + chunk_size]
            self._delay(self.entries[file_id].name, aborted)
            out.write(chunk)
            written += len(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))
        return written

    def delete(self, file_id: str) -> None:
        with self._lock:
            if file_id not in self.entries:
                raise DriveNotFoundError("Resource not found", status_code=404)
            doomed = [file_id]
            index = 0
            while index < len(doomed):
                current = doomed[index]
                doomed.extend(
                    e.id for e in self.entries.values() if e.parent_id == current
                )
                index += 1
            for doomed_id in doomed:
                entry = self.entries.pop(doomed_id)
                self.contents.pop(doomed_id, None)
                self.deleted.append(doomed_id)
                self._log(entry, removed=True)

    def changes(self, cursor: str) -> ChangesPage:
        if not cursor.isdigit() or int(cursor) > len(self.change_log):
            raise DriveAPIError("Invalid page token", status_code=400)
        start = int(cursor)
        end = start + self.page_size
        page = self.change_log[start:end]
        if end >= len(self.change_log):
            return ChangesPage(
                changes=page, new_start_page_token=str(len(self.change_log))
            )
        return ChangesPage(changes=page, next_page_token=str(end))

    def start_cursor(self) -> str:
        return str(len(self.change_log))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def local_root(temp_dir):
    """Local sync root inside the temporary directory."""
    root = temp_dir / "local"
    root.mkdir()
    return root


@pytest.fixture
def config(temp_dir):
    """Configuration pointing at a private config directory."""
    return Config(config_dir=temp_dir / "config", access_token="test-token")


@pytest.fixture
def remote():
    """Empty in-memory remote drive."""
    return FakeRemoteStore()
