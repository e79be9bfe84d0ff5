"""Storage capabilities consumed by the sync core.

The planner and the executor only talk to a :class:`LocalStore` and a
:class:`RemoteStore`. :class:`LocalFileStore` and :class:`DriveRemoteStore`
are the production implementations; tests plug in in-memory fakes.
"""

import logging
import os
import shutil
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, ContextManager, Optional, Protocol

from ..api import DriveClient
from ..exceptions import DriveUploadError
from ..file_entries_manager import FileEntriesManager
from ..models import ChangesPage, FileEntry
from ..utils import DEFAULT_CHUNK_SIZE, TEMP_FILE_SUFFIX, format_rfc3339
from .scanner import DirectoryScanner, LocalFile

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[int], None]
"""Called with the size of every transferred chunk; may raise to cancel"""

AbortHook = Callable[[], None]
"""Aborts the transfer in flight; called from the stall timer thread"""

AbortRegistrar = Callable[[AbortHook], None]
"""Handed to a transfer so that it can register its abort hook"""


class LocalStore(Protocol):
    def enumerate(
        self, root: Path, scanner: Optional[DirectoryScanner] = None
    ) -> list[LocalFile]:
        ...

    def open_read(self, path: Path) -> BinaryIO:
        ...

    def open_write(self, path: Path) -> ContextManager[BinaryIO]:
        ...

    def delete(self, path: Path) -> None:
        ...

    def stat(self, path: Path) -> os.stat_result:
        ...

    def set_mtime(self, path: Path, mtime: float) -> None:
        ...


class RemoteStore(Protocol):
    def list_tree(self, folder_id: str) -> list[tuple[FileEntry, str]]:
        ...

    def create_folder(self, name: str, parent_id: str) -> FileEntry:
        ...

    def upload(
        self,
        stream: BinaryIO,
        name: str,
        size: int,
        parent_id: Optional[str] = None,
        file_id: Optional[str] = None,
        mtime: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
        register_abort: Optional[AbortRegistrar] = None,
    ) -> FileEntry:
        ...

    def download(
        self,
        file_id: str,
        out: BinaryIO,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
        register_abort: Optional[AbortRegistrar] = None,
    ) -> int:
        ...

    def delete(self, file_id: str) -> None:
        ...

    def changes(self, cursor: str) -> ChangesPage:
        ...

    def start_cursor(self) -> str:
        ...


class LocalFileStore:
    """Local filesystem access used by the sync core."""

    def enumerate(
        self, root: Path, scanner: Optional[DirectoryScanner] = None
    ) -> list[LocalFile]:
        """Recursively list files and directories below ``root``."""
        if not root.exists():
            return []
        return (scanner or DirectoryScanner()).scan_local(root)

    def open_read(self, path: Path) -> BinaryIO:
        return open(path, "rb")

    @contextmanager
    def open_write(self, path: Path) -> Iterator[BinaryIO]:
        """Write a file through a temporary sibling.

        The temporary file replaces ``path`` only when the block exits
        normally; on any exception it is removed and the original file is
        left untouched.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + TEMP_FILE_SUFFIX)
        try:
            with open(temp_path, "wb") as f:
                yield f
            os.replace(temp_path, path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def delete(self, path: Path) -> None:
        """Delete a file, or a directory with everything below it."""
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    def stat(self, path: Path) -> os.stat_result:
        return path.stat()

    def set_mtime(self, path: Path, mtime: float) -> None:
        os.utime(path, (mtime, mtime))


class DriveRemoteStore:
    """Remote store backed by the drive REST API."""

    def __init__(self, client: DriveClient):
        """Initialize the store.

        Args:
            client: Drive API client
        """
        self.client = client
        self.manager = FileEntriesManager(client)

    def list_tree(self, folder_id: str) -> list[tuple[FileEntry, str]]:
        """List a folder recursively as it is now, never from earlier listings."""
        self.manager.clear_cache()
        return self.manager.get_all_recursive(folder_id)

    def create_folder(self, name: str, parent_id: str) -> FileEntry:
        return FileEntry.from_dict(self.client.create_folder(name, parent_id))

    def upload(
        self,
        stream: BinaryIO,
        name: str,
        size: int,
        parent_id: Optional[str] = None,
        file_id: Optional[str] = None,
        mtime: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
        register_abort: Optional[AbortRegistrar] = None,
    ) -> FileEntry:
        """Upload ``size`` bytes of ``stream`` through a resumable session.

        Args:
            stream: Open binary stream positioned at the start of the content
            name: Remote file name
            size: Number of bytes to send
            parent_id: Parent folder for a new file
            file_id: Existing file to overwrite (None creates a new file)
            mtime: Modification time to store remotely
            chunk_size: Bytes per request
            on_chunk: Callback after each chunk
            timeout: Per request timeout
            register_abort: Receives a hook that stops the upload before its
                next chunk. A request already on the wire is bounded by
                ``timeout``.

        Returns:
            Metadata of the uploaded file

        Raises:
            DriveUploadError: If the source ends early, the upload was
                aborted or the session never completes
        """
        aborted = threading.Event()
        if register_abort is not None:
            register_abort(aborted.set)

        session_url = self.client.start_upload_session(
            name,
            size,
            parent_id=parent_id,
            file_id=file_id,
            modified_time=format_rfc3339(mtime) if mtime is not None else None,
        )
        logger.debug(f"Opened upload session for {name} ({size} bytes)")

        result = None
        if size == 0:
            result = self.client.upload_chunk(session_url, b"", 0, 0, timeout=timeout)

        offset = 0
        while offset < size:
            if aborted.is_set():
                raise DriveUploadError(f"Upload of {name} aborted at byte {offset}")
            chunk = stream.read(min(chunk_size, size - offset))
            if not chunk:
                raise DriveUploadError(
                    f"Source of {name} ended after {offset} of {size} bytes"
                )
            result = self.client.upload_chunk(
                session_url, chunk, offset, size, timeout=timeout
            )
            offset += len(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))

        if result is None:
            raise DriveUploadError(f"Upload session for {name} did not complete")
        return FileEntry.from_dict(result)

    def download(
        self,
        file_id: str,
        out: BinaryIO,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
        register_abort: Optional[AbortRegistrar] = None,
    ) -> int:
        """Stream the content of a file into ``out``.

        ``register_abort`` receives a hook that closes the response stream.
        A read already blocked on the socket is bounded by ``timeout``.

        Returns:
            Number of bytes written
        """
        written = 0
        with self.client.open_download(
            file_id, chunk_size, timeout=timeout, register_abort=register_abort
        ) as chunks:
            for chunk in chunks:
                out.write(chunk)
                written += len(chunk)
                if on_chunk is not None:
                    on_chunk(len(chunk))
        return written

    def delete(self, file_id: str) -> None:
        self.client.delete_file(file_id)

    def changes(self, cursor: str) -> ChangesPage:
        return ChangesPage.from_api_response(self.client.get_changes(cursor))

    def start_cursor(self) -> str:
        return self.client.get_start_page_token()
