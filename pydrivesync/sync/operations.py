"""Sync operations wrapper for unified upload/download interface."""

import logging
import threading
from pathlib import Path
from typing import Optional

from ..exceptions import DriveVerificationError
from ..models import FileEntry
from ..utils import calculate_md5
from .cache import ChecksumCache
from .comparator import SyncAction, SyncDecision
from .scanner import LocalFile, RemoteFile
from .stores import AbortRegistrar, ChunkCallback, LocalStore, RemoteStore

logger = logging.getLogger(__name__)


class SyncOperations:
    """Transfer and delete primitives for one sync pair.

    Every method performs exactly one attempt and raises on failure;
    retrying is up to the caller.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        local_root: Path,
        remote_root_id: str,
        checksum_cache: Optional[ChecksumCache] = None,
    ):
        """Initialize sync operations.

        Args:
            local: Local store
            remote: Remote store
            local_root: Local root directory of the pair
            remote_root_id: ID of the remote root folder of the pair
            checksum_cache: Cache used to verify uploads and record downloads
        """
        self.local = local
        self.remote = remote
        self.local_root = local_root
        self.remote_root_id = remote_root_id
        self.checksum_cache = checksum_cache
        self._folder_ids: dict[str, str] = {}
        self._folder_lock = threading.Lock()

    def register_remote_folders(self, remote_files: list[RemoteFile]) -> None:
        """Remember the IDs of remote folders that already exist."""
        with self._folder_lock:
            for remote_file in remote_files:
                if remote_file.is_dir:
                    self._folder_ids[remote_file.relative_path] = remote_file.id

    def ensure_remote_folder(self, relative_dir: str) -> str:
        """Return the ID of a remote folder, creating missing folders on the way.

        Creation is serialized so that parallel uploads into the same new
        directory never create it twice.

        Args:
            relative_dir: Folder path relative to the remote root ("" is the root)

        Returns:
            Folder ID
        """
        if not relative_dir:
            return self.remote_root_id
        with self._folder_lock:
            return self._ensure_folder_locked(relative_dir)

    def _ensure_folder_locked(self, relative_dir: str) -> str:
        folder_id = self._folder_ids.get(relative_dir)
        if folder_id is not None:
            return folder_id

        parent, _, name = relative_dir.rpartition("/")
        parent_id = (
            self._ensure_folder_locked(parent) if parent else self.remote_root_id
        )
        entry = self.remote.create_folder(name, parent_id)
        logger.debug(f"Created remote folder {relative_dir} ({entry.id})")
        self._folder_ids[relative_dir] = entry.id
        return entry.id

    def local_checksum(self, local_file: LocalFile) -> str:
        if self.checksum_cache is None:
            return calculate_md5(local_file.path)
        return self.checksum_cache.lookup(
            local_file.path, local_file.size, local_file.mtime
        )

    def upload_file(
        self,
        decision: SyncDecision,
        chunk_size: int,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
        register_abort: Optional[AbortRegistrar] = None,
    ) -> FileEntry:
        """Upload the local file of a decision and verify the result.

        A decision with a remote side overwrites that remote file in place,
        otherwise a new file is created in the matching remote folder.

        Args:
            decision: UPLOAD decision
            chunk_size: Bytes per chunk
            on_chunk: Callback after each chunk
            timeout: Per request timeout
            register_abort: Handed to the store to register its abort hook

        Returns:
            Metadata of the uploaded file

        Raises:
            DriveVerificationError: If size or checksum reported by the remote
                do not match the local file
        """
        local_file = decision.local_file
        if local_file is None:
            raise ValueError(f"No local file to upload for {decision.relative_path}")

        remote_file = decision.remote_file
        parent_dir, _, name = decision.relative_path.rpartition("/")
        if remote_file is not None:
            file_id: Optional[str] = remote_file.id
            parent_id: Optional[str] = None
        else:
            file_id = None
            parent_id = self.ensure_remote_folder(parent_dir)

        with self.local.open_read(local_file.path) as stream:
            entry = self.remote.upload(
                stream,
                name,
                local_file.size,
                parent_id=parent_id,
                file_id=file_id,
                mtime=local_file.mtime,
                chunk_size=chunk_size,
                on_chunk=on_chunk,
                timeout=timeout,
                register_abort=register_abort,
            )

        self._verify_upload(local_file, entry)
        return entry

    def _verify_upload(self, local_file: LocalFile, entry: FileEntry) -> None:
        if entry.size != local_file.size:
            raise DriveVerificationError(
                f"Uploaded size of {local_file.relative_path} is {entry.size}, "
                f"expected {local_file.size}"
            )
        if entry.md5_checksum:
            current = LocalFile.from_path(local_file.path, self.local_root)
            checksum = self.local_checksum(current)
            if checksum != entry.md5_checksum:
                raise DriveVerificationError(
                    f"Checksum mismatch after uploading {local_file.relative_path}"
                )

    def download_file(
        self,
        decision: SyncDecision,
        chunk_size: int,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
        register_abort: Optional[AbortRegistrar] = None,
    ) -> Path:
        """Download the remote file of a decision.

        The content is written to a temporary file that only replaces the
        destination once the byte count matches the planned size. The
        destination then gets the remote modification time, and its checksum
        is recorded in the cache.

        Args:
            decision: DOWNLOAD decision
            chunk_size: Bytes per chunk
            on_chunk: Callback after each chunk
            timeout: Per read timeout
            register_abort: Handed to the store to register its abort hook

        Returns:
            Path where file was saved

        Raises:
            DriveVerificationError: If fewer or more bytes than planned arrive
        """
        remote_file = decision.remote_file
        if remote_file is None:
            raise ValueError(
                f"No remote file to download for {decision.relative_path}"
            )

        local_path = self.local_root / decision.relative_path
        with self.local.open_write(local_path) as out:
            written = self.remote.download(
                remote_file.id,
                out,
                chunk_size=chunk_size,
                on_chunk=on_chunk,
                timeout=timeout,
                register_abort=register_abort,
            )
            if written != remote_file.size:
                raise DriveVerificationError(
                    f"Downloaded {written} bytes of {decision.relative_path}, "
                    f"expected {remote_file.size}"
                )

        if remote_file.mtime is not None:
            self.local.set_mtime(local_path, remote_file.mtime)

        if self.checksum_cache is not None and remote_file.checksum:
            stat = self.local.stat(local_path)
            self.checksum_cache.store(
                local_path, stat.st_size, stat.st_mtime, remote_file.checksum
            )
        return local_path

    def delete_remote(self, remote_file: RemoteFile) -> None:
        """Delete a remote file or folder (folders recursively)."""
        self.remote.delete(remote_file.id)

    def delete_local(self, local_file: LocalFile) -> None:
        """Delete a local file or directory (directories recursively)."""
        self.local.delete(local_file.path)
        if self.checksum_cache is not None and not local_file.is_dir:
            self.checksum_cache.discard(local_file.path)

    def delete_source(self, decision: SyncDecision) -> None:
        """Remove the source side of a verified transfer."""
        if decision.action == SyncAction.UPLOAD:
            if decision.local_file is not None:
                self.delete_local(decision.local_file)
        elif decision.remote_file is not None:
            self.delete_remote(decision.remote_file)
