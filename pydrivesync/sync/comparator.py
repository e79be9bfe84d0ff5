"""File comparison logic for sync operations.

The comparator merges the local and the remote tree into one
:class:`SyncEntry` per relative path and turns the entries into an ordered
list of :class:`SyncDecision` objects.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ..utils import DEFAULT_MTIME_TOLERANCE, calculate_md5
from .cache import ChecksumCache
from .modes import SyncDirection
from .scanner import LocalFile, RemoteFile

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Classification of one relative path."""

    UNCHANGED = "unchanged"
    UPLOAD_NEW = "upload_new"
    DOWNLOAD_NEW = "download_new"
    CONFLICT = "conflict"
    DELETE_LOCAL_EXTRANEOUS = "delete_local_extraneous"
    DELETE_REMOTE_EXTRANEOUS = "delete_remote_extraneous"


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    DELETE_LOCAL = "delete_local"
    """Delete local file"""

    DELETE_REMOTE = "delete_remote"
    """Delete remote file"""

    SKIP = "skip"
    """Skip file (no action needed)"""

    CONFLICT = "conflict"
    """File conflict detected"""

    @property
    def is_transfer(self) -> bool:
        return self in (SyncAction.UPLOAD, SyncAction.DOWNLOAD)

    @property
    def is_deletion(self) -> bool:
        return self in (SyncAction.DELETE_LOCAL, SyncAction.DELETE_REMOTE)


@dataclass
class SyncEntry:
    """Unit of comparison, keyed by relative path."""

    relative_path: str
    """POSIX-style path relative to the sync root"""

    kind: str
    """``file`` or ``directory``"""

    local: Optional[LocalFile]
    """Local side (if present)"""

    remote: Optional[RemoteFile]
    """Remote side (if present)"""

    status: SyncStatus

    reason: str = ""
    """Human-readable reason for the status"""

    @property
    def kind_mismatch(self) -> bool:
        """True if one side is a file and the other a directory."""
        return (
            self.local is not None
            and self.remote is not None
            and self.local.is_dir != self.remote.is_dir
        )


@dataclass
class SyncDecision:
    """Represents a decision about how to sync a file."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    entry: SyncEntry
    """Entry the decision was made for"""

    @property
    def relative_path(self) -> str:
        return self.entry.relative_path

    @property
    def local_file(self) -> Optional[LocalFile]:
        return self.entry.local

    @property
    def remote_file(self) -> Optional[RemoteFile]:
        return self.entry.remote


def _decision_rank(decision: SyncDecision) -> int:
    if decision.action.is_transfer:
        return 0
    if decision.action.is_deletion:
        return 2
    return 1


def order_decisions(decisions: list[SyncDecision]) -> list[SyncDecision]:
    """Order decisions as transfers, then skips and conflicts, then deletions.

    Each group is sorted by relative path, so destructive cleanup is always
    scheduled after every transfer of the run.
    """
    return sorted(decisions, key=lambda d: (_decision_rank(d), d.relative_path))


_STATUS_ACTIONS = {
    SyncStatus.UNCHANGED: SyncAction.SKIP,
    SyncStatus.UPLOAD_NEW: SyncAction.UPLOAD,
    SyncStatus.DOWNLOAD_NEW: SyncAction.DOWNLOAD,
    SyncStatus.CONFLICT: SyncAction.CONFLICT,
    SyncStatus.DELETE_LOCAL_EXTRANEOUS: SyncAction.DELETE_LOCAL,
    SyncStatus.DELETE_REMOTE_EXTRANEOUS: SyncAction.DELETE_REMOTE,
}

AnyFile = Union[LocalFile, RemoteFile]


class FileComparator:
    """Compares local and remote files to determine sync actions."""

    def __init__(
        self,
        direction: SyncDirection,
        checksum_cache: Optional[ChecksumCache] = None,
        mtime_tolerance: float = DEFAULT_MTIME_TOLERANCE,
        delete_extraneous: bool = False,
    ):
        """Initialize file comparator.

        Args:
            direction: Direction of the run
            checksum_cache: Cache used for local digests (None hashes every time)
            mtime_tolerance: Maximum modification time difference (seconds)
                for files of equal size to count as unchanged
            delete_extraneous: Turn destination-only paths into deletions
        """
        self.direction = direction
        self.checksum_cache = checksum_cache
        self.mtime_tolerance = mtime_tolerance
        self.delete_extraneous = delete_extraneous

    def plan(
        self,
        local_files: list[LocalFile],
        remote_files: list[RemoteFile],
    ) -> list[SyncDecision]:
        """Compare both trees and return the ordered decision list.

        Args:
            local_files: Local files and directories (ignore rules applied)
            remote_files: Remote files and folders (ignore rules applied)

        Returns:
            List of SyncDecision objects, transfers first, deletions last
        """
        entries = self.classify(local_files, remote_files)
        decisions = [self._to_decision(entry) for entry in entries]
        return order_decisions(decisions)

    def classify(
        self,
        local_files: list[LocalFile],
        remote_files: list[RemoteFile],
    ) -> list[SyncEntry]:
        """Classify every relative path found on either side.

        Directories present on both sides and source-only directories get no
        entry of their own; their files are classified individually. Below a
        destination-only directory or a file/directory mismatch nothing else
        is classified, the top-most entry covers the whole subtree.

        Returns:
            Entries sorted by relative path
        """
        local_map = {f.relative_path: f for f in local_files}
        remote_map = {f.relative_path: f for f in remote_files}

        entries: list[SyncEntry] = []
        covered: list[str] = []

        for path in sorted(set(local_map) | set(remote_map)):
            if any(path.startswith(prefix + "/") for prefix in covered):
                continue

            entry = self._classify_single(
                path, local_map.get(path), remote_map.get(path)
            )
            if entry is None:
                continue

            entries.append(entry)
            if entry.kind == "directory" or entry.kind_mismatch:
                covered.append(path)

        logger.debug(
            f"Classified {len(entries)} path(s) from {len(local_map)} local and "
            f"{len(remote_map)} remote item(s)"
        )
        return entries

    def _classify_single(
        self,
        path: str,
        local_file: Optional[LocalFile],
        remote_file: Optional[RemoteFile],
    ) -> Optional[SyncEntry]:
        # Case 1: present on both sides
        if local_file is not None and remote_file is not None:
            if local_file.is_dir and remote_file.is_dir:
                return None
            if local_file.is_dir != remote_file.is_dir:
                return SyncEntry(
                    relative_path=path,
                    kind=(
                        local_file.kind
                        if self.direction.source_is_local
                        else remote_file.kind
                    ),
                    local=local_file,
                    remote=remote_file,
                    status=SyncStatus.CONFLICT,
                    reason=(
                        f"Local {local_file.kind} conflicts with "
                        f"remote {remote_file.kind}"
                    ),
                )
            return self._compare_existing_files(path, local_file, remote_file)

        # Case 2: present only locally
        if local_file is not None:
            return self._handle_one_sided(path, local_file, None)

        # Case 3: present only remotely
        if remote_file is not None:
            return self._handle_one_sided(path, None, remote_file)

        return None

    def _handle_one_sided(
        self,
        path: str,
        local_file: Optional[LocalFile],
        remote_file: Optional[RemoteFile],
    ) -> Optional[SyncEntry]:
        """Handle a path that exists on one side only."""
        item: AnyFile = local_file or remote_file  # type: ignore[assignment]
        local_side = local_file is not None
        side = "local" if local_side else "remote"

        if local_side == self.direction.source_is_local:
            # Source-only: new files are transferred, directories recursed into
            if item.is_dir:
                return None
            return SyncEntry(
                relative_path=path,
                kind="file",
                local=local_file,
                remote=remote_file,
                status=(
                    SyncStatus.UPLOAD_NEW if local_side else SyncStatus.DOWNLOAD_NEW
                ),
                reason=f"New {side} file",
            )

        return SyncEntry(
            relative_path=path,
            kind=item.kind,
            local=local_file,
            remote=remote_file,
            status=(
                SyncStatus.DELETE_LOCAL_EXTRANEOUS
                if local_side
                else SyncStatus.DELETE_REMOTE_EXTRANEOUS
            ),
            reason=f"Extraneous {side} {item.kind} (absent from source)",
        )

    def _compare_existing_files(
        self, path: str, local_file: LocalFile, remote_file: RemoteFile
    ) -> SyncEntry:
        """Compare files that exist in both locations."""

        def entry(status: SyncStatus, reason: str) -> SyncEntry:
            return SyncEntry(
                relative_path=path,
                kind="file",
                local=local_file,
                remote=remote_file,
                status=status,
                reason=reason,
            )

        if local_file.size != remote_file.size:
            return entry(
                SyncStatus.CONFLICT,
                f"Sizes differ (local {local_file.size} vs "
                f"remote {remote_file.size} bytes)",
            )

        remote_mtime = remote_file.mtime
        if (
            remote_mtime is not None
            and abs(local_file.mtime - remote_mtime) <= self.mtime_tolerance
        ):
            return entry(SyncStatus.UNCHANGED, "Same size and modification time")

        # Timestamps drifted: let the content decide
        if not remote_file.checksum:
            return entry(
                SyncStatus.CONFLICT,
                "Modification times differ and remote checksum is unavailable",
            )

        try:
            local_checksum = self._local_checksum(local_file)
        except OSError as e:
            logger.warning(f"Cannot hash {local_file.path}: {e}")
            return entry(SyncStatus.CONFLICT, f"Cannot hash local file: {e}")

        if local_checksum == remote_file.checksum:
            return entry(
                SyncStatus.UNCHANGED,
                "Checksums match despite modification time drift",
            )
        return entry(SyncStatus.CONFLICT, "Content differs (checksum mismatch)")

    def _local_checksum(self, local_file: LocalFile) -> str:
        if self.checksum_cache is None:
            return calculate_md5(local_file.path)
        return self.checksum_cache.lookup(
            local_file.path, local_file.size, local_file.mtime
        )

    def _to_decision(self, entry: SyncEntry) -> SyncDecision:
        action = _STATUS_ACTIONS[entry.status]
        reason = entry.reason
        if action.is_deletion and not self.delete_extraneous:
            action = SyncAction.SKIP
            reason = f"{entry.reason}, kept"
        return SyncDecision(action=action, reason=reason, entry=entry)
