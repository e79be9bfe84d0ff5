"""Sync pair and run option definitions."""

from dataclasses import dataclass, field
from pathlib import Path

from ..exceptions import DriveConfigError
from ..utils import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_CHANGE_BATCHES,
    DEFAULT_MTIME_TOLERANCE,
    DEFAULT_TIMEOUT,
    PROGRESS_INTERVAL,
)
from .modes import SyncDirection
from .resolver import ConflictDecision


@dataclass
class SyncPair:
    """One local root directory matched to one remote folder."""

    local: Path
    """Local root directory"""

    remote_id: str
    """ID of the remote root folder"""

    direction: SyncDirection
    """Which side is the source of this run"""

    ignore: list[str] = field(default_factory=list)
    """Extra ignore patterns on top of the ignore file"""

    exclude_dot_files: bool = False
    """Skip files and folders whose name starts with a dot"""

    def __post_init__(self) -> None:
        """Normalize field types."""
        # Cache keys and the state file name derive from the absolute root
        self.local = Path(self.local).expanduser().resolve()

        self.remote_id = str(self.remote_id).strip()
        if not self.remote_id:
            raise ValueError("Remote folder ID cannot be empty")

    def __str__(self) -> str:
        arrow = "->" if self.direction == SyncDirection.UPLOAD else "<-"
        return f"{self.local} {arrow} {self.remote_id} ({self.direction.value})"


@dataclass
class SyncOptions:
    """Run-wide options for one sync."""

    conflict_decision: ConflictDecision = ConflictDecision.NONE
    delete_extraneous: bool = False
    dry_run: bool = False

    timeout: float = DEFAULT_TIMEOUT
    """Stall timeout in seconds, 0 disables it"""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    show_progress: bool = True
    progress_interval: float = PROGRESS_INTERVAL

    delete_source: bool = False
    """Remove the source file once its transfer is verified"""

    workers: int = 1
    mtime_tolerance: float = DEFAULT_MTIME_TOLERANCE

    full_listing: bool = False
    """Ignore the persisted change cursor and list the whole remote tree"""

    max_change_batches: int = DEFAULT_MAX_CHANGE_BATCHES

    def __post_init__(self) -> None:
        """Validate option values.

        Raises:
            DriveConfigError: If a value is out of range
        """
        if isinstance(self.conflict_decision, str):
            self.conflict_decision = ConflictDecision(self.conflict_decision)
        if self.timeout < 0:
            raise DriveConfigError("Timeout cannot be negative")
        if self.chunk_size <= 0:
            raise DriveConfigError("Chunk size must be a positive number of bytes")
        if self.workers < 1:
            raise DriveConfigError("At least one worker is required")
        if self.mtime_tolerance < 0:
            raise DriveConfigError("Modification time tolerance cannot be negative")
        if self.max_change_batches < 1:
            raise DriveConfigError("At least one change batch must be allowed")
