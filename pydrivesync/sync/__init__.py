"""Sync engine for pydrivesync - one-way upload and download sync."""

from .cache import CacheRecord, ChecksumCache
from .changes import ChangeFeedConsumer, ChangeFeedResult, apply_changes
from .comparator import (
    FileComparator,
    SyncAction,
    SyncDecision,
    SyncEntry,
    SyncStatus,
    order_decisions,
)
from .engine import SyncEngine, SyncResult
from .executor import (
    ExecutionReport,
    RetryPolicy,
    StallTimer,
    TransferExecutor,
    TransferFailure,
    TransferTask,
)
from .ignore import (
    IGNORE_FILE_NAME,
    IgnoreFileManager,
    IgnoreRule,
    load_ignore_file,
)
from .modes import SyncDirection
from .operations import SyncOperations
from .pair import SyncOptions, SyncPair
from .progress import ProgressThrottle, TransferProgressEvent, TransferProgressInfo
from .resolver import (
    ConflictDecision,
    ConflictReportItem,
    ConflictResolver,
    conflict_decision_from_flags,
)
from .scanner import DirectoryScanner, LocalFile, RemoteFile
from .state import RemoteItemState, RemoteTree, SyncState, SyncStateManager
from .stores import DriveRemoteStore, LocalFileStore, LocalStore, RemoteStore

__all__ = [
    "SyncEngine",
    "SyncResult",
    "SyncDirection",
    "SyncPair",
    "SyncOptions",
    "SyncOperations",
    "DirectoryScanner",
    "FileComparator",
    "SyncAction",
    "SyncDecision",
    "SyncEntry",
    "SyncStatus",
    "order_decisions",
    "ConflictDecision",
    "ConflictReportItem",
    "ConflictResolver",
    "conflict_decision_from_flags",
    "CacheRecord",
    "ChecksumCache",
    "ChangeFeedConsumer",
    "ChangeFeedResult",
    "apply_changes",
    "ExecutionReport",
    "RetryPolicy",
    "StallTimer",
    "TransferExecutor",
    "TransferFailure",
    "TransferTask",
    "ProgressThrottle",
    "TransferProgressEvent",
    "TransferProgressInfo",
    "LocalFile",
    "RemoteFile",
    "SyncState",
    "SyncStateManager",
    "RemoteItemState",
    "RemoteTree",
    "LocalStore",
    "RemoteStore",
    "LocalFileStore",
    "DriveRemoteStore",
    "IgnoreFileManager",
    "IgnoreRule",
    "IGNORE_FILE_NAME",
    "load_ignore_file",
]
