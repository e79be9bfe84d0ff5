"""Core sync engine for executing sync operations."""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..config import Config
from ..exceptions import (
    DriveConfigError,
    DriveFileNotFoundError,
    InvalidCursorError,
)
from ..models import FileEntry
from ..output import OutputFormatter
from ..utils import format_size
from .cache import ChecksumCache
from .changes import ChangeFeedConsumer, apply_changes
from .comparator import FileComparator, SyncAction, SyncDecision
from .executor import ExecutionReport, RetryPolicy, TransferExecutor, TransferFailure
from .operations import SyncOperations
from .pair import SyncOptions, SyncPair
from .progress import ProgressCallback
from .resolver import ConflictReportItem, ConflictResolver
from .scanner import DirectoryScanner
from .state import RemoteTree, SyncStateManager
from .stores import LocalFileStore, LocalStore, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Everything a caller needs to report on one sync run."""

    pair: SyncPair
    dry_run: bool
    plan: dict[str, int]
    """Number of planned decisions per action"""

    decisions: list[SyncDecision] = field(default_factory=list)
    conflicts: list[ConflictReportItem] = field(default_factory=list)
    report: ExecutionReport = field(default_factory=ExecutionReport)

    listing: str = "full"
    """``full`` or ``incremental``"""

    checksums_computed: int = 0

    @property
    def failures(self) -> list[TransferFailure]:
        return self.report.failures

    @property
    def success(self) -> bool:
        """True unless at least one path failed (skipped conflicts are fine)."""
        return self.report.succeeded

    def to_dict(self) -> dict:
        return {
            "local": str(self.pair.local),
            "remote_id": self.pair.remote_id,
            "direction": self.pair.direction.value,
            "dry_run": self.dry_run,
            "listing": self.listing,
            "plan": self.plan,
            "checksums_computed": self.checksums_computed,
            "result": self.report.stats(),
            "actions": [
                {
                    "path": d.relative_path,
                    "action": d.action.value,
                    "reason": d.reason,
                }
                for d in self.decisions
                if d.action != SyncAction.SKIP
            ],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "failures": [f.to_dict() for f in self.failures],
        }


class SyncEngine:
    """Core sync engine that orchestrates file synchronization.

    One run enumerates both trees, plans and resolves, executes, then
    persists the checksum cache and the remote tree with its change cursor.
    """

    def __init__(
        self,
        remote: RemoteStore,
        config: Config,
        output: Optional[OutputFormatter] = None,
        local: Optional[LocalStore] = None,
        progress_callback: Optional[ProgressCallback] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize sync engine.

        Args:
            remote: Remote store
            config: Configuration (locates the cache and the state files)
            output: Output formatter for displaying progress/status
            local: Local store (default: the local filesystem)
            progress_callback: Observer for transfer progress events
            retry_policy: Retry policy handed to the executor
        """
        self.remote = remote
        self.config = config
        self.output = output or OutputFormatter()
        self.local = local or LocalFileStore()
        self.progress_callback = progress_callback
        self.retry_policy = retry_policy
        self.state_manager = SyncStateManager(config.state_dir)
        self.consumer = ChangeFeedConsumer(remote)
        self._executor: Optional[TransferExecutor] = None

    def stop(self) -> None:
        """Abort the running sync after the chunks in flight."""
        if self._executor is not None:
            self._executor.stop()

    def sync_pair(
        self, pair: SyncPair, options: Optional[SyncOptions] = None
    ) -> SyncResult:
        """Sync a single sync pair.

        Args:
            pair: Sync pair to synchronize
            options: Run options (default options if omitted)

        Returns:
            SyncResult with plan, conflicts and execution report

        Raises:
            DriveConfigError: If the local root is not a directory
            DriveFileNotFoundError: If the local root of an upload does not exist
            DriveAPIError: If the remote tree cannot be listed

        Examples:
            >>> engine = SyncEngine(DriveRemoteStore(client), config)
            >>> pair = SyncPair(Path("/local"), "folder-id", SyncDirection.UPLOAD)
            >>> result = engine.sync_pair(pair, SyncOptions(dry_run=True))
            >>> print(f"Would upload {result.plan['uploads']} files")
        """
        options = options or SyncOptions()
        self._validate_local_root(pair)

        if not self.output.quiet:
            self.output.info(f"Syncing: {pair}")
            if options.dry_run:
                self.output.info("Dry run: No changes will be made")
            self.output.print("")

        cache = ChecksumCache(self.config.cache_path)
        cache.load()

        try:
            result = self._run(pair, options, cache)
        finally:
            if not options.dry_run:
                cache.save()
            self._executor = None

        result.checksums_computed = cache.hash_count
        logger.debug(f"Computed {cache.hash_count} checksum(s) during sync")
        if not self.output.quiet:
            self._display_summary(result)
        return result

    def _validate_local_root(self, pair: SyncPair) -> None:
        if pair.local.exists() and not pair.local.is_dir():
            raise DriveConfigError(f"Local path is not a directory: {pair.local}")
        if pair.direction.source_is_local and not pair.local.exists():
            raise DriveFileNotFoundError(str(pair.local))

    def _run(
        self, pair: SyncPair, options: SyncOptions, cache: ChecksumCache
    ) -> SyncResult:
        # Step 1: Scan files
        scan_start = time.time()
        scanner = DirectoryScanner(
            ignore_patterns=pair.ignore,
            exclude_dot_files=pair.exclude_dot_files,
        )
        if pair.local.exists():
            local_files = self.local.enumerate(pair.local, scanner)
        else:
            scanner.prepare(pair.local)
            local_files = []

        entries, tree, cursor, listing = self._list_remote(pair, options)
        remote_files = scanner.scan_remote(entries)
        logger.debug(
            f"Scanned {len(local_files)} local and {len(remote_files)} remote "
            f"item(s) in {time.time() - scan_start:.2f}s ({listing} listing)"
        )

        # Step 2: Compare files and determine actions
        comparator = FileComparator(
            pair.direction,
            checksum_cache=cache,
            mtime_tolerance=options.mtime_tolerance,
            delete_extraneous=options.delete_extraneous,
        )
        decisions = comparator.plan(local_files, remote_files)
        plan_stats = self._categorize_decisions(decisions)

        # Step 3: Resolve conflicts
        resolver = ConflictResolver(options.conflict_decision, pair.direction)
        decisions, conflicts = resolver.resolve(decisions)

        self._display_sync_plan(plan_stats, decisions, conflicts)

        # Step 4: Execute actions
        operations = SyncOperations(
            self.local,
            self.remote,
            local_root=pair.local,
            remote_root_id=pair.remote_id,
            checksum_cache=cache,
        )
        operations.register_remote_folders(remote_files)
        self._executor = TransferExecutor(
            operations,
            options,
            progress_callback=self.progress_callback,
            retry_policy=self.retry_policy,
        )
        report = self._executor.execute(decisions)

        # Step 5: Remember the remote tree for the next incremental listing
        if not options.dry_run:
            self.state_manager.save_state(pair.local, pair.remote_id, cursor, tree)

        return SyncResult(
            pair=pair,
            dry_run=options.dry_run,
            plan=self._categorize_decisions(decisions),
            decisions=decisions,
            conflicts=conflicts,
            report=report,
            listing=listing,
        )

    def _list_remote(
        self, pair: SyncPair, options: SyncOptions
    ) -> tuple[list[tuple[FileEntry, str]], RemoteTree, Optional[str], str]:
        """Return the remote tree, incrementally when a usable cursor exists.

        Returns:
            Tuple of (entries with relative paths, tree, cursor to persist,
            listing kind)
        """
        state = None
        if not options.full_listing:
            state = self.state_manager.load_state(pair.local, pair.remote_id)

        if state is not None and state.tree is not None:
            try:
                feed = self.consumer.pull(state.cursor, options.max_change_batches)
            except InvalidCursorError as e:
                logger.warning(f"{e}; falling back to a full listing")
            else:
                if feed.exhausted:
                    apply_changes(state.tree, feed.changes, self.remote.list_tree)
                    return (
                        state.tree.to_entries(),
                        state.tree,
                        feed.next_cursor,
                        "incremental",
                    )
                logger.warning(
                    f"More than {options.max_change_batches} change batch(es) "
                    "pending; falling back to a full listing"
                )

        # Take the cursor first so changes made during the listing are replayed
        cursor = self.consumer.start_cursor()
        entries = self.remote.list_tree(pair.remote_id)
        tree = RemoteTree.from_entries(pair.remote_id, entries)
        return entries, tree, cursor, "full"

    def _categorize_decisions(self, decisions: list[SyncDecision]) -> dict:
        """Categorize decisions into statistics.

        Args:
            decisions: List of sync decisions

        Returns:
            Dictionary with statistics
        """
        stats = {
            "uploads": 0,
            "downloads": 0,
            "deletes_local": 0,
            "deletes_remote": 0,
            "skips": 0,
            "conflicts": 0,
        }

        for decision in decisions:
            if decision.action == SyncAction.UPLOAD:
                stats["uploads"] += 1
            elif decision.action == SyncAction.DOWNLOAD:
                stats["downloads"] += 1
            elif decision.action == SyncAction.DELETE_LOCAL:
                stats["deletes_local"] += 1
            elif decision.action == SyncAction.DELETE_REMOTE:
                stats["deletes_remote"] += 1
            elif decision.action == SyncAction.CONFLICT:
                stats["conflicts"] += 1
            elif decision.action == SyncAction.SKIP:
                stats["skips"] += 1

        return stats

    def _display_sync_plan(
        self,
        stats: dict,
        decisions: list[SyncDecision],
        conflicts: list[ConflictReportItem],
    ) -> None:
        """Display sync plan to user.

        Args:
            stats: Statistics of the plan before conflict resolution
            decisions: Resolved decisions
            conflicts: Conflict report
        """
        if self.output.quiet:
            return

        resolved = self._categorize_decisions(decisions)
        upload_bytes = sum(
            d.local_file.size
            for d in decisions
            if d.action == SyncAction.UPLOAD and d.local_file is not None
        )
        download_bytes = sum(
            d.remote_file.size
            for d in decisions
            if d.action == SyncAction.DOWNLOAD and d.remote_file is not None
        )

        self.output.info("Sync plan:")
        if resolved["uploads"] > 0:
            self.output.info(
                f"  ↑ Upload: {resolved['uploads']} file(s) "
                f"({format_size(upload_bytes)})"
            )
        if resolved["downloads"] > 0:
            self.output.info(
                f"  ↓ Download: {resolved['downloads']} file(s) "
                f"({format_size(download_bytes)})"
            )
        if resolved["deletes_local"] > 0:
            self.output.info(f"  ✗ Delete local: {resolved['deletes_local']} item(s)")
        if resolved["deletes_remote"] > 0:
            self.output.info(
                f"  ✗ Delete remote: {resolved['deletes_remote']} item(s)"
            )
        if stats["skips"] > 0:
            self.output.info(f"  = Unchanged or kept: {stats['skips']} item(s)")
        if stats["conflicts"] > 0:
            self.output.warning(f"  ⚠ Conflicts: {stats['conflicts']} file(s)")

        # Show conflicts if any
        if conflicts:
            self.output.print("")
            self.output.warning("Conflict details:")
            for item in conflicts:
                self.output.warning(
                    f"  {item.relative_path}: {item.reason} "
                    f"-> {item.resolution.value}"
                )

        self.output.print("")

    def _display_summary(self, result: SyncResult) -> None:
        """Display sync summary."""
        stats = result.report.stats()
        self.output.print("")

        for failure in result.failures:
            self.output.error(
                f"Error syncing {failure.relative_path} "
                f"({failure.attempts} attempt(s)): {failure.error}"
            )
        if stats["skipped_deletions"]:
            self.output.warning(
                f"Skipped {stats['skipped_deletions']} deletion(s) "
                "because not every transfer completed"
            )

        if result.dry_run:
            self.output.success("Dry run complete!")
        elif result.report.stopped:
            self.output.warning("Sync stopped before completion")
        elif result.success:
            self.output.success("Sync complete!")
        else:
            self.output.warning(
                f"Sync finished with {stats['failed']} failed path(s)"
            )

        total_actions = (
            stats["uploaded"]
            + stats["downloaded"]
            + stats["deleted_local"]
            + stats["deleted_remote"]
        )

        if total_actions > 0:
            verb = "Would perform" if result.dry_run else "Total actions"
            self.output.info(f"{verb}: {total_actions}")
            if stats["uploaded"] > 0:
                self.output.info(f"  Uploaded: {stats['uploaded']}")
            if stats["downloaded"] > 0:
                self.output.info(f"  Downloaded: {stats['downloaded']}")
            if stats["deleted_local"] > 0:
                self.output.info(f"  Deleted locally: {stats['deleted_local']}")
            if stats["deleted_remote"] > 0:
                self.output.info(f"  Deleted remotely: {stats['deleted_remote']}")
        elif result.success and not result.report.stopped:
            self.output.info("No changes needed - everything is in sync!")
