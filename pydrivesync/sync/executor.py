"""Chunked transfer execution with stall detection and bounded retries.

Transfers run first, on a bounded worker pool, with at most one task per
relative path in flight. Deletions run afterwards and only if every transfer
of the run succeeded.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..exceptions import DriveError, DriveTimeoutError, is_transient
from ..utils import MAX_ERROR_RETRIES
from .comparator import SyncAction, SyncDecision
from .modes import SyncDirection
from .operations import SyncOperations
from .pair import SyncOptions
from .progress import (
    ProgressCallback,
    ProgressThrottle,
    TransferProgressEvent,
    TransferProgressInfo,
)
from .stores import AbortHook

logger = logging.getLogger(__name__)


class TransferCancelled(Exception):
    """Raised inside a transfer when the run was stopped."""


@dataclass
class TransferTask:
    """State of one transfer attempt, owned by the worker running it."""

    direction: SyncDirection
    source_ref: str
    """Local path (upload) or remote file ID (download)"""

    dest_ref: str
    """Remote file ID or parent path (upload) or local path (download)"""

    relative_path: str
    total_size: int
    chunk_size: int
    bytes_transferred: int = 0

    deadline: Optional[float] = None
    """Monotonic time at which the stall timer fires, None when disabled"""

    @classmethod
    def from_decision(cls, decision: SyncDecision, chunk_size: int) -> "TransferTask":
        local, remote = decision.local_file, decision.remote_file
        local_ref = str(local.path) if local is not None else decision.relative_path
        remote_ref = remote.id if remote is not None else decision.relative_path
        if decision.action == SyncAction.UPLOAD:
            return cls(
                direction=SyncDirection.UPLOAD,
                source_ref=local_ref,
                dest_ref=remote_ref,
                relative_path=decision.relative_path,
                total_size=local.size if local is not None else 0,
                chunk_size=chunk_size,
            )
        return cls(
            direction=SyncDirection.DOWNLOAD,
            source_ref=remote_ref,
            dest_ref=local_ref,
            relative_path=decision.relative_path,
            total_size=remote.size if remote is not None else 0,
            chunk_size=chunk_size,
        )


class StallTimer:
    """Deadline that measures inactivity, not total duration.

    The timer is armed by :meth:`start` and pushed back by :meth:`reset`
    after every chunk. A single watchdog thread per transfer waits for the
    deadline. When it passes, the timer is marked expired and every abort
    hook registered by the store is called, so that a chunk blocked inside
    the store is torn down instead of waited for. :meth:`check` raises
    :class:`DriveTimeoutError` once expired. A timeout of 0 disables it.

    Examples:
        >>> with StallTimer(300) as timer:
        ...     store.download(file_id, out, register_abort=timer.add_abort_hook)
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.deadline: Optional[float] = None
        self._expired = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._abort_hooks: list[AbortHook] = []
        self._watchdog: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.timeout > 0

    @property
    def expired(self) -> bool:
        return self._expired.is_set()

    def start(self) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._expired.clear()
            self._done.clear()
            self.deadline = time.monotonic() + self.timeout
        self._watchdog = threading.Thread(
            target=self._watch, name="stall-timer", daemon=True
        )
        self._watchdog.start()

    def reset(self) -> None:
        """Push the deadline back after progress (no effect once expired)."""
        if not self.enabled:
            return
        with self._lock:
            if not self._expired.is_set():
                self.deadline = time.monotonic() + self.timeout

    def add_abort_hook(self, hook: AbortHook) -> None:
        """Register a function that aborts the transfer from another thread.

        A hook added after the timer fired is called right away.
        """
        with self._lock:
            fire_now = self._expired.is_set()
            if not fire_now:
                self._abort_hooks.append(hook)
        if fire_now:
            self._call(hook)

    def cancel(self) -> None:
        with self._lock:
            self._done.set()
            self._abort_hooks.clear()

    def _watch(self) -> None:
        while True:
            with self._lock:
                if self._done.is_set():
                    return
                remaining = (self.deadline or 0) - time.monotonic()
                if remaining <= 0:
                    self._expired.set()
                    hooks = list(self._abort_hooks)
                    break
            if self._done.wait(remaining):
                return

        logger.debug(
            f"No progress for {self.timeout:g}s, aborting transfer "
            f"({len(hooks)} abort hook(s))"
        )
        for hook in hooks:
            self._call(hook)

    @staticmethod
    def _call(hook: AbortHook) -> None:
        try:
            hook()
        except Exception as e:
            # The timer already expired; the transfer fails with a timeout
            logger.debug(f"Abort hook failed: {e}")

    def error(self) -> DriveTimeoutError:
        return DriveTimeoutError(
            f"Transfer stalled: no progress for {self.timeout:g} seconds"
        )

    def check(self) -> None:
        """Raise if the deadline passed without progress.

        Raises:
            DriveTimeoutError: If the timer fired
        """
        if self._expired.is_set():
            raise self.error()

    def __enter__(self) -> "StallTimer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cancel()


@dataclass
class RetryPolicy:
    """Bounded retries with exponential backoff and jitter."""

    max_attempts: int = MAX_ERROR_RETRIES
    base_delay: float = 1.0
    max_delay: float = 60.0

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Decide whether another attempt follows.

        Args:
            error: Failure of the attempt
            attempt: Number of the failed attempt (1-based)
        """
        return attempt < self.max_attempts and is_transient(error)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        base = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        # Add jitter: +/- 25% of base delay
        jitter = base * 0.25 * (2 * random.random() - 1)
        return max(0.0, base + jitter)


@dataclass
class TransferFailure:
    """A path that could not be synced."""

    relative_path: str
    action: SyncAction
    error: str
    attempts: int = 1

    def to_dict(self) -> dict:
        return {
            "path": self.relative_path,
            "action": self.action.value,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class ExecutionReport:
    """Outcome of executing a decision list."""

    dry_run: bool = False
    completed: list[SyncDecision] = field(default_factory=list)
    """Decisions carried out (or that would be, in a dry run)"""

    failures: list[TransferFailure] = field(default_factory=list)
    skipped_deletions: list[SyncDecision] = field(default_factory=list)
    """Deletions not run because a transfer failed or the run was stopped"""

    cancelled: list[SyncDecision] = field(default_factory=list)
    stopped: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def count(self, action: SyncAction) -> int:
        return sum(1 for d in self.completed if d.action == action)

    def stats(self) -> dict[str, int]:
        return {
            "uploaded": self.count(SyncAction.UPLOAD),
            "downloaded": self.count(SyncAction.DOWNLOAD),
            "deleted_local": self.count(SyncAction.DELETE_LOCAL),
            "deleted_remote": self.count(SyncAction.DELETE_REMOTE),
            "failed": len(self.failures),
            "skipped_deletions": len(self.skipped_deletions),
            "cancelled": len(self.cancelled),
        }


@dataclass
class _Outcome:
    decision: SyncDecision
    failure: Optional[TransferFailure] = None
    cancelled: bool = False


class TransferExecutor:
    """Drains a decision list against the stores.

    Each worker owns the task, stall timer, retry counter and progress
    throttle of the transfer it runs. The only shared state is the per-path
    lock table and the stop flag.
    """

    def __init__(
        self,
        operations: SyncOperations,
        options: SyncOptions,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize the executor.

        Args:
            operations: Transfer primitives of the sync pair
            options: Run options (workers, chunk size, timeout, ...)
            progress_callback: Observer for transfer progress events
            sleep: Used to wait between retries
            retry_policy: Retry policy (default: 5 attempts)
        """
        self.operations = operations
        self.options = options
        self.progress_callback = progress_callback if options.show_progress else None
        self.sleep = sleep
        self.retry_policy = retry_policy or RetryPolicy()
        self._stop = threading.Event()
        self._path_locks: dict[str, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()

    def stop(self) -> None:
        """Stop the run: pending tasks are dropped, running ones abort."""
        if not self._stop.is_set():
            logger.debug("Stop requested, aborting remaining transfers")
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def execute(self, decisions: list[SyncDecision]) -> ExecutionReport:
        """Execute transfers, then deletions.

        Args:
            decisions: Ordered decisions; SKIP and CONFLICT entries are ignored

        Returns:
            ExecutionReport
        """
        report = ExecutionReport(dry_run=self.options.dry_run)
        transfers = [d for d in decisions if d.action.is_transfer]
        deletions = [d for d in decisions if d.action.is_deletion]

        if self.options.dry_run:
            for decision in transfers + deletions:
                logger.debug(
                    f"Dry run: would {decision.action.value} {decision.relative_path}"
                )
            report.completed = transfers + deletions
            return report

        self._run_phase(transfers, report)

        if deletions:
            if self.stopped or report.failures:
                logger.warning(
                    f"Skipping {len(deletions)} deletion(s): "
                    "not every transfer completed"
                )
                report.skipped_deletions = deletions
            else:
                self._run_phase(deletions, report)

        report.stopped = self.stopped
        return report

    def _run_phase(
        self, decisions: list[SyncDecision], report: ExecutionReport
    ) -> None:
        if not decisions:
            return
        workers = max(1, min(self.options.workers, len(decisions)))
        logger.debug(f"Executing {len(decisions)} action(s) with {workers} worker(s)")

        pool = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [pool.submit(self._run_one, d) for d in decisions]
            for future in as_completed(futures):
                self._record(future.result(), report)
        except KeyboardInterrupt:
            self.stop()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            pool.shutdown(wait=True)

    def _record(self, outcome: _Outcome, report: ExecutionReport) -> None:
        if outcome.cancelled:
            report.cancelled.append(outcome.decision)
        elif outcome.failure is not None:
            report.failures.append(outcome.failure)
        else:
            report.completed.append(outcome.decision)

    def _lock_for(self, relative_path: str) -> threading.Lock:
        with self._path_locks_guard:
            lock = self._path_locks.get(relative_path)
            if lock is None:
                lock = self._path_locks[relative_path] = threading.Lock()
            return lock

    def _run_one(self, decision: SyncDecision) -> _Outcome:
        if self.stopped:
            return _Outcome(decision, cancelled=True)

        with self._lock_for(decision.relative_path):
            start = time.time()
            if decision.action.is_transfer:
                action = self._transfer
            else:
                action = self._delete

            try:
                attempts, error = self._with_retry(decision, action)
            except TransferCancelled:
                logger.debug(f"Cancelled {decision.relative_path}")
                return _Outcome(decision, cancelled=True)

            delete_source = self.options.delete_source and decision.action.is_transfer
            if error is None and delete_source:
                try:
                    self.operations.delete_source(decision)
                except (DriveError, OSError) as e:
                    error = e

            elapsed = time.time() - start
            if error is not None:
                logger.debug(f"Failed {decision.relative_path} in {elapsed:.2f}s")
                self._emit_failed(decision)
                return _Outcome(
                    decision,
                    failure=TransferFailure(
                        relative_path=decision.relative_path,
                        action=decision.action,
                        error=str(error),
                        attempts=attempts,
                    ),
                )

            logger.debug(f"Completed {decision.relative_path} in {elapsed:.2f}s")
            return _Outcome(decision)

    def _with_retry(
        self,
        decision: SyncDecision,
        action: Callable[[SyncDecision], None],
    ) -> tuple[int, Optional[Exception]]:
        """Run an action until it succeeds or the retry budget is spent.

        Returns:
            Tuple of (attempts made, final error or None)
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                action(decision)
                return attempt, None
            except (DriveError, OSError) as e:
                if self.stopped or not self.retry_policy.should_retry(e, attempt):
                    if is_transient(e):
                        logger.warning(
                            f"Giving up on {decision.relative_path} after "
                            f"{attempt} attempt(s): {e}"
                        )
                    return attempt, e
                delay = self.retry_policy.delay(attempt)
                logger.debug(
                    f"{decision.action.value} of {decision.relative_path} failed "
                    f"(attempt {attempt}/{self.retry_policy.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self.sleep(delay)

    def _transfer(self, decision: SyncDecision) -> None:
        """One transfer attempt; restarts the file from byte 0."""
        task = TransferTask.from_decision(decision, self.options.chunk_size)
        throttle = ProgressThrottle(
            self.progress_callback, interval=self.options.progress_interval
        )
        timer = StallTimer(self.options.timeout)
        timeout = self.options.timeout or None

        def info(event: TransferProgressEvent) -> TransferProgressInfo:
            return TransferProgressInfo(
                event=event,
                relative_path=task.relative_path,
                action=decision.action.value,
                bytes_transferred=task.bytes_transferred,
                total_size=task.total_size,
            )

        def on_chunk(size: int) -> None:
            if self.stopped:
                raise TransferCancelled(task.relative_path)
            timer.check()
            task.bytes_transferred += size
            timer.reset()
            task.deadline = timer.deadline
            throttle.progress(info(TransferProgressEvent.TRANSFER_PROGRESS))

        if decision.action == SyncAction.UPLOAD:
            transfer = self.operations.upload_file
        else:
            transfer = self.operations.download_file

        throttle.lifecycle(info(TransferProgressEvent.TRANSFER_START))
        with timer:
            task.deadline = timer.deadline
            try:
                transfer(
                    decision,
                    task.chunk_size,
                    on_chunk=on_chunk,
                    timeout=timeout,
                    register_abort=timer.add_abort_hook,
                )
            except (DriveError, OSError) as e:
                # Whatever an aborted store raised, the cause is the stall
                if timer.expired and not isinstance(e, DriveTimeoutError):
                    raise timer.error() from e
                raise
        throttle.lifecycle(info(TransferProgressEvent.TRANSFER_COMPLETE))

    def _delete(self, decision: SyncDecision) -> None:
        if decision.action == SyncAction.DELETE_LOCAL and decision.local_file:
            self.operations.delete_local(decision.local_file)
        elif decision.action == SyncAction.DELETE_REMOTE and decision.remote_file:
            self.operations.delete_remote(decision.remote_file)

    def _emit_failed(self, decision: SyncDecision) -> None:
        if self.progress_callback is None or not decision.action.is_transfer:
            return
        self.progress_callback(
            TransferProgressInfo(
                event=TransferProgressEvent.TRANSFER_FAILED,
                relative_path=decision.relative_path,
                action=decision.action.value,
            )
        )
