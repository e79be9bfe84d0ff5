"""Tests for the transfer executor."""

import threading
import time
from unittest.mock import Mock

import pytest
from factories import write_tree

from pydrivesync.exceptions import (
    DrivePermissionError,
    DriveServerError,
    DriveTimeoutError,
)
from pydrivesync.sync.comparator import FileComparator, SyncAction
from pydrivesync.sync.executor import (
    RetryPolicy,
    StallTimer,
    TransferExecutor,
    TransferTask,
)
from pydrivesync.sync.modes import SyncDirection
from pydrivesync.sync.operations import SyncOperations
from pydrivesync.sync.pair import SyncOptions
from pydrivesync.sync.progress import (
    ProgressThrottle,
    TransferProgressEvent,
    TransferProgressInfo,
)
from pydrivesync.sync.scanner import DirectoryScanner
from pydrivesync.sync.stores import LocalFileStore


def no_sleep(_seconds):
    pass


def plan(local_root, remote, direction, delete_extraneous=False):
    local_files = DirectoryScanner().scan_local(local_root)
    remote_files = DirectoryScanner().scan_remote(remote.list_tree(remote.root_id))
    decisions = FileComparator(
        direction, delete_extraneous=delete_extraneous
    ).plan(local_files, remote_files)
    operations = SyncOperations(
        LocalFileStore(), remote, local_root, remote.root_id
    )
    operations.register_remote_folders(remote_files)
    return operations, decisions


class TestStallTimer:
    """Tests for StallTimer."""

    def test_disabled_timer_never_expires(self):
        timer = StallTimer(0)
        with timer:
            assert not timer.enabled
            timer.check()
        assert timer.deadline is None

    def test_timer_expires_without_progress(self):
        """Test that the timer fires once the timeout passes."""
        with StallTimer(0.05) as timer:
            time.sleep(0.2)
            assert timer.expired
            with pytest.raises(DriveTimeoutError, match="stalled"):
                timer.check()

    def test_reset_pushes_deadline_back(self):
        """Test that progress keeps the timer from firing."""
        with StallTimer(0.3) as timer:
            for _ in range(4):
                time.sleep(0.1)
                timer.reset()
            assert not timer.expired
            timer.check()

    def test_expiry_calls_abort_hooks(self):
        """Test that a blocked transfer is aborted when the deadline passes."""
        aborted = threading.Event()
        with StallTimer(0.05) as timer:
            timer.add_abort_hook(aborted.set)
            assert aborted.wait(1.0)
            assert timer.expired

    def test_hook_added_after_expiry_runs_at_once(self):
        hook = Mock()
        with StallTimer(0.01) as timer:
            time.sleep(0.1)
            timer.add_abort_hook(hook)
        hook.assert_called_once_with()

    def test_cancelled_timer_calls_no_hooks(self):
        hook = Mock()
        with StallTimer(0.05) as timer:
            timer.add_abort_hook(hook)
        time.sleep(0.15)
        assert not timer.expired
        hook.assert_not_called()


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_transient_errors_retried_until_budget(self):
        policy = RetryPolicy(max_attempts=3)
        error = DriveServerError("boom", status_code=503)

        assert policy.should_retry(error, 1)
        assert policy.should_retry(error, 2)
        assert not policy.should_retry(error, 3)

    def test_non_transient_errors_not_retried(self):
        policy = RetryPolicy()
        assert not policy.should_retry(DrivePermissionError("no", 403), 1)
        assert not policy.should_retry(FileNotFoundError("gone"), 1)

    def test_delay_grows_and_is_capped(self):
        """Test exponential backoff with +/- 25% jitter and a cap."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)

        assert 0.75 <= policy.delay(1) <= 1.25
        assert 1.5 <= policy.delay(2) <= 2.5
        assert 3.75 <= policy.delay(10) <= 6.25


class TestTransferTask:
    """Tests for TransferTask.from_decision."""

    def test_upload_task(self, local_root, remote):
        write_tree(local_root, {"a.txt": b"12345"})
        _, decisions = plan(local_root, remote, SyncDirection.UPLOAD)

        task = TransferTask.from_decision(decisions[0], chunk_size=2)

        assert task.direction == SyncDirection.UPLOAD
        assert task.source_ref == str(local_root / "a.txt")
        assert task.total_size == 5
        assert task.bytes_transferred == 0


class TestTransferExecutor:
    """Tests for TransferExecutor.execute."""

    def test_uploads_files(self, local_root, remote):
        """Test that new local files end up on the remote."""
        write_tree(local_root, {"a.txt": b"aaa", "sub/b.txt": b"bbbb"})
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)

        report = TransferExecutor(operations, SyncOptions(), sleep=no_sleep).execute(
            decisions
        )

        assert report.succeeded
        assert report.stats()["uploaded"] == 2
        assert remote.files() == {"a.txt": b"aaa", "sub/b.txt": b"bbbb"}

    def test_folder_created_once_with_parallel_workers(self, local_root, remote):
        """Test that parallel uploads into a new folder share one folder."""
        write_tree(local_root, {f"new/f{i}.txt": b"x" * i for i in range(8)})
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)

        report = TransferExecutor(
            operations, SyncOptions(workers=4), sleep=no_sleep
        ).execute(decisions)

        assert report.succeeded
        folders = [e for e in remote.entries.values() if e.is_folder]
        assert len(folders) == 1
        assert len(remote.files()) == 8

    def test_downloads_files_with_remote_mtime(self, local_root, remote):
        """Test that downloads are written and get the remote mtime."""
        remote.add_file("dir/a.txt", b"remote", mtime=1600000000.0)
        operations, decisions = plan(local_root, remote, SyncDirection.DOWNLOAD)

        report = TransferExecutor(operations, SyncOptions(), sleep=no_sleep).execute(
            decisions
        )

        assert report.succeeded
        target = local_root / "dir" / "a.txt"
        assert target.read_bytes() == b"remote"
        assert target.stat().st_mtime == pytest.approx(1600000000.0, abs=1)

    def test_transient_error_is_retried(self, local_root, remote):
        """Test that a transient failure is retried and then succeeds."""
        write_tree(local_root, {"a.txt": b"aaa"})
        remote.upload_errors = [DriveServerError("boom", status_code=503)]
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)
        sleep = Mock()

        report = TransferExecutor(operations, SyncOptions(), sleep=sleep).execute(
            decisions
        )

        assert report.succeeded
        assert remote.upload_calls == 2
        sleep.assert_called_once()

    def test_retry_budget_exhausted(self, local_root, remote):
        """Test that a persistent transient failure gives up after 5 attempts."""
        write_tree(local_root, {"a.txt": b"aaa"})
        remote.upload_errors = [
            DriveServerError("boom", status_code=500) for _ in range(10)
        ]
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)

        report = TransferExecutor(operations, SyncOptions(), sleep=no_sleep).execute(
            decisions
        )

        assert not report.succeeded
        assert report.failures[0].attempts == 5
        assert remote.upload_calls == 5

    def test_non_transient_error_not_retried(self, local_root, remote):
        """Test that permission errors fail the path immediately."""
        write_tree(local_root, {"a.txt": b"aaa", "b.txt": b"bbb"})
        remote.upload_errors = [DrivePermissionError("forbidden", status_code=403)]
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)

        report = TransferExecutor(operations, SyncOptions(), sleep=no_sleep).execute(
            decisions
        )

        assert len(report.failures) == 1
        assert report.failures[0].attempts == 1
        assert report.failures[0].to_dict()["action"] == "upload"
        assert report.stats()["uploaded"] == 1

    def test_stalled_transfer_times_out(self, local_root, remote):
        """Test that a transfer without progress fails with a timeout."""
        write_tree(local_root, {"slow.bin": b"x" * 64})
        remote.chunk_delay = 0.2
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)
        options = SyncOptions(timeout=0.05, chunk_size=16)

        report = TransferExecutor(
            operations,
            options,
            sleep=no_sleep,
            retry_policy=RetryPolicy(max_attempts=2),
        ).execute(decisions)

        assert len(report.failures) == 1
        assert "stalled" in report.failures[0].error
        assert report.failures[0].attempts == 2
        assert remote.files() == {}

    @pytest.mark.parametrize(
        "direction", [SyncDirection.UPLOAD, SyncDirection.DOWNLOAD]
    )
    def test_blocked_chunk_is_aborted(self, local_root, remote, direction):
        """Test that a chunk blocked inside the store does not hold the run."""
        if direction == SyncDirection.UPLOAD:
            write_tree(local_root, {"blocked.bin": b"x" * 32})
        else:
            remote.add_file("blocked.bin", b"x" * 32)
        remote.chunk_delay = 3.0
        operations, decisions = plan(local_root, remote, direction)
        executor = TransferExecutor(
            operations,
            SyncOptions(timeout=0.2, chunk_size=16),
            sleep=no_sleep,
            retry_policy=RetryPolicy(max_attempts=2),
        )

        start = time.monotonic()
        report = executor.execute(decisions)
        elapsed = time.monotonic() - start

        assert elapsed < 1.5
        assert len(report.failures) == 1
        assert "stalled" in report.failures[0].error
        assert report.failures[0].attempts == 2

    def test_deletions_skipped_after_failure(self, local_root, remote):
        """Test that no deletion runs when a transfer failed."""
        write_tree(local_root, {"new.txt": b"new"})
        remote.add_file("stale.txt", b"stale")
        remote.upload_errors = [DrivePermissionError("forbidden", status_code=403)]
        operations, decisions = plan(
            local_root, remote, SyncDirection.UPLOAD, delete_extraneous=True
        )

        report = TransferExecutor(operations, SyncOptions(), sleep=no_sleep).execute(
            decisions
        )

        assert [d.relative_path for d in report.skipped_deletions] == ["stale.txt"]
        assert "stale.txt" in remote.files()

    def test_deletions_run_after_transfers(self, local_root, remote):
        """Test that deletions happen only once every transfer is done."""
        write_tree(local_root, {"new.txt": b"new"})
        remote.add_file("old/stale.txt", b"stale")
        operations, decisions = plan(
            local_root, remote, SyncDirection.UPLOAD, delete_extraneous=True
        )
        order = []
        original_upload, original_delete = remote.upload, remote.delete
        remote.upload = lambda *a, **kw: order.append("upload") or original_upload(
            *a, **kw
        )
        remote.delete = lambda file_id: order.append("delete") or original_delete(
            file_id
        )

        report = TransferExecutor(
            operations, SyncOptions(workers=3), sleep=no_sleep
        ).execute(decisions)

        assert report.succeeded
        assert order == ["upload", "delete"]
        assert remote.files() == {"new.txt": b"new"}

    def test_dry_run_changes_nothing(self, local_root, remote):
        """Test that a dry run reports but does not transfer or delete."""
        write_tree(local_root, {"new.txt": b"new"})
        remote.add_file("stale.txt", b"stale")
        operations, decisions = plan(
            local_root, remote, SyncDirection.UPLOAD, delete_extraneous=True
        )

        report = TransferExecutor(
            operations, SyncOptions(dry_run=True), sleep=no_sleep
        ).execute(decisions)

        assert report.dry_run
        assert report.stats()["uploaded"] == 1
        assert report.stats()["deleted_remote"] == 1
        assert remote.upload_calls == 0
        assert remote.files() == {"stale.txt": b"stale"}

    def test_delete_source_after_upload(self, local_root, remote):
        """Test that the local source is removed after a verified upload."""
        write_tree(local_root, {"move.txt": b"moving"})
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)

        report = TransferExecutor(
            operations, SyncOptions(delete_source=True), sleep=no_sleep
        ).execute(decisions)

        assert report.succeeded
        assert not (local_root / "move.txt").exists()
        assert remote.files() == {"move.txt": b"moving"}

    def test_delete_source_kept_on_failure(self, local_root, remote):
        """Test that a failed transfer never deletes its source."""
        remote.add_file("keep.txt", b"keep")
        remote.download_errors = [DrivePermissionError("forbidden", status_code=403)]
        operations, decisions = plan(local_root, remote, SyncDirection.DOWNLOAD)

        report = TransferExecutor(
            operations, SyncOptions(delete_source=True), sleep=no_sleep
        ).execute(decisions)

        assert not report.succeeded
        assert remote.files() == {"keep.txt": b"keep"}
        assert not (local_root / "keep.txt").exists()

    def test_stop_cancels_pending_transfers(self, local_root, remote):
        """Test that a stopped executor does not start new transfers."""
        write_tree(local_root, {"a.txt": b"a", "b.txt": b"b"})
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)
        executor = TransferExecutor(operations, SyncOptions(), sleep=no_sleep)
        executor.stop()

        report = executor.execute(decisions)

        assert report.stopped
        assert len(report.cancelled) == 2
        assert remote.upload_calls == 0

    def test_progress_events(self, local_root, remote):
        """Test the start, progress and completion events of a transfer."""
        write_tree(local_root, {"a.bin": b"x" * 40})
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)
        events = []

        TransferExecutor(
            operations,
            SyncOptions(chunk_size=10, progress_interval=0),
            progress_callback=events.append,
            sleep=no_sleep,
        ).execute(decisions)

        kinds = [e.event for e in events]
        assert kinds[0] == TransferProgressEvent.TRANSFER_START
        assert kinds[-1] == TransferProgressEvent.TRANSFER_COMPLETE
        progress = [
            e for e in events if e.event == TransferProgressEvent.TRANSFER_PROGRESS
        ]
        assert [e.bytes_transferred for e in progress] == [10, 20, 30, 40]
        assert progress[-1].fraction == 1.0

    def test_no_progress_disables_events(self, local_root, remote):
        write_tree(local_root, {"a.bin": b"x" * 40})
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)
        callback = Mock()

        TransferExecutor(
            operations,
            SyncOptions(chunk_size=10, show_progress=False),
            progress_callback=callback,
            sleep=no_sleep,
        ).execute(decisions)

        callback.assert_not_called()

    def test_failed_event_emitted(self, local_root, remote):
        write_tree(local_root, {"a.bin": b"x"})
        remote.upload_errors = [DrivePermissionError("forbidden", status_code=403)]
        operations, decisions = plan(local_root, remote, SyncDirection.UPLOAD)
        events = []

        TransferExecutor(
            operations, SyncOptions(), progress_callback=events.append, sleep=no_sleep
        ).execute(decisions)

        assert events[-1].event == TransferProgressEvent.TRANSFER_FAILED
        assert events[-1].action == SyncAction.UPLOAD.value


class TestProgressThrottle:
    """Tests for ProgressThrottle."""

    def _info(self, transferred):
        return TransferProgressInfo(
            event=TransferProgressEvent.TRANSFER_PROGRESS,
            relative_path="a",
            action="upload",
            bytes_transferred=transferred,
            total_size=100,
        )

    def test_at_most_one_event_per_interval(self):
        """Test that chunk bursts are collapsed into one event per interval."""
        now = [0.0]
        callback = Mock()
        throttle = ProgressThrottle(callback, interval=1.0, clock=lambda: now[0])

        for step in range(10):
            now[0] = step * 0.25
            throttle.progress(self._info(step * 10))

        # Events at t=0, 1.0, 2.0
        assert throttle.emitted == 3
        assert callback.call_count == 3

    def test_lifecycle_events_not_throttled(self):
        callback = Mock()
        throttle = ProgressThrottle(callback, interval=100.0, clock=lambda: 0.0)

        throttle.progress(self._info(1))
        throttle.lifecycle(self._info(2))
        throttle.lifecycle(self._info(3))

        assert callback.call_count == 3

    def test_without_callback(self):
        throttle = ProgressThrottle(None)
        assert throttle.progress(self._info(1)) is False
