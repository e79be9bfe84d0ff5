"""Tests for the sync planner."""

import hashlib
import os

import pytest
from factories import MTIME, local, remote

from pydrivesync.sync.comparator import (
    FileComparator,
    SyncAction,
    SyncStatus,
    order_decisions,
)
from pydrivesync.sync.modes import SyncDirection
from pydrivesync.sync.scanner import LocalFile


def actions(decisions):
    return {d.relative_path: d.action for d in decisions}


class TestClassification:
    """Tests for the per-path classification table."""

    @pytest.fixture
    def upload(self):
        return FileComparator(SyncDirection.UPLOAD)

    @pytest.fixture
    def download(self):
        return FileComparator(SyncDirection.DOWNLOAD)

    def test_same_size_and_mtime_unchanged(self, upload):
        """Test that equal size and mtime means unchanged."""
        entries = upload.classify([local("a.txt")], [remote("a.txt")])
        assert entries[0].status == SyncStatus.UNCHANGED

    def test_mtime_within_tolerance_unchanged(self, upload):
        """Test that a drift within the tolerance is ignored."""
        entries = upload.classify(
            [local("a.txt", mtime=MTIME + 1.5)], [remote("a.txt")]
        )
        assert entries[0].status == SyncStatus.UNCHANGED

    def test_size_differs_conflict(self, upload):
        """Test that a size difference is a conflict."""
        entries = upload.classify([local("a.txt", size=5)], [remote("a.txt")])
        assert entries[0].status == SyncStatus.CONFLICT
        assert "Sizes differ" in entries[0].reason

    def test_mtime_drift_without_remote_checksum_conflict(self, upload):
        """Test that drifted timestamps without a remote digest conflict."""
        entries = upload.classify(
            [local("a.txt", mtime=MTIME + 100)], [remote("a.txt")]
        )
        assert entries[0].status == SyncStatus.CONFLICT

    def test_mtime_drift_with_matching_checksum_unchanged(self, temp_dir):
        """Test that matching content overrides drifted timestamps."""
        path = temp_dir / "a.txt"
        path.write_bytes(b"0123456789")
        os.utime(path, (MTIME + 100, MTIME + 100))
        local_file = LocalFile.from_path(path, temp_dir)
        remote_file = remote("a.txt", checksum=hashlib.md5(b"0123456789").hexdigest())

        entries = FileComparator(SyncDirection.UPLOAD).classify(
            [local_file], [remote_file]
        )

        assert entries[0].status == SyncStatus.UNCHANGED

    def test_mtime_drift_with_different_checksum_conflict(self, temp_dir):
        """Test that different content with equal size is a conflict."""
        path = temp_dir / "a.txt"
        path.write_bytes(b"0123456789")
        os.utime(path, (MTIME + 100, MTIME + 100))
        local_file = LocalFile.from_path(path, temp_dir)
        remote_file = remote("a.txt", checksum=hashlib.md5(b"9876543210").hexdigest())

        entries = FileComparator(SyncDirection.UPLOAD).classify(
            [local_file], [remote_file]
        )

        assert entries[0].status == SyncStatus.CONFLICT
        assert "checksum mismatch" in entries[0].reason

    def test_unreadable_local_file_conflict(self, temp_dir):
        """Test that a file that cannot be hashed becomes a conflict."""
        local_file = LocalFile(
            path=temp_dir / "gone.txt",
            relative_path="gone.txt",
            size=10,
            mtime=MTIME + 100,
        )
        entries = FileComparator(SyncDirection.UPLOAD).classify(
            [local_file], [remote("gone.txt", checksum="0" * 32)]
        )
        assert entries[0].status == SyncStatus.CONFLICT
        assert "Cannot hash" in entries[0].reason

    def test_source_only_file_is_new(self, upload, download):
        """Test that a file only on the source side is transferred."""
        assert upload.classify([local("a.txt")], [])[0].status == (
            SyncStatus.UPLOAD_NEW
        )
        assert download.classify([], [remote("a.txt")])[0].status == (
            SyncStatus.DOWNLOAD_NEW
        )

    def test_destination_only_file_is_extraneous(self, upload, download):
        """Test that a file only on the destination side is extraneous."""
        assert upload.classify([], [remote("a.txt")])[0].status == (
            SyncStatus.DELETE_REMOTE_EXTRANEOUS
        )
        assert download.classify([local("a.txt")], [])[0].status == (
            SyncStatus.DELETE_LOCAL_EXTRANEOUS
        )

    def test_directories_on_both_sides_recurse(self, upload):
        """Test that shared directories get no entry of their own."""
        entries = upload.classify(
            [local("docs", is_dir=True), local("docs/a.txt")],
            [remote("docs", is_dir=True)],
        )
        assert [(e.relative_path, e.status) for e in entries] == [
            ("docs/a.txt", SyncStatus.UPLOAD_NEW)
        ]

    def test_source_only_directory_recurses(self, download):
        """Test that a new source directory is covered by its files."""
        entries = download.classify(
            [], [remote("new", is_dir=True), remote("new/b.txt")]
        )
        assert [(e.relative_path, e.status) for e in entries] == [
            ("new/b.txt", SyncStatus.DOWNLOAD_NEW)
        ]

    def test_extraneous_directory_covers_subtree(self, upload):
        """Test that only the top-most extraneous directory is classified."""
        entries = upload.classify(
            [],
            [
                remote("old", is_dir=True),
                remote("old/a.txt"),
                remote("old/deep", is_dir=True),
                remote("old/deep/b.txt"),
            ],
        )
        assert len(entries) == 1
        assert entries[0].relative_path == "old"
        assert entries[0].kind == "directory"
        assert entries[0].status == SyncStatus.DELETE_REMOTE_EXTRANEOUS

    def test_kind_mismatch_conflict_covers_subtree(self, upload):
        """Test that a file facing a directory conflicts once."""
        entries = upload.classify(
            [local("x")],
            [remote("x", is_dir=True), remote("x/inner.txt")],
        )
        assert len(entries) == 1
        assert entries[0].status == SyncStatus.CONFLICT
        assert entries[0].kind_mismatch
        assert entries[0].kind == "file"

    def test_every_path_classified_once(self, upload):
        """Test that the classification is total and unique per path."""
        entries = upload.classify(
            [local("a"), local("b", size=3), local("d", is_dir=True), local("d/e")],
            [remote("b"), remote("c"), remote("d", is_dir=True)],
        )
        paths = [e.relative_path for e in entries]
        assert paths == sorted(set(paths))
        assert set(paths) == {"a", "b", "c", "d/e"}


class TestPlan:
    """Tests for turning classifications into decisions."""

    def test_extraneous_kept_by_default(self):
        """Test that extraneous items are skipped without --delete-extraneous."""
        comparator = FileComparator(SyncDirection.UPLOAD)
        decisions = comparator.plan([], [remote("stale.txt")])

        assert decisions[0].action == SyncAction.SKIP
        assert decisions[0].reason.endswith(", kept")

    def test_extraneous_deleted_when_enabled(self):
        """Test that extraneous items are deleted with delete_extraneous."""
        comparator = FileComparator(SyncDirection.DOWNLOAD, delete_extraneous=True)
        decisions = comparator.plan([local("stale.txt")], [])

        assert decisions[0].action == SyncAction.DELETE_LOCAL

    def test_deletions_ordered_after_transfers(self):
        """Test that the plan schedules deletions last."""
        comparator = FileComparator(SyncDirection.UPLOAD, delete_extraneous=True)
        decisions = comparator.plan(
            [local("z-new.txt"), local("same.txt")],
            [remote("a-stale.txt"), remote("same.txt")],
        )

        assert [d.action for d in decisions] == [
            SyncAction.UPLOAD,
            SyncAction.SKIP,
            SyncAction.DELETE_REMOTE,
        ]

    def test_order_decisions_sorts_groups_by_path(self):
        """Test that each group is sorted by relative path."""
        comparator = FileComparator(SyncDirection.UPLOAD)
        decisions = comparator.plan([local("b"), local("a")], [])

        assert [d.relative_path for d in order_decisions(decisions)] == ["a", "b"]

    def test_unchanged_files_are_skipped(self):
        """Test that unchanged files produce SKIP decisions."""
        comparator = FileComparator(SyncDirection.DOWNLOAD)
        assert actions(comparator.plan([local("a")], [remote("a")])) == {
            "a": SyncAction.SKIP
        }
