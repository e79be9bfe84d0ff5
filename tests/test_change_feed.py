"""Tests for the change feed consumer and tree merging."""

from unittest.mock import Mock

import pytest

from pydrivesync.exceptions import (
    DriveAPIError,
    DriveInvalidResponseError,
    DriveServerError,
    InvalidCursorError,
)
from pydrivesync.models import ChangeRecord, ChangesPage, FileEntry
from pydrivesync.sync.changes import ChangeFeedConsumer, apply_changes
from pydrivesync.sync.state import RemoteTree
from pydrivesync.utils import FOLDER_MIME_TYPE

ROOT = "root"


def folder(file_id, name, parent=ROOT):
    return FileEntry(
        id=file_id, name=name, mime_type=FOLDER_MIME_TYPE, parents=[parent]
    )


def file(file_id, name, parent=ROOT, size=1):
    return FileEntry(id=file_id, name=name, size=size, parents=[parent])


def changed(entry):
    return ChangeRecord(file_id=entry.id, file=entry)


def removed(file_id):
    return ChangeRecord(file_id=file_id, removed=True)


@pytest.fixture
def tree():
    """Tree with docs/, docs/a.txt, docs/sub/, docs/sub/b.txt and c.txt."""
    return RemoteTree.from_entries(
        ROOT,
        [
            (folder("d1", "docs"), "docs"),
            (file("f1", "a.txt", "d1"), "docs/a.txt"),
            (folder("d2", "sub", "d1"), "docs/sub"),
            (file("f2", "b.txt", "d2"), "docs/sub/b.txt"),
            (file("f3", "c.txt"), "c.txt"),
        ],
    )


def paths(tree):
    return sorted(path for _, path in tree.to_entries())


class TestChangeFeedConsumer:
    """Tests for ChangeFeedConsumer.pull."""

    def test_empty_cursor_is_invalid(self):
        consumer = ChangeFeedConsumer(Mock())
        with pytest.raises(InvalidCursorError):
            consumer.pull(None)
        with pytest.raises(InvalidCursorError):
            consumer.pull("")

    def test_follows_pages_until_exhausted(self):
        """Test that continuation tokens are followed to the new start cursor."""
        remote = Mock()
        remote.changes.side_effect = [
            ChangesPage(changes=[removed("a")], next_page_token="p2"),
            ChangesPage(changes=[removed("b")], new_start_page_token="next"),
        ]

        result = ChangeFeedConsumer(remote).pull("start")

        assert result.exhausted
        assert result.next_cursor == "next"
        assert [c.file_id for c in result.changes] == ["a", "b"]
        assert [c.args[0] for c in remote.changes.call_args_list] == ["start", "p2"]

    def test_stops_after_max_batches(self):
        """Test that a long feed is cut after max_batches pages."""
        remote = Mock()
        remote.changes.side_effect = [
            ChangesPage(changes=[], next_page_token=f"p{i}") for i in range(1, 10)
        ]

        result = ChangeFeedConsumer(remote).pull("start", max_batches=3)

        assert not result.exhausted
        assert result.next_cursor == "p3"
        assert remote.changes.call_count == 3

    @pytest.mark.parametrize("status", [400, 404, 410])
    def test_rejected_cursor(self, status):
        """Test that the remote rejecting a cursor maps to InvalidCursorError."""
        remote = Mock()
        remote.changes.side_effect = DriveAPIError("bad token", status_code=status)

        with pytest.raises(InvalidCursorError):
            ChangeFeedConsumer(remote).pull("expired")

    def test_other_errors_propagate(self):
        remote = Mock()
        remote.changes.side_effect = DriveServerError("down", status_code=503)

        with pytest.raises(DriveServerError):
            ChangeFeedConsumer(remote).pull("cursor")

    def test_page_without_tokens_is_invalid(self):
        remote = Mock()
        remote.changes.return_value = ChangesPage(changes=[])

        with pytest.raises(DriveInvalidResponseError):
            ChangeFeedConsumer(remote).pull("cursor")

    def test_start_cursor(self):
        remote = Mock()
        remote.start_cursor.return_value = "42"
        assert ChangeFeedConsumer(remote).start_cursor() == "42"


class TestApplyChanges:
    """Tests for merging changes onto a remembered tree."""

    def test_new_file(self, tree):
        touched = apply_changes(tree, [changed(file("f9", "new.txt", "d2"))])

        assert touched == 1
        assert "docs/sub/new.txt" in paths(tree)

    def test_modified_file_updates_metadata(self, tree):
        apply_changes(tree, [changed(file("f1", "a.txt", "d1", size=99))])
        assert tree.items["f1"].size == 99

    def test_removed_folder_drops_descendants(self, tree):
        apply_changes(tree, [removed("d1")])
        assert paths(tree) == ["c.txt"]

    def test_trashed_file_is_removed(self, tree):
        trashed = file("f3", "c.txt")
        trashed.trashed = True
        apply_changes(tree, [changed(trashed)])
        assert "c.txt" not in paths(tree)

    def test_renamed_folder_moves_descendants(self, tree):
        apply_changes(tree, [changed(folder("d1", "papers"))])
        assert paths(tree) == [
            "c.txt",
            "papers",
            "papers/a.txt",
            "papers/sub",
            "papers/sub/b.txt",
        ]

    def test_moved_out_of_tree(self, tree):
        """Test that an item moved outside the root leaves the tree."""
        apply_changes(tree, [changed(folder("d2", "sub", "elsewhere"))])
        assert paths(tree) == ["c.txt", "docs", "docs/a.txt"]

    def test_folder_moved_in_is_listed(self, tree):
        """Test that a folder entering the tree brings its existing contents."""
        list_folder = Mock(
            return_value=[
                (file("f5", "x.txt", "d5"), "x.txt"),
                (folder("d6", "deeper", "d5"), "deeper"),
                (file("f6", "y.txt", "d6"), "deeper/y.txt"),
            ]
        )

        apply_changes(tree, [changed(folder("d5", "incoming", "d1"))], list_folder)

        list_folder.assert_called_once_with("d5")
        assert tree.items["f6"].parent_id == "d6"
        assert paths(tree) == [
            "c.txt",
            "docs",
            "docs/a.txt",
            "docs/incoming",
            "docs/incoming/deeper",
            "docs/incoming/deeper/y.txt",
            "docs/incoming/x.txt",
            "docs/sub",
            "docs/sub/b.txt",
        ]

    def test_known_folder_is_not_listed_again(self, tree):
        list_folder = Mock(return_value=[])
        apply_changes(tree, [changed(folder("d2", "renamed", "d1"))], list_folder)
        list_folder.assert_not_called()
        assert "docs/renamed/b.txt" in paths(tree)

    def test_unrelated_change_ignored(self, tree):
        assert apply_changes(tree, [changed(file("x", "x.txt", "elsewhere"))]) == 0
        assert len(tree) == 5

    def test_child_before_parent(self, tree):
        """Test that a file arriving before its new folder is placed."""
        apply_changes(
            tree,
            [
                changed(file("f8", "deep.txt", "d9")),
                changed(folder("d9", "new", "d1")),
            ],
        )
        assert "docs/new/deep.txt" in paths(tree)

    def test_latest_change_per_file_wins(self, tree):
        apply_changes(
            tree,
            [changed(file("f7", "tmp.txt")), removed("f7")],
        )
        assert "tmp.txt" not in paths(tree)
