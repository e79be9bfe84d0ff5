"""Incremental remote listings from the drive change feed."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..exceptions import DriveAPIError, DriveInvalidResponseError, InvalidCursorError
from ..models import ChangeRecord, FileEntry
from ..utils import DEFAULT_MAX_CHANGE_BATCHES
from .state import RemoteTree
from .stores import RemoteStore

logger = logging.getLogger(__name__)

# Status codes the drive answers with when a page token is malformed or expired
REJECTED_CURSOR_STATUSES = (400, 404, 410)


@dataclass
class ChangeFeedResult:
    """Changes accumulated by one :meth:`ChangeFeedConsumer.pull`."""

    changes: list[ChangeRecord] = field(default_factory=list)

    next_cursor: Optional[str] = None
    """Cursor to persist for the next run"""

    exhausted: bool = False
    """True if the feed was read to its end"""


class ChangeFeedConsumer:
    """Turns a persisted cursor into the list of remote changes since then.

    The consumer never falls back to a full listing on its own. An empty or
    rejected cursor raises :class:`InvalidCursorError` and the caller decides
    what to do instead.
    """

    def __init__(self, remote: RemoteStore):
        """Initialize the consumer.

        Args:
            remote: Remote store providing ``changes`` and ``start_cursor``
        """
        self.remote = remote

    def start_cursor(self) -> str:
        """Return the cursor pointing at the current end of the feed."""
        return self.remote.start_cursor()

    def pull(
        self,
        cursor: Optional[str],
        max_batches: int = DEFAULT_MAX_CHANGE_BATCHES,
    ) -> ChangeFeedResult:
        """Read change pages starting at ``cursor``.

        Continuation tokens are followed until the feed reports a new start
        cursor (exhausted) or ``max_batches`` pages were read. In the latter
        case ``next_cursor`` is the continuation token of the next page.

        Args:
            cursor: Cursor persisted by a previous run
            max_batches: Maximum number of pages to request

        Returns:
            ChangeFeedResult with the accumulated changes

        Raises:
            InvalidCursorError: If the cursor is empty or rejected by the remote
            DriveInvalidResponseError: If a page carries no cursor at all
        """
        if not cursor:
            raise InvalidCursorError("No change cursor available")

        result = ChangeFeedResult(next_cursor=cursor)
        token = cursor

        for batch in range(max_batches):
            try:
                page = self.remote.changes(token)
            except DriveAPIError as e:
                if e.status_code in REJECTED_CURSOR_STATUSES:
                    raise InvalidCursorError(
                        f"Change cursor rejected by the remote: {e}"
                    ) from e
                raise

            result.changes.extend(page.changes)
            logger.debug(
                f"Change batch {batch + 1}: {len(page.changes)} change(s)"
            )

            if page.new_start_page_token:
                result.next_cursor = page.new_start_page_token
                result.exhausted = True
                return result

            if not page.next_page_token:
                raise DriveInvalidResponseError(
                    "Change page carries neither a next page nor a new start cursor"
                )
            token = page.next_page_token
            result.next_cursor = token

        logger.debug(f"Change feed not exhausted after {max_batches} batch(es)")
        return result


def _latest_per_file(changes: list[ChangeRecord]) -> dict[str, ChangeRecord]:
    latest: dict[str, ChangeRecord] = {}
    for change in changes:
        # Later changes of the same file supersede earlier ones
        latest.pop(change.file_id, None)
        latest[change.file_id] = change
    return latest


def _parent_known(tree: RemoteTree, entry: FileEntry) -> bool:
    parent_id = entry.parent_id
    if parent_id == tree.root_id:
        return True
    parent = tree.items.get(parent_id) if parent_id else None
    return parent is not None and parent.is_folder


def apply_changes(
    tree: RemoteTree,
    changes: list[ChangeRecord],
    list_folder: Optional[Callable[[str], list[tuple[FileEntry, str]]]] = None,
) -> int:
    """Merge a batch of changes onto a remembered remote tree.

    Removed and trashed items disappear together with their descendants.
    Moved or renamed folders carry their descendants along. An item whose
    new parent is outside the tree leaves it. Items arriving before their
    parent folder are retried until a pass makes no progress.

    The feed reports a folder moved in from outside the tree, but not the
    items it already contains. With ``list_folder`` given, every folder
    that enters the tree is listed and its contents are grafted below it.

    Args:
        tree: Tree to update in place
        changes: Changes in feed order
        list_folder: Recursive listing of a folder (``RemoteStore.list_tree``)

    Returns:
        Number of changes that touched the tree
    """
    touched = 0
    pending: list[FileEntry] = []

    for change in _latest_per_file(changes).values():
        if change.is_removal:
            if tree.remove(change.file_id):
                touched += 1
            continue
        if change.file is not None:
            pending.append(change.file)

    while pending:
        deferred: list[FileEntry] = []
        for entry in pending:
            if _parent_known(tree, entry):
                arrived = entry.id not in tree
                tree.upsert(entry)
                touched += 1
                if arrived and entry.is_folder and list_folder is not None:
                    grafted = tree.graft(entry.id, list_folder(entry.id))
                    logger.debug(
                        f"Listed {grafted} item(s) below arriving folder "
                        f"{tree.items[entry.id].path}"
                    )
            else:
                deferred.append(entry)
        if len(deferred) == len(pending):
            break
        pending = deferred

    # Whatever is still pending now lives outside the tree
    for entry in pending:
        if tree.remove(entry.id):
            touched += 1

    logger.debug(
        f"Applied {touched} of {len(changes)} change(s), tree has {len(tree)} item(s)"
    )
    return touched
