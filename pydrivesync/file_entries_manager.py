"""Manager for fetching file entries with automatic pagination."""

import logging
from typing import Optional

from .api import DriveClient
from .models import FileEntriesResult, FileEntry

logger = logging.getLogger(__name__)


class FileEntriesManager:
    """Manages file entry fetching with automatic pagination and caching."""

    def __init__(self, client: DriveClient):
        """Initialize the file entries manager.

        Args:
            client: Drive API client
        """
        self.client = client
        self._cache: dict[str, list[FileEntry]] = {}

    def get_all_in_folder(
        self,
        folder_id: str,
        use_cache: bool = True,
        per_page: int = 1000,
    ) -> list[FileEntry]:
        """Get all file entries in a folder with automatic pagination.

        Unlike a best-effort listing, API errors propagate: a partial
        listing would make the planner treat missing files as extraneous.

        Args:
            folder_id: Folder ID to query
            use_cache: Whether to use cached results
            per_page: Number of entries per page

        Returns:
            List of all file entries in the folder
        """
        cache_key = f"folder:{folder_id}"

        if use_cache and cache_key in self._cache:
            return self._cache[cache_key]

        all_entries: list[FileEntry] = []
        page_token: Optional[str] = None

        while True:
            result = self.client.list_files(
                folder_id, page_token=page_token, page_size=per_page
            )
            page = FileEntriesResult.from_api_response(result)
            all_entries.extend(page.entries)

            if not page.next_page_token:
                break
            page_token = page.next_page_token

        if use_cache:
            self._cache[cache_key] = all_entries

        return all_entries

    def get_all_recursive(
        self,
        folder_id: str,
        path_prefix: str = "",
        visited: Optional[set[str]] = None,
        per_page: int = 1000,
    ) -> list[tuple[FileEntry, str]]:
        """Recursively get all file and folder entries below a folder.

        Args:
            folder_id: Folder ID to start from
            path_prefix: Path prefix for nested folders
            visited: Set of visited folder IDs (for cycle detection)
            per_page: Number of entries per page

        Returns:
            List of (FileEntry, relative_path) tuples, folders included
        """
        if visited is None:
            visited = set()

        # A folder can have several parents; never walk it twice
        if folder_id in visited:
            return []
        visited.add(folder_id)

        result_entries: list[tuple[FileEntry, str]] = []

        entries = self.get_all_in_folder(
            folder_id=folder_id, use_cache=False, per_page=per_page
        )

        for entry in entries:
            entry_path = f"{path_prefix}/{entry.name}" if path_prefix else entry.name
            result_entries.append((entry, entry_path))

            if entry.is_folder:
                result_entries.extend(
                    self.get_all_recursive(
                        folder_id=entry.id,
                        path_prefix=entry_path,
                        visited=visited,
                        per_page=per_page,
                    )
                )

        logger.debug(
            f"Listed {len(entries)} entries in folder {folder_id} "
            f"({path_prefix or '<root>'})"
        )
        return result_entries

    def clear_cache(self) -> None:
        """Clear the internal cache."""
        self._cache.clear()
