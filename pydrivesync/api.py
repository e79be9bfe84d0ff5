"""API client for the remote drive."""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import httpx

from .config import Config
from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    DriveConfigError,
    DriveDownloadError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveQuotaExceededError,
    DriveRateLimitError,
    DriveServerError,
    DriveTimeoutError,
    DriveUploadError,
)
from .utils import FOLDER_MIME_TYPE

FILE_FIELDS = "id,name,mimeType,size,md5Checksum,modifiedTime,parents,trashed"

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
_QUOTA_REASONS = {"storageQuotaExceeded", "quotaExceeded"}


class DriveClient:
    """Client for interacting with the drive REST API."""

    def __init__(
        self,
        config: Config,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
    ):
        """Initialize the API client.

        Args:
            config: Process configuration (access token and API URLs)
            max_retries: Maximum number of retry attempts for metadata requests
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
        """
        self.config = config
        self.access_token = config.access_token
        self.api_url = config.api_url.rstrip("/")
        self.upload_url = config.upload_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        if not self.access_token:
            raise DriveConfigError(
                "Access token not configured. Run 'pydrivesync init' or set "
                "the DRIVE_ACCESS_TOKEN environment variable."
            )

        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> DriveClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================
    # Request handling
    # =========================

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a metadata request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        return isinstance(
            exception,
            (DriveNetworkError, DriveRateLimitError, DriveServerError),
        )

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _error_from_response(self, response: httpx.Response) -> DriveAPIError:
        """Map an unsuccessful response to the matching exception.

        Args:
            response: Response with a 4xx/5xx status

        Returns:
            Exception instance (not raised)
        """
        status_code = response.status_code
        message = f"API request failed with status {status_code}"
        reasons: set[str] = set()

        try:
            if response.content:
                error_data = response.json().get("error", {})
                if isinstance(error_data, dict):
                    if error_data.get("message"):
                        message = f"{message}: {error_data['message']}"
                    for item in error_data.get("errors", []):
                        if item.get("reason"):
                            reasons.add(item["reason"])
        except (ValueError, AttributeError, httpx.ResponseNotRead):
            # Body is not JSON (or was streamed), use the status based message
            pass

        if status_code == 401:
            return DriveAuthenticationError(
                "Invalid or expired access token", status_code=status_code
            )
        if reasons & _QUOTA_REASONS:
            return DriveQuotaExceededError(
                "Storage quota exceeded", status_code=status_code
            )
        if status_code == 429 or reasons & _RATE_LIMIT_REASONS:
            return DriveRateLimitError(
                "Rate limit exceeded - please try again later",
                status_code=status_code,
            )
        if status_code == 403:
            return DrivePermissionError(
                "Access forbidden - check your permissions", status_code=status_code
            )
        if status_code == 404:
            return DriveNotFoundError("Resource not found", status_code=status_code)
        if 500 <= status_code < 600:
            return DriveServerError(message, status_code=status_code)
        return DriveAPIError(message, status_code=status_code)

    def _request(
        self,
        method: str,
        endpoint: str,
        retry: bool = True,
        **kwargs: Any,
    ) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path, or an absolute URL
            retry: Retry transient failures with exponential backoff
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data ({} for empty bodies)

        Raises:
            DriveAPIError: If the request fails after all retries
        """
        if endpoint.startswith("http"):
            url = endpoint
        else:
            url = f"{self.api_url}/{endpoint.lstrip('/')}"
        client = self._get_client()
        max_attempts = self.max_retries + 1 if retry else 1

        for attempt in range(max_attempts):
            try:
                response = client.request(method, url, **kwargs)
                if response.is_error:
                    raise self._error_from_response(response)

                if not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError as e:
                    raise DriveInvalidResponseError(
                        "Invalid JSON response from server",
                        status_code=response.status_code,
                    ) from e

            except DriveAPIError as e:
                if retry and self._should_retry(e, attempt):
                    delay = self._calculate_retry_delay(attempt)
                    if isinstance(e, DriveRateLimitError):
                        retry_after = response.headers.get("Retry-After", "")
                        if retry_after.isdigit():
                            delay = float(retry_after)
                    time.sleep(delay)
                    continue
                raise
            except httpx.TimeoutException as e:
                error: DriveAPIError = DriveTimeoutError(f"Request timed out: {e}")
                if retry and attempt < self.max_retries:
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e
            except httpx.RequestError as e:
                error = DriveNetworkError(f"Network error: {e}")
                if retry and self._should_retry(error, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e

        raise DriveAPIError("Request failed after all retry attempts")

    # =========================
    # File Entry Operations
    # =========================

    def list_files(
        self,
        folder_id: str,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> dict[str, Any]:
        """List the direct children of a folder (one page).

        Args:
            folder_id: Parent folder ID
            page_token: Continuation token from a previous page
            page_size: Maximum number of entries per page

        Returns:
            Raw ``files.list`` response
        """
        params: dict[str, Any] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "pageSize": page_size,
        }
        if page_token:
            params["pageToken"] = page_token
        result: dict[str, Any] = self._request("GET", "/files", params=params)
        return result

    def get_file(self, file_id: str) -> dict[str, Any]:
        """Get metadata of a single file or folder."""
        result: dict[str, Any] = self._request(
            "GET", f"/files/{file_id}", params={"fields": FILE_FIELDS}
        )
        return result

    def create_folder(self, name: str, parent_id: str) -> dict[str, Any]:
        """Create a folder.

        Args:
            name: Folder name
            parent_id: Parent folder ID

        Returns:
            Metadata of the new folder
        """
        result: dict[str, Any] = self._request(
            "POST",
            "/files",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        return result

    def delete_file(self, file_id: str) -> None:
        """Permanently delete a file or folder (folders recursively)."""
        self._request("DELETE", f"/files/{file_id}")

    # =========================
    # Upload Operations
    # =========================

    def start_upload_session(
        self,
        name: str,
        size: int,
        parent_id: str | None = None,
        file_id: str | None = None,
        modified_time: str | None = None,
        mime_type: str = "application/octet-stream",
    ) -> str:
        """Open a resumable upload session.

        A new file is created when ``file_id`` is None, otherwise the content
        of the existing file is replaced.

        Args:
            name: File name
            size: Total size in bytes
            parent_id: Parent folder ID for new files
            file_id: Existing file to overwrite
            modified_time: RFC3339 modification time to store remotely
            mime_type: Content type

        Returns:
            Session URL that chunks are sent to

        Raises:
            DriveUploadError: If the server does not return a session URL
        """
        metadata: dict[str, Any] = {"name": name}
        if modified_time:
            metadata["modifiedTime"] = modified_time
        headers = {
            "X-Upload-Content-Type": mime_type,
            "X-Upload-Content-Length": str(size),
        }
        params = {"uploadType": "resumable", "fields": FILE_FIELDS}

        if file_id is None:
            if parent_id:
                metadata["parents"] = [parent_id]
            method, url = "POST", f"{self.upload_url}/files"
        else:
            method, url = "PATCH", f"{self.upload_url}/files/{file_id}"

        client = self._get_client()
        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(
                    method, url, params=params, json=metadata, headers=headers
                )
            except httpx.RequestError as e:
                error: DriveAPIError = DriveNetworkError(f"Network error: {e}")
                if self._should_retry(error, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e

            if response.is_error:
                api_error = self._error_from_response(response)
                if self._should_retry(api_error, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise api_error

            location = response.headers.get("Location")
            if not location:
                raise DriveUploadError("Server did not return an upload session URL")
            return location

        raise DriveUploadError("Failed to open upload session")

    def upload_chunk(
        self,
        session_url: str,
        chunk: bytes,
        offset: int,
        total_size: int,
        timeout: float | None = None,
    ) -> dict[str, Any] | None:
        """Send one chunk of a resumable upload.

        Chunks are never retried here; the transfer executor owns retries.

        Args:
            session_url: URL returned by :meth:`start_upload_session`
            chunk: Bytes to send
            offset: Offset of the first byte of the chunk
            total_size: Total size of the file
            timeout: Per request timeout (the stall timeout), None for default

        Returns:
            File metadata when the upload is complete, None if more chunks
            are expected
        """
        if total_size == 0:
            content_range = "bytes */0"
        else:
            end = offset + len(chunk) - 1
            content_range = f"bytes {offset}-{end}/{total_size}"

        client = self._get_client()
        try:
            response = client.put(
                session_url,
                content=chunk,
                headers={
                    "Content-Length": str(len(chunk)),
                    "Content-Range": content_range,
                },
                timeout=timeout if timeout else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise DriveTimeoutError(f"Chunk upload timed out: {e}") from e
        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during upload: {e}") from e

        # 308 "Resume Incomplete" means the server wants the next chunk
        if response.status_code == 308:
            return None
        if response.is_error:
            raise self._error_from_response(response)

        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise DriveInvalidResponseError(
                "Invalid JSON response after upload"
            ) from e
        return result

    # =========================
    # Download Operations
    # =========================

    @contextmanager
    def open_download(
        self,
        file_id: str,
        chunk_size: int,
        timeout: float | None = None,
        register_abort: Callable[[Callable[[], None]], None] | None = None,
    ) -> Iterator[Iterator[bytes]]:
        """Open a streamed download of a file's content.

        Usage::

            with client.open_download(file_id, 8 * 1024 * 1024) as chunks:
                for chunk in chunks:
                    ...

        Args:
            file_id: File to download
            chunk_size: Size of the yielded chunks
            timeout: Per read timeout (the stall timeout), None for default
            register_abort: Receives ``response.close`` once the stream is open

        Yields:
            Iterator over byte chunks
        """
        url = f"{self.api_url}/files/{file_id}"
        client = self._get_client()

        try:
            with client.stream(
                "GET",
                url,
                params={"alt": "media"},
                timeout=timeout if timeout else self.timeout,
            ) as response:
                if response.is_error:
                    response.read()
                    raise self._error_from_response(response)
                if register_abort is not None:
                    register_abort(response.close)
                yield response.iter_bytes(chunk_size=chunk_size)
        except httpx.TimeoutException as e:
            raise DriveTimeoutError(f"Download timed out: {e}") from e
        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during download: {e}") from e
        except httpx.StreamError as e:
            raise DriveDownloadError(f"Download stream failed: {e}") from e

    # =========================
    # Change Feed Operations
    # =========================

    def get_start_page_token(self) -> str:
        """Return the cursor pointing at the current end of the change feed."""
        result = self._request("GET", "/changes/startPageToken")
        token = result.get("startPageToken")
        if not token:
            raise DriveInvalidResponseError("No startPageToken in response")
        return str(token)

    def get_changes(self, page_token: str, page_size: int = 100) -> dict[str, Any]:
        """Fetch one page of changes since ``page_token``.

        Args:
            page_token: Cursor from a previous call or get_start_page_token
            page_size: Maximum number of changes per page

        Returns:
            Raw ``changes.list`` response
        """
        result: dict[str, Any] = self._request(
            "GET",
            "/changes",
            params={
                "pageToken": page_token,
                "pageSize": page_size,
                "includeRemoved": "true",
                "fields": (
                    "nextPageToken,newStartPageToken,"
                    f"changes(fileId,removed,time,file({FILE_FIELDS}))"
                ),
            },
        )
        return result
