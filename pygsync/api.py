"""API client for Google Drive."""

from __future__ import annotations

import json
import logging
import mimetypes
import os
import uuid
from collections.abc import Callable, Iterator
from typing import Any, BinaryIO

import httpx

from .exceptions import (
    APIError,
    AuthError,
    DrivePermissionError,
    GSyncError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
)
from .sync.protocols import CredentialProvider
from .utils import DEFAULT_READ_CHUNK_SIZE, FINGERPRINT_PROPERTY

logger = logging.getLogger(__name__)

API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
QUOTA_REASONS = {"storageQuotaExceeded", "quotaExceeded"}


class DriveClient:
    """Client for the Google Drive v3 REST API.

    The client does not retry on its own; failures are raised as the
    exceptions from :mod:`pygsync.exceptions` so the executor can decide
    whether to retry, skip or abort.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        drive_id: str | None = None,
        use_trash: bool = False,
        timeout: float = 60.0,
        api_url: str = API_URL,
        upload_url: str = UPLOAD_URL,
        http_client: httpx.Client | None = None,
    ):
        """Initialize Drive API client.

        Args:
            credentials: Provider of OAuth access tokens
            drive_id: Shared drive to operate in (None for My Drive)
            use_trash: Move deleted objects to the trash instead of
                deleting them permanently
            timeout: Request timeout in seconds
            api_url: Metadata API base URL
            upload_url: Upload API base URL
            http_client: Optional preconfigured httpx client (mainly for tests)
        """
        self.credentials = credentials
        self.drive_id = drive_id
        self.use_trash = use_trash
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self._client: httpx.Client | None = http_client

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
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

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # =========================
    # Request handling
    # =========================

    @staticmethod
    def _parse_error(response: httpx.Response) -> tuple[str, str]:
        """Extract (reason, message) from a Drive error response."""
        try:
            payload = response.json()
        except ValueError:
            return "", response.text[:200]
        error = payload.get("error") if isinstance(payload, dict) else None
        if not isinstance(error, dict):
            return "", str(error or "")
        message = error.get("message", "")
        reason = ""
        errors = error.get("errors") or []
        if errors and isinstance(errors[0], dict):
            reason = errors[0].get("reason", "")
        return reason, message

    def _handle_http_error(self, response: httpx.Response) -> GSyncError:
        """Map an error response to an exception.

        Args:
            response: Response with a 4xx/5xx status

        Returns:
            Exception describing the failure
        """
        status_code = response.status_code
        reason, message = self._parse_error(response)
        detail = f": {message}" if message else ""

        if status_code == 401:
            return AuthError(f"Access token rejected{detail}")
        if status_code == 429 or (status_code == 403 and reason in RATE_LIMIT_REASONS):
            retry_after = response.headers.get("Retry-After")
            return RateLimitError(
                f"Rate limit exceeded{detail}",
                status_code,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status_code == 403 and reason in QUOTA_REASONS:
            return QuotaExceededError(f"Storage quota exceeded{detail}", status_code)
        if status_code == 403:
            return DrivePermissionError(f"Access forbidden{detail}", status_code)
        if status_code == 404:
            return NotFoundError(f"Resource not found{detail}", status_code)
        if 500 <= status_code < 600:
            return ServerError(
                f"API request failed with status {status_code}{detail}", status_code
            )
        return APIError(f"API request failed with status {status_code}{detail}", status_code)

    def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        content_factory: Callable[[], Iterator[bytes]] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Make an authorized API request.

        A request rejected with 401 is sent once more with a freshly
        refreshed access token.

        Args:
            method: HTTP method
            url: Full request URL
            params: Query parameters (``supportsAllDrives`` is always added)
            content_factory: Returns the request body; called per attempt
            **kwargs: Additional arguments passed to httpx

        Returns:
            Parsed JSON response ({} for empty responses)
        """
        query = {"supportsAllDrives": "true"}
        query.update(params or {})

        response = self._send(method, url, query, content_factory, kwargs)
        if response.status_code == 401:
            logger.debug("Access token was rejected, refreshing it")
            self.credentials.invalidate()
            response = self._send(method, url, query, content_factory, kwargs)

        if response.is_error:
            raise self._handle_http_error(response)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError("Invalid JSON response from server") from e

    def _send(
        self,
        method: str,
        url: str,
        query: dict[str, Any],
        content_factory: Callable[[], Iterator[bytes]] | None,
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        token = self.credentials.get_valid_access_token()
        headers = dict(kwargs.get("headers", {}))
        headers["Authorization"] = f"Bearer {token}"
        options = {**kwargs, "headers": headers}
        if content_factory is not None:
            options["content"] = content_factory()

        try:
            return self._get_client().request(method, url, params=query, **options)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error: {e}") from e

    @staticmethod
    def _require_id(payload: Any) -> str:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise InvalidResponseError(f"Response without file id: {payload}")
        return str(payload["id"])

    # =========================
    # Folder Operations
    # =========================

    def create_folder(self, parent_id: str, name: str) -> str:
        """Create a new folder.

        Args:
            parent_id: ID of the parent folder
            name: Name of the new folder

        Returns:
            ID of the created folder
        """
        body = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]}
        payload = self._request(
            "POST", f"{self.api_url}/files", params={"fields": "id"}, json=body
        )
        folder_id = self._require_id(payload)
        logger.debug(f"Created folder '{name}' ({folder_id}) in {parent_id}")
        return folder_id

    @staticmethod
    def _quote(value: str) -> str:
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"

    def _find(self, query: str, kind: str, name: str) -> str | None:
        """Run a file search and return the ID of the first match."""
        params: dict[str, Any] = {
            "q": query,
            "fields": "files(id,name)",
            "includeItemsFromAllDrives": "true",
        }
        if self.drive_id:
            params["corpora"] = "drive"
            params["driveId"] = self.drive_id
        else:
            params["corpora"] = "user"

        payload = self._request("GET", f"{self.api_url}/files", params=params)
        files = payload.get("files", []) if isinstance(payload, dict) else []
        if not files:
            return None
        if len(files) > 1:
            logger.warning(f"Found {len(files)} {kind} named '{name}', using the first")
        return str(files[0]["id"])

    def find_folder(self, name: str, parent_id: str) -> str | None:
        """Find a folder by name inside a parent folder.

        Args:
            name: Folder name
            parent_id: ID of the parent folder

        Returns:
            ID of the first matching folder, or None
        """
        query = (
            f"name = {self._quote(name)} and mimeType = '{FOLDER_MIME_TYPE}' "
            f"and trashed = false and {self._quote(parent_id)} in parents"
        )
        return self._find(query, "folders", name)

    def find_file(self, name: str, parent_id: str, fingerprint: str) -> str | None:
        """Find a file uploaded with a given content fingerprint.

        Args:
            name: File name
            parent_id: ID of the parent folder
            fingerprint: SHA-256 stored in the file's app properties

        Returns:
            ID of the first matching file, or None
        """
        query = (
            f"name = {self._quote(name)} and mimeType != '{FOLDER_MIME_TYPE}' "
            f"and trashed = false and {self._quote(parent_id)} in parents "
            f"and appProperties has {{ key='{FINGERPRINT_PROPERTY}' "
            f"and value={self._quote(fingerprint)} }}"
        )
        return self._find(query, "files", name)

    # =========================
    # Upload Operations
    # =========================

    @staticmethod
    def _detect_mime_type(name: str) -> str:
        mime_type, _ = mimetypes.guess_type(name)
        return mime_type or "application/octet-stream"

    @staticmethod
    def _stream_length(stream: BinaryIO) -> int:
        try:
            return os.fstat(stream.fileno()).st_size - stream.tell()
        except (AttributeError, OSError, ValueError):
            position = stream.tell()
            stream.seek(0, os.SEEK_END)
            length = stream.tell() - position
            stream.seek(position)
            return length

    def _multipart_upload(
        self,
        method: str,
        url: str,
        metadata: dict[str, Any],
        stream: BinaryIO,
        mime_type: str,
    ) -> Any:
        """Send metadata and content as a single multipart/related request.

        The file content is streamed, not loaded into memory.
        """
        boundary = f"pygsync-{uuid.uuid4().hex}"
        head = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            f"Content-Type: {mime_type}\r\n\r\n"
        ).encode("utf-8")
        tail = f"\r\n--{boundary}--\r\n".encode()
        start = stream.tell()
        length = len(head) + self._stream_length(stream) + len(tail)

        def body() -> Iterator[bytes]:
            stream.seek(start)
            yield head
            while chunk := stream.read(DEFAULT_READ_CHUNK_SIZE):
                yield chunk
            yield tail

        return self._request(
            method,
            url,
            params={"uploadType": "multipart", "fields": "id"},
            headers={
                "Content-Type": f"multipart/related; boundary={boundary}",
                "Content-Length": str(length),
            },
            content_factory=body,
        )

    def upload_file(
        self, parent_id: str, name: str, stream: BinaryIO, fingerprint: str
    ) -> str:
        """Upload a new file.

        Args:
            parent_id: ID of the parent folder
            name: File name
            stream: Binary stream with the file content
            fingerprint: Content fingerprint stored with the file

        Returns:
            ID of the created file
        """
        mime_type = self._detect_mime_type(name)
        metadata = {
            "name": name,
            "parents": [parent_id],
            "mimeType": mime_type,
            "appProperties": {FINGERPRINT_PROPERTY: fingerprint},
        }
        payload = self._multipart_upload(
            "POST", f"{self.upload_url}/files", metadata, stream, mime_type
        )
        file_id = self._require_id(payload)
        logger.debug(f"Uploaded '{name}' ({file_id}) to {parent_id}")
        return file_id

    def update_file(self, remote_id: str, stream: BinaryIO, fingerprint: str) -> None:
        """Replace the content of an existing file.

        Args:
            remote_id: ID of the file
            stream: Binary stream with the new content
            fingerprint: Content fingerprint stored with the file
        """
        metadata = {"appProperties": {FINGERPRINT_PROPERTY: fingerprint}}
        self._multipart_upload(
            "PATCH",
            f"{self.upload_url}/files/{remote_id}",
            metadata,
            stream,
            "application/octet-stream",
        )
        logger.debug(f"Updated content of {remote_id}")

    # =========================
    # Delete Operations
    # =========================

    def delete_object(self, remote_id: str) -> None:
        """Delete a file or folder (moving it to the trash if configured).

        Args:
            remote_id: ID of the object
        """
        if self.use_trash:
            self._request(
                "PATCH",
                f"{self.api_url}/files/{remote_id}",
                params={"fields": "id"},
                json={"trashed": True},
            )
            logger.debug(f"Moved {remote_id} to trash")
        else:
            self._request("DELETE", f"{self.api_url}/files/{remote_id}")
            logger.debug(f"Deleted {remote_id}")
