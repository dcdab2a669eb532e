"""Google Drive v3 client for folder resolution, uploads and downloads."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import google.auth.exceptions
import google.auth.transport
import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from app.config import settings
from app.core.errors import NotFoundError, RemoteUnavailableError


logger = logging.getLogger("hoclieu.drive")

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"

FILE_FIELDS = "id,name,mimeType,size,webViewLink,parents,createdTime"


@dataclass
class RemoteFile:
    """A file or folder as reported by the drive."""

    id: str
    name: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    web_link: Optional[str] = None
    created_time: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RemoteFile":
        return cls(
            id=item["id"],
            name=item.get("name") or "",
            mime_type=item.get("mimeType"),
            size=_parse_size(item.get("size")),
            web_link=item.get("webViewLink"),
            created_time=item.get("createdTime"),
        )


def _parse_size(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _escape_query_value(value: str) -> str:
    """Escape a literal for use inside a quoted Drive query string."""
    return (value or "").replace("\\", "\\\\").replace("'", "\\'")


def preview_url(remote_file: RemoteFile) -> Optional[str]:
    """Browser link for a drive file, built from the id when the API gave none."""
    if remote_file.web_link:
        return remote_file.web_link
    if remote_file.id:
        return f"https://drive.google.com/file/d/{remote_file.id}/view"
    return None


# =============================================================================
# TOKEN MANAGEMENT
# =============================================================================

class TokenManager:
    """
    Manages OAuth access tokens for a Google service account.

    google-auth signs the JWT assertion and exchanges it for an access token;
    the blocking refresh runs in a worker thread. Credentials report
    themselves invalid shortly before expiry, so refreshes are proactive.
    """

    def __init__(
        self,
        credentials: service_account.Credentials,
        request: Optional[google.auth.transport.Request] = None,
    ):
        self.credentials = credentials
        self._request = request
        self._refresh_count = 0

    def is_token_expired(self) -> bool:
        return not self.credentials.valid

    async def get_valid_token(self) -> str:
        if self.is_token_expired():
            await self.refresh_token()
        return self.credentials.token

    async def refresh_token(self) -> str:
        request = self._request or GoogleAuthRequest()
        try:
            await asyncio.to_thread(self.credentials.refresh, request)
        except google.auth.exceptions.GoogleAuthError as e:
            raise RemoteUnavailableError(f"Drive token refresh failed: {e}") from e

        if not self.credentials.token:
            raise RemoteUnavailableError("No access_token returned from the Google token endpoint.")

        self._refresh_count += 1
        if self._refresh_count > 1:
            logger.info(f"Refreshed drive access token (refresh #{self._refresh_count})")
        return self.credentials.token


def load_service_account_credentials(
    key_path: Optional[str] = None,
    inline_key: Optional[str] = None,
    scope: str = DRIVE_SCOPE,
) -> Optional[service_account.Credentials]:
    """Read service-account credentials from a file path or inline JSON, if configured."""
    try:
        if key_path:
            if not Path(key_path).exists():
                raise RemoteUnavailableError(f"Service-account key file not found: {key_path}")
            return service_account.Credentials.from_service_account_file(key_path, scopes=[scope])
        if inline_key:
            return service_account.Credentials.from_service_account_info(
                json.loads(inline_key), scopes=[scope]
            )
    except ValueError as e:
        raise RemoteUnavailableError(f"Invalid service-account key: {e}") from e
    return None



# =============================================================================
# DRIVE CLIENT
# =============================================================================

class GoogleDriveClient:
    """
    Async Google Drive v3 client.

    Implements the remote-provider contract used by the folder resolver and
    the attachment store: list children, create folder, upload, download
    stream, delete, get metadata. Every transport failure, timeout or
    unexpected status becomes RemoteUnavailableError; a missing file becomes
    NotFoundError. No call is retried.

    Authentication uses a service-account token when a key is configured,
    otherwise the API key (enough for listing and downloading public files).
    """

    def __init__(
        self,
        token_manager: Optional[TokenManager] = None,
        api_key: Optional[str] = None,
        api_base_url: Optional[str] = None,
        upload_base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token_manager = token_manager
        self._api_key = api_key
        self._api_base_url = (api_base_url or settings.drive_api_base_url).rstrip("/")
        self._upload_base_url = (upload_base_url or settings.drive_upload_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.drive_timeout
        self._transport = transport

    @property
    def can_write(self) -> bool:
        return self._token_manager is not None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _auth(self, params: Dict[str, Any]) -> Dict[str, str]:
        if self._token_manager is not None:
            token = await self._token_manager.get_valid_token()
            return {"Authorization": f"Bearer {token}"}
        if self._api_key:
            params["key"] = self._api_key
            return {}
        raise RemoteUnavailableError(
            "No drive credentials configured (set GOOGLE_APPLICATION_CREDENTIALS, "
            "GOOGLE_SERVICE_ACCOUNT_KEY or GOOGLE_API_KEY)"
        )

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if response.status_code == 404:
            raise NotFoundError(f"Drive {what} not found")
        if response.status_code >= 400:
            raise RemoteUnavailableError(
                f"Drive {what} failed: {response.status_code} {response.text[:200]}"
            )

    async def _request(
        self,
        method: str,
        url: str,
        what: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> httpx.Response:
        params = dict(params or {})
        try:
            async with self._client() as client:
                headers = await self._auth(params)
                headers.update(kwargs.pop("headers", {}) or {})
                response = await client.request(method, url, params=params, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Drive {what} request error: {e}")
            raise RemoteUnavailableError(f"Drive {what} request failed: {e}") from e
        self._raise_for_status(response, what)
        return response

    async def _list(self, query: str, fields: str) -> List[RemoteFile]:
        items: List[RemoteFile] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "q": query,
                "fields": f"nextPageToken, files({fields})",
                "pageSize": 1000,
                "spaces": "drive",
            }
            if page_token:
                params["pageToken"] = page_token
            response = await self._request("GET", f"{self._api_base_url}/files", "list", params=params)
            payload = response.json()
            items.extend(RemoteFile.from_api(item) for item in payload.get("files", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return items

    async def list_children(self, parent_id: Optional[str]) -> List[RemoteFile]:
        """List non-trashed children of ``parent_id`` (or the whole drive when None)."""
        parts = ["trashed = false"]
        if parent_id:
            parts.insert(0, f"'{_escape_query_value(parent_id)}' in parents")
        return await self._list(" and ".join(parts), FILE_FIELDS)

    async def list_folders(self, parent_id: Optional[str]) -> List[RemoteFile]:
        """List only the sub-folders of ``parent_id``."""
        parts = [f"mimeType = '{FOLDER_MIME_TYPE}'", "trashed = false"]
        if parent_id:
            parts.insert(0, f"'{_escape_query_value(parent_id)}' in parents")
        return await self._list(" and ".join(parts), "id,name,mimeType")

    async def list_files(self, parent_id: str) -> List[RemoteFile]:
        """List only the non-folder files directly inside ``parent_id``."""
        query = (
            f"'{_escape_query_value(parent_id)}' in parents and "
            f"mimeType != '{FOLDER_MIME_TYPE}' and trashed = false"
        )
        return await self._list(query, FILE_FIELDS)

    async def create_folder(self, parent_id: Optional[str], name: str) -> RemoteFile:
        body: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]
        response = await self._request(
            "POST",
            f"{self._api_base_url}/files",
            "create folder",
            params={"fields": "id,name,mimeType"},
            json=body,
        )
        folder = RemoteFile.from_api(response.json())
        logger.info(f"Created drive folder '{name}' ({folder.id}) under {parent_id or 'root'}")
        return folder

    async def upload_file(
        self,
        parent_id: Optional[str],
        name: str,
        mime_type: Optional[str],
        data: bytes,
    ) -> RemoteFile:
        """Upload ``data`` as a new file using a multipart/related request."""
        mime_type = mime_type or "application/octet-stream"
        metadata: Dict[str, Any] = {"name": name}
        if parent_id:
            metadata["parents"] = [parent_id]

        boundary = f"hoclieu-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                data,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )
        response = await self._request(
            "POST",
            f"{self._upload_base_url}/files",
            "upload",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        uploaded = RemoteFile.from_api(response.json())
        logger.info(f"Uploaded '{name}' to drive as {uploaded.id} ({len(data)} bytes)")
        return uploaded

    async def get_metadata(self, file_id: str) -> RemoteFile:
        response = await self._request(
            "GET",
            f"{self._api_base_url}/files/{file_id}",
            "file",
            params={"fields": FILE_FIELDS},
        )
        return RemoteFile.from_api(response.json())

    async def download_stream(self, file_id: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """
        Stream a file's content.

        This is an async generator: the request is made on first iteration,
        so a missing file raises NotFoundError from the consuming loop.
        """
        params: Dict[str, Any] = {"alt": "media"}
        try:
            async with self._client() as client:
                headers = await self._auth(params)
                async with client.stream(
                    "GET", f"{self._api_base_url}/files/{file_id}", params=params, headers=headers
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        self._raise_for_status(response, "download")
                    async for chunk in response.aiter_bytes(chunk_size):
                        yield chunk
        except httpx.HTTPError as e:
            logger.warning(f"Drive download error for {file_id}: {e}")
            raise RemoteUnavailableError(f"Drive download failed: {e}") from e

    async def delete_file(self, file_id: str) -> None:
        """Delete a file; an already-missing file counts as deleted."""
        try:
            await self._request("DELETE", f"{self._api_base_url}/files/{file_id}", "delete")
        except NotFoundError:
            logger.info(f"Drive file {file_id} already gone")
            return
        logger.info(f"Deleted drive file {file_id}")


@lru_cache()
def get_drive_client() -> GoogleDriveClient:
    """
    Process-wide drive client built from settings.

    Raises:
        RemoteUnavailableError: if a configured key file is missing or invalid
    """
    credentials = load_service_account_credentials(
        settings.google_application_credentials, settings.google_service_account_key
    )
    if credentials is None and not settings.google_api_key:
        logger.warning("No drive credentials configured; drive calls will fail")
    return GoogleDriveClient(
        token_manager=TokenManager(credentials) if credentials else None,
        api_key=settings.google_api_key,
    )
