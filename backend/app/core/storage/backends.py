# backend/app/core/storage/backends.py
"""
Physical storage backends for attachments.

An attachment lives in exactly one of two places, recorded on its row as
``storage_provider`` plus ``storage_key``:

- local:  a file named ``{uuid4}-{sanitized name}`` under ATTACHMENTS_DIR
- gdrive: a file in the remote drive; the key is the drive file id

Both backends expose the same three operations (write, open, delete) so the
attachment store never branches on the provider beyond picking a backend.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from app.core.database.models import StorageProvider
from app.core.drive.drive_client import GoogleDriveClient
from app.core.errors import NotFoundError, RemoteUnavailableError, UploadError
from app.core.utils.text_utils import safe_filename

logger = logging.getLogger("hoclieu.attachments")

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class LocalLocation:
    path: Path


@dataclass(frozen=True)
class RemoteLocation:
    file_id: str


Location = Union[LocalLocation, RemoteLocation]


@dataclass
class StoredObject:
    """Result of a completed physical write."""

    provider: StorageProvider
    storage_key: str
    location: Location
    size: int
    parent_folder_id: Optional[str] = None


class AttachmentBackend(ABC):
    provider: StorageProvider

    @abstractmethod
    async def write(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str],
        parent_folder_id: Optional[str] = None,
    ) -> StoredObject:
        """Persist the bytes and return where they went."""

    @abstractmethod
    async def open(self, storage_key: str) -> AsyncIterator[bytes]:
        """Return an async iterator over the stored bytes."""

    @abstractmethod
    async def delete(self, storage_key: str) -> None:
        """Remove the stored bytes; a missing object is not an error."""

    @abstractmethod
    def locate(self, storage_key: str) -> Location:
        ...


class LocalAttachmentBackend(AttachmentBackend):
    provider = StorageProvider.LOCAL

    def __init__(self, root: Path):
        self.root = Path(root)

    def locate(self, storage_key: str) -> LocalLocation:
        root = self.root.resolve()
        path = (root / storage_key).resolve()
        # Keys are generated names; anything escaping the root is not ours.
        if path.parent != root:
            raise NotFoundError(f"Invalid local storage key: {storage_key!r}")
        return LocalLocation(path)

    @staticmethod
    def generate_key(original_name: str) -> str:
        return f"{uuid.uuid4()}-{safe_filename(original_name)}"

    async def write(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str],
        parent_folder_id: Optional[str] = None,
    ) -> StoredObject:
        key = self.generate_key(original_name)
        path = self.root / key

        def _write() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            f = open(path, "xb")
            try:
                with f:
                    f.write(data)
            except OSError:
                path.unlink(missing_ok=True)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error(f"Local write of '{original_name}' failed: {e}")
            raise UploadError(f"Could not write attachment to disk: {e}", phase="physical_write") from e

        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return StoredObject(
            provider=self.provider,
            storage_key=key,
            location=LocalLocation(path),
            size=len(data),
        )

    async def open(self, storage_key: str) -> AsyncIterator[bytes]:
        path = self.locate(storage_key).path
        try:
            handle = await asyncio.to_thread(open, path, "rb")
        except FileNotFoundError as e:
            raise NotFoundError(f"Attachment file missing on disk: {storage_key}") from e
        return self._iter_file(handle)

    @staticmethod
    async def _iter_file(handle) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def delete(self, storage_key: str) -> None:
        path = self.locate(storage_key).path
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.info(f"Local attachment already gone: {storage_key}")
            return
        logger.debug(f"Deleted local attachment {storage_key}")


class DriveAttachmentBackend(AttachmentBackend):
    provider = StorageProvider.REMOTE

    def __init__(self, client: GoogleDriveClient):
        self.client = client

    def locate(self, storage_key: str) -> RemoteLocation:
        return RemoteLocation(storage_key)

    async def write(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str],
        parent_folder_id: Optional[str] = None,
    ) -> StoredObject:
        try:
            uploaded = await self.client.upload_file(parent_folder_id, original_name, mime_type, data)
        except NotFoundError as e:
            raise RemoteUnavailableError(
                f"Drive folder {parent_folder_id} is missing: {e}", phase="physical_write"
            ) from e
        return StoredObject(
            provider=self.provider,
            storage_key=uploaded.id,
            location=RemoteLocation(uploaded.id),
            size=uploaded.size if uploaded.size is not None else len(data),
            parent_folder_id=parent_folder_id,
        )

    async def open(self, storage_key: str) -> AsyncIterator[bytes]:
        # The request happens on first iteration; a missing file raises then.
        return self.client.download_stream(storage_key)

    async def delete(self, storage_key: str) -> None:
        await self.client.delete_file(storage_key)
