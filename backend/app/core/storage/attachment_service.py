# backend/app/core/storage/attachment_service.py
"""
Attachment store: one interface over local disk and the remote drive.

Upload flow (remote storage enabled):
    1. Resolve the grade/subject folder (scoped) or pick the admin folder
    2. Upload the bytes to the drive
    3. Insert the attachments row (provider "gdrive", key = drive file id)

Upload flow (remote storage disabled):
    1. Write ``{uuid4}-{sanitized name}`` under ATTACHMENTS_DIR
    2. Insert the attachments row (provider "local", key = file name)

The row is only inserted after the physical write succeeded. If the insert
fails, the physical object is deleted again (best effort) and
StorageInconsistentError is raised. Downloads and deletes pick the backend
from the persisted provider, never from the current configuration, so rows
written under one setting stay readable after it changes.

Usage:
    from app.core.storage.attachment_service import get_attachment_store

    store = get_attachment_store()
    attachment = await store.store(data, "bai tap.pdf", "application/pdf", 6, 12, "user-42")
    download = await store.fetch(attachment.id, principal)
    async for chunk in download.stream:
        ...
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncIterator, Optional

from app.config import settings
from app.core.database.models import Attachment, StorageProvider
from app.core.drive.drive_client import get_drive_client
from app.core.drive.folder_resolver import FolderResolver, get_folder_resolver
from app.core.errors import InvalidInputError, NotFoundError, StorageInconsistentError
from app.core.storage.attachment_repository import AttachmentRepository, TaxonomyRepository
from app.core.storage.backends import (
    AttachmentBackend,
    DriveAttachmentBackend,
    LocalAttachmentBackend,
)

logger = logging.getLogger("hoclieu.attachments")


@dataclass
class Principal:
    """Authenticated caller; authorization happens before the store is reached."""

    id: str
    role: str = "student"


@dataclass
class AttachmentDownload:
    attachment: Attachment
    stream: AsyncIterator[bytes]

    @property
    def filename(self) -> str:
        return self.attachment.filename

    @property
    def mime_type(self) -> str:
        return self.attachment.mime_type or "application/octet-stream"


class AttachmentStore:
    def __init__(
        self,
        repository: Optional[AttachmentRepository] = None,
        taxonomy: Optional[TaxonomyRepository] = None,
        local_backend: Optional[AttachmentBackend] = None,
        remote_backend: Optional[AttachmentBackend] = None,
        resolver: Optional[FolderResolver] = None,
        remote_enabled: Optional[bool] = None,
        admin_folder_id: Optional[str] = None,
        root_folder_id: Optional[str] = None,
        max_upload_bytes: Optional[int] = None,
    ):
        self.repository = repository or AttachmentRepository()
        self.taxonomy = taxonomy or TaxonomyRepository()
        self.local_backend = local_backend or LocalAttachmentBackend(settings.attachments_path)
        self._remote_backend = remote_backend
        self._resolver = resolver
        self.remote_enabled = (
            settings.remote_storage_enabled if remote_enabled is None else remote_enabled
        )
        self.admin_folder_id = admin_folder_id or settings.remote_admin_folder_id
        self.root_folder_id = root_folder_id or settings.remote_root_folder_id
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_bytes

    # -------- collaborators (built on first use; drive setup may fail) --------
    @property
    def remote_backend(self) -> AttachmentBackend:
        if self._remote_backend is None:
            self._remote_backend = DriveAttachmentBackend(get_drive_client())
        return self._remote_backend

    @property
    def resolver(self) -> FolderResolver:
        if self._resolver is None:
            self._resolver = get_folder_resolver()
        return self._resolver

    def backend_for(self, provider: StorageProvider) -> AttachmentBackend:
        if provider == StorageProvider.REMOTE:
            return self.remote_backend
        return self.local_backend

    def validate_upload_size(self, size: int) -> None:
        if size > self.max_upload_bytes:
            raise InvalidInputError(
                f"Upload of {size} bytes exceeds the limit of {self.max_upload_bytes} bytes"
            )

    async def _target_folder(
        self,
        class_id: Optional[int],
        subject_id: Optional[int],
        grade_label: Optional[str],
        subject_label: Optional[str],
        scoped: bool,
    ) -> Optional[str]:
        if not scoped:
            return self.admin_folder_id or self.root_folder_id
        if grade_label is None:
            grade_label = await self.taxonomy.class_label(class_id)
        if subject_label is None:
            subject_label = await self.taxonomy.subject_label(subject_id)
        return await self.resolver.resolve(class_id, subject_id, grade_label, subject_label)

    async def store(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str],
        class_id: Optional[int],
        subject_id: Optional[int],
        uploader_id: Optional[str],
        *,
        grade_label: Optional[str] = None,
        subject_label: Optional[str] = None,
        scoped: bool = True,
    ) -> Attachment:
        """
        Persist one file and record its metadata row.

        Raises:
            InvalidInputError: scoped upload without class_id/subject_id, or too large
            RemoteUnavailableError: folder resolution or drive upload failed
            UploadError: local write failed (phase "physical_write")
            StorageInconsistentError: metadata insert failed after the write
        """
        if scoped and (class_id is None or subject_id is None):
            raise InvalidInputError("class_id and subject_id are required")
        self.validate_upload_size(len(data))

        if self.remote_enabled:
            backend = self.remote_backend
            folder_id = await self._target_folder(class_id, subject_id, grade_label, subject_label, scoped)
        else:
            backend = self.local_backend
            folder_id = None

        stored = await backend.write(data, original_name, mime_type, parent_folder_id=folder_id)

        try:
            attachment = await self.repository.insert(
                class_id=class_id,
                subject_id=subject_id,
                filename=original_name,
                storage_key=stored.storage_key,
                mime_type=mime_type,
                file_size=stored.size,
                uploaded_by=uploader_id,
                storage_provider=stored.provider.value,
                drive_parent_folder_id=stored.parent_folder_id,
            )
        except Exception as e:
            logger.error(f"Metadata insert for '{original_name}' failed: {e}")
            await self._compensate(backend, stored.storage_key)
            raise StorageInconsistentError(
                f"Attachment '{original_name}' was written but could not be recorded: {e}"
            ) from e

        logger.info(
            f"Stored attachment {attachment.id} '{original_name}' "
            f"({stored.provider.value}:{stored.storage_key}, {stored.size} bytes)"
        )
        return attachment

    async def _compensate(self, backend: AttachmentBackend, storage_key: str) -> None:
        try:
            await backend.delete(storage_key)
            logger.info(f"Removed orphaned {backend.provider.value} object {storage_key}")
        except Exception as e:
            logger.error(f"Storage leak: could not remove {backend.provider.value} object {storage_key}: {e}")

    async def fetch(self, attachment_id: int, principal: Optional[Principal] = None) -> AttachmentDownload:
        """
        Open an attachment for download.

        Raises:
            NotFoundError: unknown id or missing local file; for remote
                attachments a missing file raises while consuming the stream
        """
        attachment = await self.repository.get(attachment_id)
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} not found")

        backend = self.backend_for(attachment.provider)
        stream = await backend.open(attachment.storage_key)
        logger.debug(
            f"Attachment {attachment_id} opened for {principal.id if principal else 'anonymous'}"
        )
        return AttachmentDownload(attachment=attachment, stream=stream)

    async def remove(self, attachment_id: int) -> bool:
        """
        Delete the row, then the physical object.

        The row deletion stands even if the physical delete fails; that
        failure is logged as a storage leak.
        """
        attachment = await self.repository.delete(attachment_id)
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} not found")

        try:
            await self.backend_for(attachment.provider).delete(attachment.storage_key)
        except Exception as e:
            logger.warning(
                f"Attachment {attachment_id} row deleted but "
                f"{attachment.provider.value} object {attachment.storage_key} remains: {e}"
            )
        else:
            logger.info(f"Removed attachment {attachment_id}")
        return True


@lru_cache()
def get_attachment_store() -> AttachmentStore:
    return AttachmentStore()
