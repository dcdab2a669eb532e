"""
Drive → database synchronization.

Walks the storage root two levels deep (grade folders, then subject folders),
records every subject folder in ``drive_folders`` and registers drive files
that have no ``attachments`` row yet. Files are matched on
(storage_provider="gdrive", storage_key=<drive file id>), so running the sync
again registers nothing new.

Grade and subject folders are matched to ``classes.name`` and
``subjects.title`` by exact name; unmatched folders are still mapped, with a
NULL id on the unmatched side.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.core.database.models import StorageProvider
from app.core.drive.drive_client import GoogleDriveClient, RemoteFile, get_drive_client
from app.core.drive.folder_repository import FolderMappingRepository
from app.core.errors import DocumentStoreError, InvalidInputError
from app.core.storage.attachment_repository import AttachmentRepository, TaxonomyRepository

logger = logging.getLogger("hoclieu.drive_sync")


@dataclass
class SyncSummary:
    grade_folders: int = 0
    subject_folders: int = 0
    files_seen: int = 0
    files_registered: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "grade_folders": self.grade_folders,
            "subject_folders": self.subject_folders,
            "files_seen": self.files_seen,
            "files_registered": self.files_registered,
            "errors": list(self.errors),
        }


def _parse_created_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class DriveSyncService:
    def __init__(
        self,
        client: Optional[GoogleDriveClient] = None,
        folders: Optional[FolderMappingRepository] = None,
        attachments: Optional[AttachmentRepository] = None,
        taxonomy: Optional[TaxonomyRepository] = None,
        root_folder_id: Optional[str] = None,
    ):
        self.client = client or get_drive_client()
        self.folders = folders or FolderMappingRepository()
        self.attachments = attachments or AttachmentRepository()
        self.taxonomy = taxonomy or TaxonomyRepository()
        self.root_folder_id = root_folder_id or settings.remote_root_folder_id

    async def sync(self, dry_run: bool = False) -> SyncSummary:
        """
        Synchronize the whole tree under the root folder.

        Listing the root is required; a failure below it is recorded in the
        summary and the walk continues with the next folder.

        Raises:
            InvalidInputError: no root folder configured
            RemoteUnavailableError: the root folder cannot be listed
        """
        if not self.root_folder_id:
            raise InvalidInputError("REMOTE_ROOT_FOLDER_ID is not configured")

        summary = SyncSummary()
        grade_folders = await self.client.list_folders(self.root_folder_id)
        logger.info(f"Found {len(grade_folders)} grade folders under {self.root_folder_id}")

        for grade in grade_folders:
            summary.grade_folders += 1
            try:
                subject_folders = await self.client.list_folders(grade.id)
                class_id = await self.taxonomy.find_class_id(grade.name)
            except (DocumentStoreError, SQLAlchemyError) as e:
                logger.warning(f"Skipping grade folder '{grade.name}': {e}")
                summary.errors.append(f"{grade.name}: {e}")
                continue

            for subject in subject_folders:
                summary.subject_folders += 1
                try:
                    await self._sync_subject(grade, subject, class_id, summary, dry_run)
                except (DocumentStoreError, SQLAlchemyError) as e:
                    logger.warning(f"Skipping subject folder '{grade.name}/{subject.name}': {e}")
                    summary.errors.append(f"{grade.name}/{subject.name}: {e}")

        logger.info(
            f"Drive sync finished: {summary.subject_folders} subject folders, "
            f"{summary.files_registered}/{summary.files_seen} files registered"
            + (" (dry run)" if dry_run else "")
        )
        return summary

    async def _sync_subject(
        self,
        grade: RemoteFile,
        subject: RemoteFile,
        class_id: Optional[int],
        summary: SyncSummary,
        dry_run: bool,
    ) -> None:
        subject_id = await self.taxonomy.find_subject_id(subject.name)
        path = f"{grade.name}/{subject.name}"
        if not dry_run:
            await self.folders.upsert(class_id, subject_id, subject.id, path)

        for remote_file in await self.client.list_files(subject.id):
            summary.files_seen += 1
            known = await self.attachments.find_by_key(StorageProvider.REMOTE, remote_file.id)
            if known is not None:
                continue
            if not dry_run:
                await self.attachments.insert(
                    class_id=class_id,
                    subject_id=subject_id,
                    filename=remote_file.name,
                    storage_key=remote_file.id,
                    mime_type=remote_file.mime_type,
                    file_size=remote_file.size,
                    uploaded_by=None,
                    storage_provider=StorageProvider.REMOTE.value,
                    drive_parent_folder_id=subject.id,
                    created_at=_parse_created_time(remote_file.created_time) or datetime.utcnow(),
                )
            summary.files_registered += 1
            logger.info(f"Registered '{remote_file.name}' -> {path}")
