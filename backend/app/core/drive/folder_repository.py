"""Persistence of (class, subject) -> remote folder mappings."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from app.core.database.models import DriveFolder
from app.core.shared.database_service import DatabaseService, database_service

logger = logging.getLogger("hoclieu.folder_repository")


def build_upsert_statement(
    class_id: Optional[int],
    subject_id: Optional[int],
    drive_folder_id: str,
    path: Optional[str],
):
    """
    Native insert-or-update on (class_id, subject_id).

    Concurrent resolutions of the same pair end with one row holding the
    last written folder id.
    """
    now = datetime.utcnow()
    stmt = pg_insert(DriveFolder).values(
        class_id=class_id,
        subject_id=subject_id,
        drive_folder_id=drive_folder_id,
        path=path,
        created_at=now,
        updated_at=now,
    )
    return stmt.on_conflict_do_update(
        index_elements=[DriveFolder.class_id, DriveFolder.subject_id],
        set_={
            "drive_folder_id": stmt.excluded.drive_folder_id,
            "path": stmt.excluded.path,
            "updated_at": now,
        },
    )


class FolderMappingRepository:
    """Reads and upserts rows of the ``drive_folders`` table."""

    def __init__(self, database: Optional[DatabaseService] = None):
        self._db = database or database_service

    async def get(self, class_id: Optional[int], subject_id: Optional[int]) -> Optional[DriveFolder]:
        """Mapping for the pair; NULL ids match NULL columns."""
        async with self._db.get_session() as session:
            result = await session.execute(
                select(DriveFolder)
                .where(
                    DriveFolder.class_id.is_not_distinct_from(class_id),
                    DriveFolder.subject_id.is_not_distinct_from(subject_id),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def upsert(
        self,
        class_id: Optional[int],
        subject_id: Optional[int],
        drive_folder_id: str,
        path: Optional[str] = None,
    ) -> None:
        try:
            async with self._db.get_session() as session:
                await session.execute(
                    build_upsert_statement(class_id, subject_id, drive_folder_id, path)
                )
        except SQLAlchemyError:
            logger.exception(
                f"Failed to upsert folder mapping class={class_id} subject={subject_id}"
            )
            raise
        logger.debug(f"Folder mapping class={class_id} subject={subject_id} -> {drive_folder_id}")
