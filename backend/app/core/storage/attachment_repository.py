"""
Relational access for attachments and taxonomy labels.

AttachmentRepository owns the ``attachments`` rows. TaxonomyRepository reads
the externally managed ``classes`` and ``subjects`` tables to turn ids into
the display labels used for folder names (and back, for the drive sync).
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, text

from app.core.database.models import Attachment, StorageProvider
from app.core.shared.database_service import DatabaseService, database_service

logger = logging.getLogger("hoclieu.attachments")


class AttachmentRepository:
    def __init__(self, database: Optional[DatabaseService] = None):
        self._db = database or database_service

    async def insert(self, **fields: Any) -> Attachment:
        """Insert one row and return it with its generated id."""
        attachment = Attachment(**fields)
        async with self._db.get_session() as session:
            session.add(attachment)
            await session.flush()
            await session.refresh(attachment)
        return attachment

    async def get(self, attachment_id: int) -> Optional[Attachment]:
        async with self._db.get_session() as session:
            result = await session.execute(
                select(Attachment).where(Attachment.id == attachment_id)
            )
            return result.scalar_one_or_none()

    async def find_by_key(self, provider: StorageProvider, storage_key: str) -> Optional[Attachment]:
        async with self._db.get_session() as session:
            result = await session.execute(
                select(Attachment)
                .where(
                    Attachment.storage_provider == provider.value,
                    Attachment.storage_key == storage_key,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def delete(self, attachment_id: int) -> Optional[Attachment]:
        """Delete the row; returns the deleted row, or None if it did not exist."""
        async with self._db.get_session() as session:
            result = await session.execute(
                delete(Attachment)
                .where(Attachment.id == attachment_id)
                .returning(Attachment)
            )
            return result.scalar_one_or_none()


class TaxonomyRepository:
    """Class and subject labels, with stable fallbacks for unknown ids."""

    def __init__(self, database: Optional[DatabaseService] = None):
        self._db = database or database_service

    async def _scalar(self, sql: str, params: Dict[str, Any]) -> Optional[Any]:
        async with self._db.get_session() as session:
            result = await session.execute(text(sql), params)
            return result.scalar_one_or_none()

    async def class_label(self, class_id: int) -> str:
        name = await self._scalar("SELECT name FROM classes WHERE id = :id LIMIT 1", {"id": class_id})
        return name or f"class-{class_id}"

    async def subject_label(self, subject_id: int) -> str:
        title = await self._scalar("SELECT title FROM subjects WHERE id = :id LIMIT 1", {"id": subject_id})
        return title or f"subject-{subject_id}"

    async def find_class_id(self, name: str) -> Optional[int]:
        return await self._scalar("SELECT id FROM classes WHERE name = :name LIMIT 1", {"name": name})

    async def find_subject_id(self, title: str) -> Optional[int]:
        return await self._scalar("SELECT id FROM subjects WHERE title = :title LIMIT 1", {"title": title})
