# backend/app/core/database/models.py
"""
SQLAlchemy ORM models for the document storage layer.

Models:
    - DriveFolder: resolved remote folder for a (class, subject) pair
    - Attachment: one stored file, on local disk or in the remote drive

The content tables read by the search cascade (materials, classes, subjects)
are owned elsewhere and are only queried through SQL text, so they have no
ORM mapping here.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)

from .base import Base


class StorageProvider(str, enum.Enum):
    """Where an attachment's bytes live. Values are the persisted column values."""

    LOCAL = "local"
    REMOTE = "gdrive"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "StorageProvider":
        """Parse a persisted value; legacy rows without a provider are local."""
        if not value:
            return cls.LOCAL
        return cls(value)


class DriveFolder(Base):
    """
    Mapping from a (class, subject) pair to the remote folder holding its files.

    Attributes:
        class_id: Class/grade identifier (nullable when unresolved)
        subject_id: Subject identifier (nullable when unresolved)
        drive_folder_id: Folder id assigned by the remote provider
        path: "{className}/{subjectName}" for diagnostics

    Uniqueness treats NULLs as equal so a pair with an unknown side still
    converges to one row under concurrent upserts.
    """

    __tablename__ = "drive_folders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    class_id = Column(Integer, nullable=True)
    subject_id = Column(Integer, nullable=True)
    drive_folder_id = Column(String(255), nullable=False)
    path = Column(String(1024), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "ux_drive_folders_class_subject",
            "class_id",
            "subject_id",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
    )

    def __repr__(self) -> str:
        return f"<DriveFolder(class_id={self.class_id}, subject_id={self.subject_id}, folder={self.drive_folder_id})>"


class Attachment(Base):
    """
    Attachment model representing one stored file.

    Attributes:
        id: Surrogate identifier
        class_id, subject_id: Owning taxonomy (NULL only for unscoped uploads)
        filename: Original user-supplied name, for display and download headers
        storage_key: Backend locator (generated file name or provider file id)
        mime_type, file_size: Advisory metadata
        uploaded_by: Principal identifier of the uploader
        storage_provider: "local" or "gdrive"; never changes after creation
        drive_parent_folder_id: Remote folder used at upload time
        extracted_text: Text extracted from the binary, searched by the cascade
        created_at: Row creation time

    Lifecycle:
        The row is inserted only after the physical write has completed and is
        removed before the physical object when the attachment is deleted.
    """

    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    class_id = Column(Integer, nullable=True, index=True)
    subject_id = Column(Integer, nullable=True, index=True)

    filename = Column(String(500), nullable=False)
    storage_key = Column(String(1024), nullable=False)
    mime_type = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    uploaded_by = Column(String(255), nullable=True)

    storage_provider = Column(String(20), nullable=False, default=StorageProvider.LOCAL.value)
    drive_parent_folder_id = Column(String(255), nullable=True)

    extracted_text = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ux_attachments_provider_key", "storage_provider", "storage_key", unique=True),
        Index("ix_attachments_class_subject", "class_id", "subject_id"),
    )

    @property
    def provider(self) -> StorageProvider:
        return StorageProvider.from_value(self.storage_provider)

    def __repr__(self) -> str:
        return f"<Attachment(id={self.id}, filename={self.filename}, provider={self.storage_provider})>"
