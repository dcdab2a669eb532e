# backend/app/core/errors.py
"""
Error taxonomy for the document resolution and storage layer.

Every error raised by the folder resolver, attachment store and search
cascade derives from DocumentStoreError and carries a stable ``kind`` string
so callers can map it to a single external status without inspecting
exception classes. ``phase`` is diagnostic only (which step of an upload
failed) and should not be shown to end users.
"""

from typing import Optional


class DocumentStoreError(Exception):
    """Base class for all errors surfaced by this layer."""

    kind = "error"

    def __init__(self, message: str, *, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase


class NotFoundError(DocumentStoreError):
    """Requested attachment, folder or mapping does not exist."""

    kind = "not_found"


class RemoteUnavailableError(DocumentStoreError):
    """Remote provider call failed, timed out, or credentials are missing."""

    kind = "remote_unavailable"


class InvalidInputError(DocumentStoreError):
    """Missing taxonomy identifiers, empty query, or an oversized upload."""

    kind = "invalid_input"


class UploadError(DocumentStoreError):
    """An upload failed; ``phase`` is ``physical_write`` or ``metadata``."""

    kind = "upload_failed"


class StorageInconsistentError(UploadError):
    """
    Physical write and metadata row disagree.

    Raised after the compensating cleanup has been attempted, so the storage
    leak (if any) has already been logged.
    """

    kind = "storage_inconsistent"

    def __init__(self, message: str, *, phase: Optional[str] = "metadata"):
        super().__init__(message, phase=phase)
