# backend/app/core/database/__init__.py
"""
Database package for Hoclieu.

Provides the SQLAlchemy declarative base and the models owned by this layer.
"""

from .base import Base
from .models import Attachment, DriveFolder, StorageProvider

__all__ = [
    "Base",
    "Attachment",
    "DriveFolder",
    "StorageProvider",
]
