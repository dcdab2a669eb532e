# backend/app/__init__.py
"""Hoclieu - document resolution, storage and search for graded course material."""

__version__ = "1.0.0"
__title__ = "Hoclieu"
__description__ = "Locate, store and search educational documents by grade and subject"
