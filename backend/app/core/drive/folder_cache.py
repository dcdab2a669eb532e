"""
In-memory cache of remote folder listings.

Maps a parent folder id (or the root sentinel) to the list of its immediate
child folders so repeated resolutions under the same parent avoid a remote
list call. The cache is best-effort: entries are filled lazily, never
invalidated on their own, and concurrent writers simply overwrite each other
(last write wins). Nothing may depend on a hit for correctness; the persisted
folder mapping is the source of truth.
"""

import logging
from functools import lru_cache
from typing import Dict, List, Optional

from app.core.drive.drive_client import RemoteFile

logger = logging.getLogger("hoclieu.folder_cache")

ROOT_KEY = "__root__"


class FolderCache:
    def __init__(self):
        self._entries: Dict[str, List[RemoteFile]] = {}

    @staticmethod
    def _key(parent_id: Optional[str]) -> str:
        return parent_id or ROOT_KEY

    def get(self, parent_id: Optional[str]) -> Optional[List[RemoteFile]]:
        """Cached children of ``parent_id``, or None on a miss."""
        entry = self._entries.get(self._key(parent_id))
        return list(entry) if entry is not None else None

    def put(self, parent_id: Optional[str], folders: List[RemoteFile]) -> None:
        self._entries[self._key(parent_id)] = list(folders)

    def add(self, parent_id: Optional[str], folder: RemoteFile) -> None:
        """Append a newly created folder to an already cached listing."""
        key = self._key(parent_id)
        if key in self._entries:
            self._entries[key] = self._entries[key] + [folder]

    def clear(self) -> None:
        """Drop every entry, e.g. after folders were edited on the remote side."""
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Folder cache cleared ({count} entries)")

    def __len__(self) -> int:
        return len(self._entries)


@lru_cache()
def get_folder_cache() -> FolderCache:
    """Process-wide cache shared by the default folder resolver."""
    return FolderCache()
