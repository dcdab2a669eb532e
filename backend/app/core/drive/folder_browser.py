"""Read-only listing of the files in a grade/subject folder for browsing."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.core.drive.drive_client import RemoteFile, preview_url
from app.core.drive.folder_resolver import FolderResolver, get_folder_resolver
from app.core.errors import NotFoundError, RemoteUnavailableError

logger = logging.getLogger("hoclieu.folder_browser")


@dataclass
class FolderListing:
    folder_id: Optional[str]
    files: List[Dict[str, Any]] = field(default_factory=list)
    fallback_to_root: bool = False
    degraded: bool = False

    @property
    def count(self) -> int:
        return len(self.files)


def _file_entry(remote_file: RemoteFile) -> Dict[str, Any]:
    return {
        "id": remote_file.id,
        "name": remote_file.name,
        "mime_type": remote_file.mime_type,
        "size": remote_file.size,
        "preview_url": preview_url(remote_file),
    }


class FolderBrowser:
    """
    Lists files for a (grade, subject) pair without creating anything.

    Lookup order: grade then subject under the root, the subject directly
    under the root, and finally the root itself. Remote failures produce an
    empty, ``degraded`` listing instead of an error.
    """

    def __init__(self, resolver: Optional[FolderResolver] = None):
        self._resolver = resolver

    @property
    def resolver(self) -> FolderResolver:
        if self._resolver is None:
            self._resolver = get_folder_resolver()
        return self._resolver

    async def list_files(
        self, grade_label: Optional[str] = None, subject_label: Optional[str] = None
    ) -> FolderListing:
        root_id = self.resolver.root_folder_id
        try:
            folder_id = None
            if grade_label or subject_label:
                folder_id = await self.resolver.resolve_path(grade_label, subject_label)
            if folder_id is None and grade_label and subject_label:
                folder_id = await self.resolver.resolve_path(None, subject_label)

            fallback = folder_id is None
            if fallback:
                if not root_id:
                    return FolderListing(folder_id=None, fallback_to_root=True)
                folder_id = root_id

            files = await self.resolver.client.list_files(folder_id)
        except (RemoteUnavailableError, NotFoundError) as e:
            logger.warning(f"Drive listing for grade={grade_label!r} subject={subject_label!r} failed: {e}")
            return FolderListing(folder_id=None, degraded=True)

        logger.debug(f"Listed {len(files)} files in {folder_id} (fallback={fallback})")
        return FolderListing(
            folder_id=folder_id,
            files=[_file_entry(f) for f in files],
            fallback_to_root=fallback,
        )
