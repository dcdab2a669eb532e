"""
Grade/subject folder resolution.

Maps a (class, subject) pair to the remote folder that holds its files:

    <root>/
        Lớp 6/
            Toán/
            Ngữ văn/
        Lớp 7/
            ...

Folder names on the drive are maintained by hand, so matching is lenient:
labels are compared through normalize_label, a grade may be written as
"Lớp 6", "lop 6" or plain "6", and a folder whose name merely contains the
candidate is accepted when nothing matches exactly. Missing folders are
created. The resolved id is persisted in ``drive_folders`` so later
resolutions of the same pair make no remote calls at all.

Usage:
    from app.core.drive.folder_resolver import get_folder_resolver

    folder_id = await get_folder_resolver().resolve(6, 12, "Lớp 6", "Toán")
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncIterator, List, Optional

from app.config import settings
from app.core.drive.drive_client import GoogleDriveClient, RemoteFile, get_drive_client
from app.core.drive.folder_cache import FolderCache, get_folder_cache
from app.core.drive.folder_repository import FolderMappingRepository
from app.core.errors import InvalidInputError, NotFoundError, RemoteUnavailableError
from app.core.shared.lock_service import get_lock_service
from app.core.utils.text_utils import grade_candidates, normalize_label, subject_candidates

logger = logging.getLogger("hoclieu.folder_resolver")


@dataclass
class FolderMatch:
    folder: RemoteFile
    exact: bool


def match_folder(children: List[RemoteFile], candidates: List[str]) -> Optional[FolderMatch]:
    """
    Pick the child folder for an ordered list of name candidates.

    An exact normalized match on any candidate wins, in candidate order.
    Otherwise the first child whose name contains a candidate is returned,
    again trying candidates in order.
    """
    keyed = [(normalize_label(child.name), child) for child in children]
    keys = [normalize_label(c) for c in candidates if normalize_label(c)]

    for key in keys:
        for name, child in keyed:
            if name == key:
                return FolderMatch(child, exact=True)

    for key in keys:
        for name, child in keyed:
            if key in name:
                return FolderMatch(child, exact=False)
    return None


class FolderResolver:
    """
    Find-or-create resolution of grade/subject folders.

    Collaborators are injected; ``get_folder_resolver()`` wires the
    process-wide defaults from settings.
    """

    def __init__(
        self,
        client: GoogleDriveClient,
        repository: Optional[FolderMappingRepository] = None,
        cache: Optional[FolderCache] = None,
        lock_service=None,
        root_folder_id: Optional[str] = None,
        lock_enabled: Optional[bool] = None,
        lock_timeout: Optional[int] = None,
    ):
        self.client = client
        self.repository = repository or FolderMappingRepository()
        self.cache = cache if cache is not None else FolderCache()
        self.root_folder_id = root_folder_id
        self.lock_enabled = settings.folder_lock_enabled if lock_enabled is None else lock_enabled
        self.lock_timeout = lock_timeout or settings.folder_lock_timeout
        self._lock_service = lock_service

    @property
    def lock_service(self):
        if self._lock_service is None:
            self._lock_service = get_lock_service()
        return self._lock_service

    async def resolve(
        self,
        class_id: Optional[int],
        subject_id: Optional[int],
        grade_label: Optional[str],
        subject_label: Optional[str],
    ) -> str:
        """
        Return the remote folder id for the pair, creating folders if needed.

        Raises:
            InvalidInputError: both labels are empty
            RemoteUnavailableError: a remote list or create call failed
        """
        mapping = await self.repository.get(class_id, subject_id)
        if mapping is not None:
            logger.debug(f"Folder mapping hit class={class_id} subject={subject_id}")
            return mapping.drive_folder_id

        if not grade_candidates(grade_label) and not subject_candidates(subject_label):
            raise InvalidInputError("A grade or subject label is required to resolve a folder")

        async with self._serialized(class_id, subject_id):
            # Another resolution may have finished while we waited.
            mapping = await self.repository.get(class_id, subject_id)
            if mapping is not None:
                return mapping.drive_folder_id

            try:
                folder_id, path = await self._find_or_create_path(grade_label, subject_label)
            except NotFoundError as e:
                raise RemoteUnavailableError(f"Drive folder disappeared during resolution: {e}") from e

            await self.repository.upsert(class_id, subject_id, folder_id, path)
            logger.info(f"Resolved class={class_id} subject={subject_id} to '{path}' ({folder_id})")
            return folder_id

    async def resolve_path(
        self, grade_label: Optional[str], subject_label: Optional[str]
    ) -> Optional[str]:
        """
        Read-only lookup of an existing grade/subject folder.

        Nothing is created and nothing is persisted. Returns None when either
        level is missing.
        """
        parent_id = self.root_folder_id
        grades = grade_candidates(grade_label)
        if grades:
            match = match_folder(await self._children(parent_id), grades)
            if match is None:
                return None
            parent_id = match.folder.id

        subjects = subject_candidates(subject_label)
        if subjects:
            match = match_folder(await self._children(parent_id), subjects)
            if match is None:
                return None
            parent_id = match.folder.id

        return parent_id if (grades or subjects) else None

    @asynccontextmanager
    async def _serialized(self, class_id: Optional[int], subject_id: Optional[int]) -> AsyncIterator[None]:
        if not self.lock_enabled:
            yield
            return
        key = f"folder:{class_id}:{subject_id}"
        async with self.lock_service.lock(key, timeout=self.lock_timeout) as acquired:
            if not acquired:
                logger.warning(f"Resolving {key} without the lock; duplicate folders may appear")
            yield

    async def _find_or_create_path(self, grade_label: Optional[str], subject_label: Optional[str]):
        parent_id = self.root_folder_id
        names: List[str] = []

        grades = grade_candidates(grade_label)
        if grades:
            grade_folder = await self._find_or_create(parent_id, grades, display_name=grades[0])
            parent_id = grade_folder.id
            names.append(grade_folder.name)

        subjects = subject_candidates(subject_label)
        if subjects:
            subject_folder = await self._find_or_create(parent_id, subjects, display_name=subjects[0])
            parent_id = subject_folder.id
            names.append(subject_folder.name)

        return parent_id, "/".join(names)

    async def _find_or_create(
        self, parent_id: Optional[str], candidates: List[str], display_name: str
    ) -> RemoteFile:
        match = match_folder(await self._children(parent_id), candidates)
        if match is not None:
            if not match.exact:
                logger.debug(f"Using folder '{match.folder.name}' for '{display_name}' (partial match)")
            return match.folder

        folder = await self.client.create_folder(parent_id, display_name)
        self.cache.add(parent_id, folder)
        return folder

    async def _children(self, parent_id: Optional[str]) -> List[RemoteFile]:
        cached = self.cache.get(parent_id)
        if cached is not None:
            return cached
        folders = await self.client.list_folders(parent_id)
        self.cache.put(parent_id, folders)
        return folders


@lru_cache()
def get_folder_resolver() -> FolderResolver:
    """Process-wide resolver over the configured drive root."""
    return FolderResolver(
        client=get_drive_client(),
        cache=get_folder_cache(),
        root_folder_id=settings.remote_root_folder_id,
    )
