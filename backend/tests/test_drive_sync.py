"""
Tests for DriveSyncService walking root → grade → subject folders.
"""

import pytest
from sqlalchemy.exc import OperationalError

from app.core.drive.drive_sync_service import DriveSyncService, _parse_created_time
from app.core.errors import InvalidInputError, RemoteUnavailableError

ROOT = "root"


@pytest.fixture
def sync_service(drive, folder_repo, attachment_repo, taxonomy):
    return DriveSyncService(
        client=drive,
        folders=folder_repo,
        attachments=attachment_repo,
        taxonomy=taxonomy,
        root_folder_id=ROOT,
    )


@pytest.fixture
def tree(drive):
    grade6 = drive.add_folder(ROOT, "Lớp 6")
    math6 = drive.add_folder(grade6, "Toán")
    lit6 = drive.add_folder(grade6, "Ngữ văn")
    extra = drive.add_folder(ROOT, "Tài liệu chung")
    misc = drive.add_folder(extra, "Khác")
    return {
        "math6": math6,
        "lit6": lit6,
        "misc": misc,
        "files": [
            drive.add_file(math6, "phan so.pdf", b"123"),
            drive.add_file(math6, "hinh hoc.pdf"),
            drive.add_file(lit6, "tho.docx"),
            drive.add_file(misc, "lich.xlsx"),
        ],
    }


@pytest.mark.asyncio
async def test_maps_folders_and_registers_files(sync_service, tree, folder_repo, attachment_repo):
    summary = await sync_service.sync()

    assert summary.grade_folders == 2
    assert summary.subject_folders == 3
    assert summary.files_registered == 4

    assert folder_repo.rows[(6, 12)].drive_folder_id == tree["math6"]
    assert folder_repo.rows[(6, 12)].path == "Lớp 6/Toán"
    # Unknown names map with NULL ids.
    assert folder_repo.rows[(None, None)].path == "Tài liệu chung/Khác"

    registered = {a.storage_key: a for a in attachment_repo.rows.values()}
    assert set(registered) == set(tree["files"])
    first = registered[tree["files"][0]]
    assert first.storage_provider == "gdrive"
    assert first.drive_parent_folder_id == tree["math6"]
    assert (first.class_id, first.subject_id, first.file_size) == (6, 12, 3)


@pytest.mark.asyncio
async def test_second_run_registers_nothing(sync_service, tree, attachment_repo):
    await sync_service.sync()
    summary = await sync_service.sync()

    assert summary.files_seen == 4
    assert summary.files_registered == 0
    assert len(attachment_repo.rows) == 4


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(sync_service, tree, folder_repo, attachment_repo):
    summary = await sync_service.sync(dry_run=True)

    assert summary.files_registered == 4
    assert folder_repo.rows == {}
    assert attachment_repo.rows == {}


@pytest.mark.asyncio
async def test_requires_root(drive, folder_repo, attachment_repo, taxonomy):
    service = DriveSyncService(
        client=drive, folders=folder_repo, attachments=attachment_repo, taxonomy=taxonomy
    )
    service.root_folder_id = None
    with pytest.raises(InvalidInputError):
        await service.sync()


@pytest.mark.asyncio
async def test_root_listing_failure_propagates(sync_service, drive):
    drive.unavailable = True
    with pytest.raises(RemoteUnavailableError):
        await sync_service.sync()


@pytest.mark.asyncio
async def test_database_error_skips_only_that_folder(sync_service, tree, attachment_repo):
    insert = attachment_repo.insert

    async def flaky_insert(**fields):
        if fields["drive_parent_folder_id"] == tree["lit6"]:
            raise OperationalError("INSERT INTO attachments", {}, Exception("connection reset"))
        return await insert(**fields)

    attachment_repo.insert = flaky_insert

    summary = await sync_service.sync()

    assert summary.subject_folders == 3
    assert summary.files_registered == 3
    assert len(summary.errors) == 1
    assert summary.errors[0].startswith("Lớp 6/Ngữ văn:")


@pytest.mark.asyncio
async def test_taxonomy_lookup_error_skips_grade(sync_service, tree, taxonomy, folder_repo):
    async def broken_lookup(name):
        raise OperationalError("SELECT id FROM classes", {}, Exception("timeout"))

    taxonomy.find_class_id = broken_lookup

    summary = await sync_service.sync()

    assert summary.subject_folders == 0
    assert len(summary.errors) == 2
    assert folder_repo.rows == {}


def test_parse_created_time():
    parsed = _parse_created_time("2024-09-05T08:30:00.000Z")
    assert (parsed.year, parsed.hour, parsed.tzinfo) == (2024, 8, None)
    assert _parse_created_time("garbage") is None
    assert _parse_created_time(None) is None
