"""
Synchronize the drive folder tree into the database.

Walks REMOTE_ROOT_FOLDER_ID → grade folders → subject folders, upserts a
drive_folders row per subject folder and registers drive files that have no
attachments row yet.

Usage:
    # Show what would be registered
    docker exec hoclieu-backend python -m app.core.commands.sync_drive --dry-run

    # Register files
    docker exec hoclieu-backend python -m app.core.commands.sync_drive

    # Use a different root folder
    docker exec hoclieu-backend python -m app.core.commands.sync_drive --root <folder-id>
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


async def sync_drive(dry_run: bool = False, root_folder_id: Optional[str] = None) -> int:
    """Run one sync; returns a process exit code."""
    from app.core.drive.drive_sync_service import DriveSyncService
    from app.core.errors import DocumentStoreError
    from app.core.shared.database_service import database_service

    try:
        summary = await DriveSyncService(root_folder_id=root_folder_id).sync(dry_run=dry_run)
    except DocumentStoreError as e:
        logger.error(f"Drive sync failed: {e}")
        return 1
    finally:
        await database_service.close()

    logger.info(f"Grade folders:    {summary.grade_folders}")
    logger.info(f"Subject folders:  {summary.subject_folders}")
    logger.info(f"Files seen:       {summary.files_seen}")
    logger.info(f"Files registered: {summary.files_registered}")
    for error in summary.errors:
        logger.warning(f"  {error}")
    if dry_run:
        logger.info("[DRY RUN] Nothing was written. Run without --dry-run to register files")
    return 0 if not summary.errors else 2


def main():
    parser = argparse.ArgumentParser(description="Sync drive folders and files into the database")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be registered without writing",
    )
    parser.add_argument(
        "--root",
        default=None,
        help="Root folder id (defaults to REMOTE_ROOT_FOLDER_ID)",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(sync_drive(dry_run=args.dry_run, root_folder_id=args.root)))


if __name__ == "__main__":
    main()
