"""
Rebuild the materials full-text search vectors.

Recomputes materials.tsv for every row. This is a full-table update; run it
after bulk imports or when the tsvector column drifted, not on a schedule.

Usage:
    docker exec hoclieu-backend python -m app.core.commands.reindex_search
"""

import argparse
import asyncio
import logging
import sys

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


async def reindex() -> int:
    from sqlalchemy.exc import SQLAlchemyError

    from app.core.search.search_cascade import get_search_cascade
    from app.core.shared.database_service import database_service

    try:
        updated = await get_search_cascade().reindex()
    except SQLAlchemyError as e:
        logger.error(f"Reindex failed: {e}")
        return 1
    finally:
        await database_service.close()

    logger.info(f"Updated search vectors for {updated} materials")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Recompute materials.tsv for all rows")
    parser.parse_args()
    sys.exit(asyncio.run(reindex()))


if __name__ == "__main__":
    main()
