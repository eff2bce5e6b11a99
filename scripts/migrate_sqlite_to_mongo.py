"""
One-off migration of the embedded SQLite store into MongoDB.

Runs only when MIGRATE_SQLITE_TO_MONGO=true (or with --force). Safe to rerun:
rows that already exist in MongoDB are matched and skipped.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timetracker.config import get_settings
from timetracker.errors import TimeTrackerError
from timetracker.migration import migrate
from timetracker.mongo_provider import MongoStorageProvider
from timetracker.sqlite_provider import SqliteStorageProvider

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Migrate SQLite data into MongoDB")
    parser.add_argument(
        "--db-path",
        type=str,
        default=settings.db_path,
        help="SQLite database file to read from",
    )
    parser.add_argument(
        "--mongo-uri",
        type=str,
        default=settings.mongo_uri,
        help="MongoDB connection string",
    )
    parser.add_argument(
        "--mongo-db",
        type=str,
        default=settings.mongo_db_name,
        help="MongoDB database name",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if MIGRATE_SQLITE_TO_MONGO is not set",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")

    if not (args.force or settings.migrate_sqlite_to_mongo):
        logger.info("MIGRATE_SQLITE_TO_MONGO is not enabled, nothing to do")
        return 0
    if not Path(args.db_path).exists():
        logger.error("SQLite database %s does not exist", args.db_path)
        return 1

    source = SqliteStorageProvider(db_path=args.db_path, autosave=False)
    target = MongoStorageProvider(uri=args.mongo_uri, db_name=args.mongo_db)
    try:
        source.init()
        target.init()
        stats = migrate(source, target)
    except TimeTrackerError as exc:
        logger.error("Migration failed: %s", exc.message)
        return 1
    finally:
        source.shutdown()
        target.shutdown()

    print(json.dumps(stats.as_dict(), indent=2))
    logger.info("SQLite -> MongoDB migration complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
