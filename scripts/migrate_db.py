#!/usr/bin/env python3
"""
Database Migration — Create the flow tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                 # create missing tables
    python scripts/migrate_db.py --check         # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./flows.db
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect

from config.settings import load_settings
from database.models import Base
from database.store import SqlFlowStore


async def existing_tables(store: SqlFlowStore) -> set[str]:
    async with store.engine.connect() as conn:
        return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))


async def run_migration(db_url: str = None, check_only: bool = False) -> int:
    settings = load_settings()
    store = SqlFlowStore(db_url or settings.database.url)
    defined = set(Base.metadata.tables)

    print(f"Database: {store.engine.dialect.name}")
    print(f"URL: {store.url.split('@')[-1]}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    try:
        if check_only:
            missing = defined - await existing_tables(store)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        await store.init()
        print(f"Tables created/verified: {', '.join(sorted(defined & await existing_tables(store)))}")
        print("Migration complete.")
        return 0
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="Flow interpreter database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(db_url=args.url, check_only=args.check)))


if __name__ == "__main__":
    main()
