#!/usr/bin/env python3
"""
Database Migration — Create the prompt library tables from SQLAlchemy models.

Usage:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_migration(check_only: bool = False):
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    load_settings()

    from sqlalchemy import inspect
    from database.session import get_engine, init_db, close_db
    from database.models import Base

    engine = get_engine()
    defined = set(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {engine.dialect.name}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        async with engine.connect() as conn:
            existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

        missing = defined - existing
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist.")
        await close_db()
        return

    print("Running database migration...")
    await init_db()
    await close_db()
    print("Migration complete.")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
