#!/usr/bin/env python3
"""
Database Migration — Create the queue_jobs and webhooks tables.

Only needed for the sql store backend (database.store_backend: "sql").

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report status only, no changes
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    elif dialect == "mysql":
        query = "SHOW TABLES"
    else:  # sqlite
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    result = await conn.execute(text(query))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine(settings.database.url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    try:
        if check_only:
            print(f"Database: {dialect}")
            print(f"Tables defined: {', '.join(sorted(defined))}")
            async with engine.connect() as conn:
                existing = await _existing_tables(conn, dialect)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
            else:
                print("All tables exist.")
            return

        print(f"Running migration against {dialect}...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables created/verified: {', '.join(sorted(defined & set(existing)))}")
        print("Migration complete.")
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="WaDispatch database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
