"""
Database migration script for the CTIS Deadline Engine.

Creates the deadline tables and, optionally, seeds the default rules and
public holidays.

Usage:
    python migrations.py                 # create tables
    python migrations.py --seed          # create tables and seed defaults
    python migrations.py --seed --year 2026
"""
import argparse
import asyncio
from pathlib import Path
from dotenv import load_dotenv
from sqlalchemy import inspect
import logging

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load environment
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings  # noqa: E402
from database import engine, AsyncSessionLocal, create_tables  # noqa: E402


async def verify_tables():
    """Log which deadline tables exist"""
    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    expected = ["deadline_rules", "public_holidays", "client_deadline_extensions", "deadline_audit_logs"]
    for table in expected:
        if table in tables:
            logger.info(f"  ✓ {table}")
        else:
            logger.error(f"  ✗ {table} missing")
    return all(table in tables for table in expected)


async def seed(year: int):
    from services.deadline_seeder import seed_defaults

    async with AsyncSessionLocal() as session:
        result = await seed_defaults(session, year)
    logger.info(f"Seeded: {result}")


async def main(argv=None):
    """Run migrations"""
    parser = argparse.ArgumentParser(description="Create deadline engine tables")
    parser.add_argument("--seed", action="store_true", help="Seed default rules and holidays")
    parser.add_argument("--year", type=int, default=None, help="Year for Easter holidays (default SEED_HOLIDAY_YEAR)")
    args = parser.parse_args(argv)

    logger.info("=" * 50)
    logger.info("CTIS Deadline Engine - Database Migration")
    logger.info("=" * 50)

    await create_tables()
    ok = await verify_tables()

    if args.seed:
        await seed(args.year or get_settings().SEED_HOLIDAY_YEAR)

    await engine.dispose()

    logger.info("=" * 50)
    logger.info("Migration complete!" if ok else "Migration finished with missing tables")
    logger.info("=" * 50)


if __name__ == "__main__":
    asyncio.run(main())
