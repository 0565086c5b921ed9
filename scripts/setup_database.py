#!/usr/bin/env python3
"""
Scheduling Database Setup Script
================================

Creates the recurring task, task and task reminder tables.

Usage:
    python scripts/setup_database.py [--check-only]
"""

import sys
import logging
import argparse

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from crm_scheduler.db.session import engine
from crm_scheduler.db.base import Base

# Register the scheduling tables with Base.metadata
from crm_scheduler.reminders import models  # noqa: F401

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def test_connection():
    """Test database connection"""
    logger.info("🔌 Testing database connection...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("✅ Database connection successful")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False


def missing_tables():
    existing = set(inspect(engine).get_table_names())
    return [name for name in Base.metadata.tables if name not in existing]


def create_tables():
    try:
        logger.info("🏗️ Creating scheduling tables...")
        Base.metadata.create_all(bind=engine)
        logger.info(f"✅ Tables ready: {', '.join(Base.metadata.tables)}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to create tables: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(description='Scheduling database setup')
    parser.add_argument('--check-only', action='store_true',
                        help='Only check if tables exist, do not create')
    args = parser.parse_args()

    if not test_connection():
        logger.error("❌ Cannot proceed without database connection")
        sys.exit(1)

    missing = missing_tables()
    if args.check_only:
        if missing:
            logger.error(f"❌ Missing tables: {missing}")
            sys.exit(1)
        logger.info("✅ All scheduling tables exist")
        sys.exit(0)

    if missing and not create_tables():
        sys.exit(1)
    logger.info("🎉 Database setup completed")


if __name__ == "__main__":
    main()
