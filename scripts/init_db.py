#!/usr/bin/env python3
"""
Database initialization script
Creates all tables and optionally seeds the demo users
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load .env file
from dotenv import load_dotenv
load_dotenv()

from backend.core.settings import EngineSettings
from backend.models import Base, engine, SessionLocal, User, session_scope
import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEMO_USERS = (
    ("testuser", "test@example.com"),
    ("johndoe", "john@example.com"),
    ("janedoe", "jane@example.com"),
)


def init_database(drop_existing: bool = False, bind=None):
    """
    Initialize database tables

    Args:
        drop_existing: If True, drops all tables first (DANGER: data loss!)
    """
    bind = bind or engine
    logger.info("Initializing betting database...")

    if drop_existing:
        logger.warning("Dropping all existing tables!")
        response = input("Are you sure? This will delete all data. Type 'yes' to confirm: ")
        if response.lower() != 'yes':
            logger.info("Aborted.")
            return False

        Base.metadata.drop_all(bind=bind)
        logger.info("Existing tables dropped")

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created successfully")

    tables = inspect(bind).get_table_names()
    logger.info("Tables: %s", ", ".join(tables))

    return True


def seed_demo_users(session_factory=None, settings: EngineSettings = None) -> int:
    """Add the demo users if missing; returns how many were created"""
    settings = settings or EngineSettings.from_env()
    starting_balance = settings.starting_balance
    logger.info("Seeding demo users...")

    created = 0
    with session_scope(session_factory or SessionLocal) as db:
        for username, email in DEMO_USERS:
            if db.query(User).filter(User.username == username).first():
                continue
            db.add(User(username=username, email=email, balance=starting_balance))
            created += 1

    logger.info("Demo users seeded: %d created", created)
    return created


def check_connection():
    """Test database connection"""
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        logger.info("Database connection successful")
        return True
    except SQLAlchemyError as e:
        logger.error("Database connection failed: %s", e)
        return False


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize the betting database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DANGER!)")
    parser.add_argument("--seed", action="store_true", help="Seed demo users")
    parser.add_argument("--check", action="store_true", help="Only check connection")

    args = parser.parse_args()

    if args.check:
        check_connection()
    else:
        if check_connection():
            init_database(drop_existing=args.drop)

            if args.seed:
                seed_demo_users()

            logger.info("Database initialization complete!")
        else:
            logger.error("Cannot initialize database - connection failed")
            sys.exit(1)
