"""
Migration script to create the nudge pipeline tables.

Creates members, activity_logs, bounty_events, nudge_queue, nudge_logs,
metrics, system_logs and rate_limit_counters when they are missing.
Existing tables are left untouched.

Run this script with:
    python migrations/create_nudge_tables.py

Or from the app context:
    from migrations.create_nudge_tables import migrate
    migrate()
"""

import sys
import os

# Add parent directory to path to import app modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from everly import create_app
from everly.models import (
    db,
    Member,
    ActivityLog,
    BountyEvent,
    NudgeJob,
    NudgeLog,
    Metric,
    SystemLog,
    RateLimitCounter,
)
from sqlalchemy import inspect

TABLES = [Member, ActivityLog, BountyEvent, NudgeJob, NudgeLog, Metric, SystemLog, RateLimitCounter]


def table_exists(table_name):
    """Check if a table exists in the database."""
    inspector = inspect(db.engine)
    return table_name in inspector.get_table_names()


def migrate():
    """Create every nudge pipeline table that doesn't exist yet."""
    app = create_app()

    with app.app_context():
        missing = [model for model in TABLES if not table_exists(model.__tablename__)]
        if not missing:
            print("✓ All nudge tables already exist. Migration not needed.")
            return True

        for model in missing:
            name = model.__tablename__
            print(f"Creating '{name}' table...")
            try:
                model.__table__.create(db.engine, checkfirst=True)
            except Exception as e:
                print(f"✗ ERROR: Failed to create table '{name}': {e}")
                db.session.rollback()
                return False

            if not table_exists(name):
                print(f"✗ ERROR: Table creation verification failed for '{name}'")
                return False

            print(f"✓ Successfully created '{name}' table")
            indexes = inspect(db.engine).get_indexes(name)
            for idx in indexes:
                print(f"  - index {idx['name']}: {idx['column_names']}")

        return True


if __name__ == "__main__":
    success = migrate()
    sys.exit(0 if success else 1)
