"""Database migration utilities."""

import logging
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Columns added after the first schema release: (table, column, DDL type)
COLUMN_MIGRATIONS = [
    ("atom_feeds", "detail_feed_id", "INTEGER REFERENCES atom_feeds(id) ON DELETE SET NULL"),
    ("projects", "project_manager", "VARCHAR"),
    ("projects", "hours_actual", "FLOAT"),
    ("projects", "detail_data", "TEXT"),
    ("sync_runs", "records_failed", "INTEGER DEFAULT 0"),
    ("sync_runs", "is_cancelled", "BOOLEAN DEFAULT 0"),
]


def migrate_database(db: Session) -> None:
    """Apply database migrations.

    This function checks for missing columns and adds them if needed.
    It's safe to call multiple times.

    Args:
        db: Database session.
    """
    logger.info("Checking for database migrations...")

    engine = db.get_bind()
    inspector = inspect(engine)
    tables = inspector.get_table_names()

    for table, column, ddl in COLUMN_MIGRATIONS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Adding {column} column to {table} table")
        try:
            db.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.commit()
            logger.info(f"Successfully added {table}.{column} column")
        except Exception as e:
            logger.error(f"Failed to add {table}.{column} column: {e}")
            db.rollback()

    logger.info("Database migrations complete")


def get_migration_status(db: Session) -> dict:
    """Get the status of database migrations.

    Args:
        db: Database session.

    Returns:
        Dictionary with migration status information.
    """
    engine = db.get_bind()
    inspector = inspect(engine)

    status = {
        'tables': inspector.get_table_names(),
        'migrations_applied': []
    }

    for table, column, _ddl in COLUMN_MIGRATIONS:
        if table not in status['tables']:
            continue
        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            status['migrations_applied'].append(f"{table}.{column}")

    return status
