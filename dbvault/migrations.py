"""
Database migrations for dbvault.

Simple migration system to handle schema changes without requiring Alembic.
Each migration adds one column that was introduced after the first release.
"""

import logging
from sqlalchemy import text, inspect
from dbvault import db

logger = logging.getLogger(__name__)

# (table, column, column DDL)
COLUMN_MIGRATIONS = [
    ('data_sources', 'driver_options', 'JSON'),
    ('data_sources', 'destination_ids', 'JSON'),
    ('backup_runs', 'cancellation_requested', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('backup_runs', 'files_deleted_at', 'TIMESTAMP'),
    ('backup_runs', 'locked', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('backup_files', 'deleted_at', 'TIMESTAMP'),
]


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates tables if they don't exist and runs any necessary migrations.
    Safe to call from several Gunicorn workers.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
        try:
            # checkfirst: only creates tables that are missing
            db.create_all()
        except Exception as e:
            # Another worker may have created them concurrently
            logger.error(f"Failed to create database schema: {e}")

        if existing_tables:
            run_migrations(app, inspect(db.engine))


def run_migrations(app, inspector=None):
    """
    Apply missing column migrations.

    Returns:
        List of "table.column" names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    tables = inspector.get_table_names()
    applied = []

    for table, column, ddl in COLUMN_MIGRATIONS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            applied.append(f"{table}.{column}")
            logger.info(f"Successfully added {column} column")
        except Exception as e:
            logger.error(f"Failed to add {column} column to {table}: {e}")
            db.session.rollback()

    return applied
