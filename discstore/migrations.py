"""
Database migrations for DiscStore.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from discstore import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema, run migrations and seed default settings.

    Creates missing tables, applies column migrations and makes sure the
    single Settings row exists with the configured defaults.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
        db.create_all()

        run_migrations(app, inspect(db.engine))
        _seed_settings(app)


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    This function checks the database schema and applies any missing changes.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    # Migration 1: Add size_bytes column to storage_entries table
    if 'storage_entries' in inspector.get_table_names():
        columns = [col['name'] for col in inspector.get_columns('storage_entries')]

        if 'size_bytes' not in columns:
            logger.info("Running migration: Adding size_bytes column to storage_entries table")
            try:
                db.session.execute(text(
                    "ALTER TABLE storage_entries ADD COLUMN size_bytes BIGINT"
                ))
                db.session.commit()
                logger.info("Successfully added size_bytes column")
            except Exception as e:
                logger.error(f"Failed to add size_bytes column: {e}")
                db.session.rollback()


def _seed_settings(app):
    """Create the default Settings row on first run."""
    from discstore.models import Settings

    if Settings.query.first() is None:
        logger.info("Creating default settings")
        db.session.add(Settings(
            compression_type=app.config['DEFAULT_COMPRESSION_TYPE'],
            compression_level=app.config['DEFAULT_COMPRESSION_LEVEL'],
            token=''
        ))
        db.session.commit()
