"""Startup validation shared by the API process and the worker."""
import logging
from sqlalchemy import inspect, text

from decision_memory.settings import settings
from decision_memory.db import engine

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ['decisions', 'decision_embeddings', 'background_jobs']


def validate_settings() -> None:
    """
    Validate all required settings at startup.

    Raises:
        ValueError: If required settings are missing or invalid
    """
    logger.info(f"Validating settings for ENV={settings.ENV}")

    settings.validate_required_for_env()
    settings.validate_embedding_config()

    logger.info("✓ Settings validation passed")


def validate_database() -> None:
    """
    Validate database connection and required tables.

    Raises:
        Exception: If database is unreachable or tables are missing
    """
    logger.info("Validating database connection...")

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.info("✓ Database connection successful")
            existing_tables = set(inspect(conn).get_table_names())

        missing_tables = set(REQUIRED_TABLES) - existing_tables
        if missing_tables:
            raise ValueError(
                f"Missing required database tables: {', '.join(sorted(missing_tables))}. "
                "Run migrations with: alembic upgrade head"
            )

        logger.info(f"✓ All required tables present: {', '.join(REQUIRED_TABLES)}")

    except Exception as e:
        logger.error(f"✗ Database validation failed: {e}")
        raise


def run_startup_validation() -> None:
    """
    Run all startup validations.

    Fails fast with clear error messages if any validation fails.

    Raises:
        Exception: If any validation fails
    """
    logger.info("=" * 60)
    logger.info("Starting startup validation")
    logger.info("=" * 60)

    try:
        validate_settings()
        validate_database()

        logger.info("=" * 60)
        logger.info("✓ All startup validations passed")
        logger.info("=" * 60)

    except Exception as e:
        logger.error("=" * 60)
        logger.error("✗ Startup validation failed")
        logger.error("=" * 60)
        logger.error(f"Error: {e}")
        raise
