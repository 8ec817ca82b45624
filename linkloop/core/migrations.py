"""Alembic helpers: the ``linkloop-migrate`` entry point and the readiness check."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import text

from linkloop.database import get_engine
from linkloop.logging_config import get_logger

logger = get_logger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]


def get_alembic_config() -> Config:
    """Config for the repository's alembic.ini, independent of the cwd.

    Raises:
        FileNotFoundError: If alembic.ini is not next to the package
    """
    ini_path = REPO_ROOT / "alembic.ini"
    if not ini_path.exists():
        raise FileNotFoundError(f"alembic.ini not found at {ini_path}")

    config = Config(str(ini_path))
    config.set_main_option("script_location", str(REPO_ROOT / "migrations"))
    return config


def run_migrations() -> None:
    """Upgrade the configured database to the newest revision."""
    logger.info("Applying database migrations")
    try:
        command.upgrade(get_alembic_config(), "head")
    except Exception as e:
        logger.error("Database migration failed", error=str(e))
        raise
    logger.info("Database is at the newest revision")


async def check_migrations_current() -> bool:
    """True when an Alembic revision is recorded in the database."""
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            return result.scalar_one_or_none() is not None
    except Exception:
        return False
