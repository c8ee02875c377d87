import logging
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


# ============================================================
# ✅ Engine construction
# ============================================================
def build_engine(database_url: str) -> Engine:
    """
    Create the SQLModel engine for a database URL.

    SQLite is used for local development and tests; request handlers, the
    webhook worker thread and the sweeper thread share it, so the
    same-thread check is disabled.
    """
    if database_url.startswith("sqlite"):
        logger.warning("⚠️ Using SQLite database at %s, not for production.", database_url)
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # For PostgreSQL, pool_pre_ping avoids stale connections
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def session_factory(bound_engine: Engine) -> SessionFactory:
    """Return a zero-argument callable opening sessions on ``bound_engine``."""

    def _open() -> Session:
        return Session(bound_engine, expire_on_commit=False)

    return _open


# ============================================================
# ✅ Create tables (called at startup)
# ============================================================
def create_db_and_tables(bound_engine: Engine) -> None:
    """Create all billing tables declared on SQLModel.metadata."""
    # Importing the models registers their tables on the metadata.
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(bound_engine)
        logger.info("✅ All database tables created successfully.")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise
