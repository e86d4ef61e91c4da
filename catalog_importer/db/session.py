"""Engine and session factory configuration."""

import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from catalog_importer.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for long-running batch workers.

    PostgreSQL gets a pre-pinged, recycled connection pool with TCP keepalives
    so a batch that runs for a long time does not die on a stale connection.
    SQLite (local runs and tests) gets foreign key enforcement switched on.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        echo=False,
        poolclass=QueuePool,
        pool_pre_ping=True,  # Test connections before using
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_size=5,
        max_overflow=10,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind: Engine | None = None) -> None:
    """Create missing tables (no-op for tables that already exist)."""
    from catalog_importer.db import models  # noqa: F401  registers mappers
    from catalog_importer.db.base import Base

    Base.metadata.create_all(bind=bind or engine)


def get_fresh_session() -> Session:
    """Get a fresh database session, handling connection errors.

    This is useful for long-running tasks where connections might timeout.
    """
    try:
        return SessionLocal()
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Connection error creating session: {e}, retrying...")
        engine.dispose()
        return SessionLocal()

