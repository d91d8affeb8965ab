"""
Database engines and session scopes.

Request handlers share a pooled engine. The background job worker uses an
unpooled one so a slow extraction job never holds a connection a chat
request is waiting for. SQLite (local runs and tests) uses a single engine
and gets its schema created on import.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import JSON, create_engine, event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from juchang_ai.config import settings
from juchang_ai.models.db import Base

logger = logging.getLogger(__name__)

IS_SQLITE = settings.database_url.startswith("sqlite")


def _build_engines() -> tuple[Engine, Engine]:
    """Return (request engine, background engine) for the configured URL."""
    if IS_SQLITE:
        shared = create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        return shared, shared

    # Pool is per process: N uvicorn workers hold N * (size + overflow)
    pooled = create_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )
    return pooled, create_engine(settings.database_url, poolclass=NullPool)


engine, background_engine = _build_engines()

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
BackgroundSessionLocal = sessionmaker(
    bind=background_engine, autocommit=False, autoflush=False
)

if IS_SQLITE:

    @event.listens_for(Base.metadata, "before_create")
    def _jsonb_as_json(target, connection, **kw):  # pragma: no cover - compat hook
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, postgresql.JSONB):
                    column.type = JSON(none_as_null=column.type.none_as_null)

    # In-memory databases start empty on every import
    Base.metadata.create_all(bind=engine)


def _scope(factory: sessionmaker) -> Generator[Session, None, None]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one committed-or-rolled-back session per request."""
    yield from _scope(SessionLocal)


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Pooled session for CLI commands and request-side helpers.

    Example:
        >>> with db_session() as db:
        >>>     thread = ConversationRepository(db).get(thread_id)
    """
    yield from _scope(SessionLocal)


@contextmanager
def background_session() -> Generator[Session, None, None]:
    """Unpooled session for embedding back-fill, extraction and expiry jobs."""
    yield from _scope(BackgroundSessionLocal)


def init_db() -> None:
    """
    Create all tables.

    Production schema is owned by the platform; this covers local
    development and SQLite deployments.
    """
    if not IS_SQLITE:
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(bind=engine)


def check_connection() -> bool:
    """Return True if a trivial query succeeds."""
    try:
        with db_session() as db:
            db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
    return True
