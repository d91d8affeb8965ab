"""
Pytest configuration and fixtures for Juchang AI tests.

Tests run against SQLite: an in-memory database with per-test rollback for
most tests, and a file database for tests that need real commits across
sessions (worker retries, concurrent quota spends).
"""

import os

# Must be set before juchang_ai is imported anywhere
os.environ.setdefault("JUCHANG_DATABASE_URL_OVERRIDE", "sqlite://")
os.environ.setdefault("JUCHANG_LOG_FILE_ENABLED", "false")
os.environ.setdefault("JUCHANG_WORKER_ENABLED", "false")
os.environ.setdefault("JUCHANG_OPENAI_API_KEY", "")
os.environ.setdefault("JUCHANG_ACTIVITY_API_URL", "")
os.environ.setdefault("JUCHANG_EMBEDDING_DIMENSIONS", "3")

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Generator
from unittest.mock import Mock

import numpy as np
import pytest
from sqlalchemy import JSON, create_engine, event
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.elements import BinaryExpression
from sqlalchemy.sql.operators import custom_op

from juchang_ai.llm.base import LLMProvider, LLMResponse
from juchang_ai.models.db import Base, User


@event.listens_for(Base.metadata, "before_create")
def _set_json_type(target, connection, **kw):
    # Replace JSONB with JSON for SQLite
    for table in target.tables.values():
        for column in table.columns:
            if isinstance(column.type, postgresql.JSONB):
                column.type = JSON(none_as_null=column.type.none_as_null)


# pgvector's cosine distance operator (<=>) has no SQLite counterpart.
# Compile it to a function call and register that function on every
# SQLite connection so recall queries run unchanged in tests.
@compiles(BinaryExpression, "sqlite")
def _cosine_distance_on_sqlite(element, compiler, **kw):
    operator = element.operator
    if isinstance(operator, custom_op) and operator.opstring == "<=>":
        left = compiler.process(element.left, **kw)
        right = compiler.process(element.right, **kw)
        return f"vector_cosine_distance({left}, {right})"
    return compiler.visit_binary(element, **kw)


def _vector_cosine_distance(left: str, right: str) -> float:
    a = np.array(json.loads(left), dtype=float)
    b = np.array(json.loads(right), dtype=float)
    norms = np.linalg.norm(a) * np.linalg.norm(b)
    if a.shape != b.shape or norms == 0:
        return 1.0
    return float(1.0 - a.dot(b) / norms)


@event.listens_for(Engine, "connect")
def _register_vector_functions(dbapi_connection, connection_record):
    if isinstance(dbapi_connection, sqlite3.Connection):
        dbapi_connection.create_function(
            "vector_cosine_distance", 2, _vector_cosine_distance
        )


# Wednesday 2026-10-14 20:00 in local time (UTC+8)
FIXED_NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test.

    Each test gets a fresh session with a transaction that is rolled back
    after the test completes, ensuring test isolation.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = sessionmaker(bind=connection)()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_factory(db_session: Session):
    """A session factory that hands out the test session without closing it."""

    @contextmanager
    def factory() -> Generator[Session, None, None]:
        yield db_session
        db_session.flush()

    return factory


@pytest.fixture
def file_session_factory(tmp_path):
    """
    Session factory over a file database.

    Each session commits for real, like the production ``db_session``.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'juchang-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    maker = sessionmaker(bind=engine, autoflush=False)

    @contextmanager
    def factory() -> Generator[Session, None, None]:
        session = maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    yield factory
    engine.dispose()


def make_user(session: Session, quota: int = 50, **kwargs) -> User:
    user = User(id=uuid.uuid4(), nickname="测试用户", ai_quota_remaining=quota, **kwargs)
    session.add(user)
    session.flush()
    return user


@pytest.fixture
def user(db_session: Session) -> User:
    """A signed-in user with a full quota."""
    return make_user(db_session)


@pytest.fixture
def other_user(db_session: Session) -> User:
    return make_user(db_session)


def llm_response(content: str = "", tool_calls=None, **kwargs) -> LLMResponse:
    """Build an LLMResponse with plausible usage numbers."""
    return LLMResponse(
        content=content,
        prompt_tokens=kwargs.get("prompt_tokens", 120),
        completion_tokens=kwargs.get("completion_tokens", 30),
        total_tokens=kwargs.get("total_tokens", 150),
        finish_reason=kwargs.get("finish_reason", "stop"),
        model=kwargs.get("model", "gpt-4o-mini"),
        duration_ms=kwargs.get("duration_ms", 42.0),
        tool_calls=list(tool_calls or []),
    )


@pytest.fixture
def mock_provider() -> Mock:
    """A provider double; tests set generate_text / stream_text behaviour."""
    provider = Mock(spec=LLMProvider)
    provider.provider_name = "mock"
    provider.model_name = "mock-model"
    provider.generate_text.return_value = llm_response("好的。")
    provider.stream_text.return_value = iter(["好的。"])
    provider.generate_structured.side_effect = ValueError("not configured")
    provider.embed.return_value = [0.1, 0.2, 0.3]
    return provider


@pytest.fixture
def chat_service_factory(session_factory):
    """Build a ChatService bound to the test session."""
    from juchang_ai.agent.chat import ChatService

    def build(provider=None, activities=None, **kwargs) -> ChatService:
        return ChatService(
            session_factory=session_factory,
            provider=provider,
            activities=activities,
            parallel_fetch=False,
            use_default_provider=False,
            **kwargs,
        )

    return build


@pytest.fixture
def api_client(db_session: Session, chat_service_factory):
    """Create a test client for FastAPI with database dependency override."""
    from unittest.mock import patch

    from fastapi.testclient import TestClient

    from juchang_ai.api.app import app
    from juchang_ai.api.routes.chat import get_chat_service
    from juchang_ai.db.connection import get_db

    # Override the get_db dependency to use test database
    def override_get_db():
        # The session is shared with the test, so a failing request must
        # not roll back the outer transaction (and the test's fixtures).
        yield db_session
        db_session.flush()

    service = chat_service_factory()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_service] = lambda: service

    # Keep the background worker out of API tests
    with patch("juchang_ai.api.app.start_worker"), patch(
        "juchang_ai.api.app.stop_worker"
    ), patch("juchang_ai.api.app.setup_logging"):
        with TestClient(app) as client:
            client.chat_service = service
            yield client

    app.dependency_overrides.clear()


def minutes_after(value: datetime, minutes: float) -> datetime:
    return value + timedelta(minutes=minutes)
