from __future__ import annotations

import os

# Report reads share one in-memory SQLite connection; keep them on one worker.
os.environ.setdefault("FINANCE_FETCH_WORKERS", "1")

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.dependencies import get_session_factory
import app.models.entities  # noqa: F401
from app.main import create_app
from app.models.entities import (
    Department,
    NanoSubtask,
    Project,
    ProjectMember,
    Subtask,
    Task,
    TimeEntry,
    User,
)

TEST_TABLES = [
    Department.__table__,
    User.__table__,
    Project.__table__,
    ProjectMember.__table__,
    Task.__table__,
    Subtask.__table__,
    NanoSubtask.__table__,
    TimeEntry.__table__,
]


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine, tables=TEST_TABLES)
    TestingSessionLocal = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine, tables=TEST_TABLES)
        engine.dispose()


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    app = create_app()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
