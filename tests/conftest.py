from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from quality_review.infrastructure.config import reset_settings
from quality_review.infrastructure.models import Base
from quality_review.web.dependencies import get_db_session
from quality_review.web.main import create_application
from tests.factories import World, seed_world


@pytest.fixture(autouse=True)
def fresh_settings() -> Iterator[None]:
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def engine() -> Engine:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def SessionLocal(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(SessionLocal: sessionmaker[Session]) -> Iterator[Session]:
    with SessionLocal() as s:
        yield s


@pytest.fixture
def world(SessionLocal: sessionmaker[Session]) -> World:
    with SessionLocal() as s:
        seeded = seed_world(s)
        s.commit()
    return seeded


@pytest.fixture
def client(SessionLocal: sessionmaker[Session]) -> TestClient:
    app = create_application()

    def override_get_db_session():
        s = SessionLocal()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db_session] = override_get_db_session
    return TestClient(app)
