from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from quality_review.infrastructure.config import DatabaseConfig, get_settings
from quality_review.infrastructure.db import create_database_engine, create_session_factory
from quality_review.infrastructure.exceptions import UnauthorizedError


def get_db_config(request: Request) -> DatabaseConfig:
    config = getattr(request.app.state, "db_config", None)
    if config is None:
        config = get_settings().database
        request.app.state.db_config = config
    return config


def get_session_factory(request: Request) -> sessionmaker[Session]:
    config = get_db_config(request)
    cached_factory = getattr(request.app.state, "session_factory", None)
    cached_config = getattr(request.app.state, "session_factory_config", None)

    current_config_dict = config.model_dump()

    if cached_factory is not None and cached_config == current_config_dict:
        return cached_factory

    engine = create_database_engine(config)
    session_factory = create_session_factory(engine)

    request.app.state.session_factory = session_factory
    request.app.state.session_factory_config = current_config_dict

    return session_factory


def get_db_session(request: Request) -> Generator[Session, None, None]:
    session_factory = get_session_factory(request)
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def get_current_user_id(request: Request) -> int:
    """Caller identity from the configured header; anything but a positive integer is unauthenticated."""
    raw = request.headers.get(get_settings().app.identity_header)
    if raw is None or not raw.strip().isdigit() or int(raw) <= 0:
        raise UnauthorizedError()
    return int(raw)
