"""
Database connection and session management with centralized configuration.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig, get_settings
from .logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


def create_database_engine(config: DatabaseConfig | None = None) -> Engine:
    """
    Create SQLAlchemy engine with proper configuration.

    Example:
        >>> engine = create_database_engine()
    """
    if config is None:
        config = get_settings().database

    connection_url = config.get_connection_url()
    engine_options = config.get_engine_options()
    if config.backend == "sqlite" and config.sqlite_path == ":memory:":
        # one shared connection so every session sees the same in-memory database
        engine_options = {
            "echo": config.echo,
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }

    logger.info(f"Creating database engine for {config.backend} backend")
    logger.debug(f"Connection URL: {connection_url.split('@')[0]}@***")

    try:
        engine = create_engine(connection_url, **engine_options)
        logger.info("Database engine created successfully")
        return engine
    except Exception as e:
        logger.error(f"Failed to create database engine: {str(e)}")
        raise


def create_session_factory(engine: Engine | None = None) -> sessionmaker:
    """
    Create SQLAlchemy session factory.

    Example:
        >>> SessionLocal = create_session_factory()
        >>> with SessionLocal() as session:
        ...     pass
    """
    if engine is None:
        engine = create_database_engine()

    logger.info("Creating session factory")
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_database_url() -> str:
    return get_settings().database.get_connection_url()
