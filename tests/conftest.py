"""
Shared fixtures: SQLite-backed record store, in-memory cache, coordinator.
"""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.pop("REDIS_URL", None)

import pytest
from sqlalchemy.orm import sessionmaker

from app.database import Base, build_engine
import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.services.idempotency import (
    IdempotencyConfig,
    IdempotencyCoordinator,
    InMemoryFastPathCache,
    SqlAlchemyRecordStore,
)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every session (and thread) gets its own connection."""
    engine = build_engine(f"sqlite:///{tmp_path / 'idempotency.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory):
    return SqlAlchemyRecordStore(session_factory)


@pytest.fixture
def cache():
    return InMemoryFastPathCache()


@pytest.fixture
def config():
    return IdempotencyConfig()


@pytest.fixture
def coordinator(cache, store, config):
    return IdempotencyCoordinator(cache=cache, store=store, config=config)
