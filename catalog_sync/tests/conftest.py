"""
Root test configuration and fixtures.

Provides:
- db_engine / session_factory: SQLite in-memory database per test
- clock: controllable UTC clock shared by the queue
- task_queue: TaskQueue on the test database
- make_yaml_config: writes YAML config files to a temp directory
"""

import os
import tempfile
from pathlib import Path

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from catalog_sync.db_base import Base
from catalog_sync import models  # noqa: F401 - register tables
from catalog_sync.queue.task_queue import TaskQueue
from catalog_sync.tests.helpers.fakes import FakeClock

# Set test environment
os.environ.setdefault("ENV", "test")


@pytest.fixture
def db_engine():
    """
    Fresh SQLite in-memory database.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def task_queue(session_factory, clock):
    return TaskQueue(
        session_factory,
        default_max_attempts=3,
        default_backoff_delay_seconds=1.0,
        lease_seconds=60,
        clock=clock,
    )


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: exercises several components through the HTTP API")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("mirror_fields.yml", {"fields": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
