"""
Shared fixtures for the Ben OS test suite.

Provides isolated temp-file SQLite databases, a seeded workspace
(area → project with board → milestone), registered agents and a FastAPI
TestClient wired to the test database.
"""

import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.database import BenOSDatabase
from ben_os.api import app, ConnectionManager, get_database, get_settings
from ben_os.auth import AgentAuthService, ADMIN_CAPABILITIES
from ben_os.config import Settings
from ben_os.rate_limiter import RateLimiter


@pytest.fixture
def temp_db():
    """Fresh database in a temporary file, removed after the test."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as tmp_file:
        db_path = tmp_file.name

    db = BenOSDatabase(db_path)
    yield db

    db.close()
    for suffix in ('', '-wal', '-shm'):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def workspace(temp_db):
    """Area, project (with its board) and one milestone."""
    area = temp_db.create_area("Work", "work")
    project = temp_db.create_project(area["id"], "Launch", description="Product launch")
    milestone = temp_db.create_milestone(project["id"], "Beta")
    return {
        "db": temp_db,
        "area": area,
        "project": project,
        "board": project["board"],
        "milestone": milestone,
    }


@pytest.fixture
def admin_agent(temp_db):
    """Registered admin agent as (agent, api_key)."""
    return AgentAuthService(temp_db).register_agent("Admin Agent", "primary", ADMIN_CAPABILITIES)


@pytest.fixture
def mock_websocket_manager():
    manager = MagicMock(spec=ConnectionManager)
    manager.broadcast = AsyncMock()
    manager.broadcast_enriched_event = AsyncMock()
    return manager


def make_client(database, settings=None):
    """TestClient using `database` with the lifespan skipped."""
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_settings] = lambda: settings or Settings()
    return TestClient(app)


@pytest.fixture
def client(temp_db):
    """API client over the temp database with a generous rate limit."""
    with patch('ben_os.api.rate_limiter', RateLimiter(10000, 60)):
        yield make_client(temp_db)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_client(temp_db):
    """API client with agent authentication required."""
    with patch('ben_os.api.rate_limiter', RateLimiter(10000, 60)):
        yield make_client(temp_db, Settings(require_auth=True))
    app.dependency_overrides.clear()
