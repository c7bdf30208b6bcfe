# creditledger/conftest.py
import os
import tempfile
from pathlib import Path

import pytest

# Every test run gets its own throwaway SQLite file unless TEST_DATABASE_URL
# already points somewhere (e.g. a Postgres test database).
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="creditledger-tests-"))
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_DIR / 'ledger.db'}")


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all ledger tables once per session."""
    from creditledger.core.database import create_all_tables

    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate every table so each test starts empty."""
    from creditledger.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from creditledger.main import app

    return TestClient(app)


@pytest.fixture
def admin_key(monkeypatch):
    from creditledger.core.config import settings

    monkeypatch.setattr(settings, "ADMIN_KEY", "test-admin-key")
    return "test-admin-key"
