# quickbill/conftest.py
import os
import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

# Isolated SQLite file for the whole session; must be set before any engine is built.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="quickbill-tests-")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{Path(_TEST_DB_DIR) / 'quickbill.db'}")


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate all tables around each test."""
    from quickbill.core.database import reset_database

    reset_database()
    yield
    reset_database()


@pytest.fixture(autouse=True)
def no_stripe_env(monkeypatch):
    """Billing is off unless a test opts in."""
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)


@pytest.fixture
def local_store(tmp_path, monkeypatch):
    """On-device store backed by a temp file, installed as the process-wide store."""
    from quickbill.features.local_cache import store as store_module

    store = store_module.LocalStore(tmp_path / "local_store.json")
    monkeypatch.setattr(store_module, "_store", store)
    return store


@pytest.fixture
def mock_provider():
    """Payment provider double; tests set get_subscription behavior."""
    return Mock()
