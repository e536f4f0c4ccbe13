# proaccess/conftest.py
import pytest

from proaccess.core.config import settings
from proaccess.core.metrics import METRICS
from proaccess.tests.mocks import TEST_JWT_SECRET, TEST_STRIPE_KEY, TEST_WEBHOOK_SECRET


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic secrets for every test; individual tests may override."""
    monkeypatch.setattr(settings, "JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", TEST_STRIPE_KEY)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "WEBHOOK_TOLERANCE_SECONDS", 300)
    yield settings


@pytest.fixture(autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database per test.

    A file (not :memory:) so that threads in race tests share it.
    """
    from proaccess.core.database import init_engine, create_all_tables

    engine = init_engine(f"sqlite:///{tmp_path / 'proaccess_test.db'}")
    create_all_tables()
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from proaccess.main import create_app

    return TestClient(create_app(), raise_server_exceptions=False)
