# heirloom/conftest.py
import os
import tempfile
import pytest
from unittest.mock import Mock, patch

# Tests run against a throwaway SQLite file unless TEST_DATABASE_URL is set
_TEST_DB_DIR = tempfile.mkdtemp(prefix="heirloom-tests-")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'heirloom.db')}")
os.environ.setdefault("STRIPE_PRICE_PERSONAL", "price_personal")
os.environ.setdefault("STRIPE_PRICE_PREMIUM", "price_premium")
os.environ.setdefault("STRIPE_PRICE_ULTIMATE", "price_ultimate")


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all database tables once per test session."""
    from heirloom.core.database import create_all_tables, dispose_engine

    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Reset database tables before each test and seed the default quotas.

    Every test starts with the default quota table and no users,
    subscriptions, usage or billing events.
    """
    from heirloom.core.database import reset_database
    from heirloom.features.quotas.service import seed_quotas

    reset_database()
    seed_quotas(overwrite=True)
    yield


@pytest.fixture
def billing_env(monkeypatch):
    """Stripe keys present so billing counts as enabled."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test123")
    yield


@pytest.fixture
def mock_provider(billing_env):
    """Mock payment gateway returned wherever the core asks for one."""
    with patch("heirloom.features.billing.service.get_provider") as mock_get:
        provider = Mock()
        mock_get.return_value = provider
        yield provider


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from heirloom.main import app

    return TestClient(app)


@pytest.fixture
def admin_user():
    from heirloom.features.users.service import set_role

    set_role("admin_1", "admin")
    return {"X-User-Id": "admin_1"}
