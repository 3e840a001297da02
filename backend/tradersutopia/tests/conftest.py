"""
Root test configuration and fixtures.

Every test gets a fresh SQLite in-memory database, a fixed clock, an
isolated access cache and a recording notifier. Process-wide singletons
(billing config, access cache, session factory) are reset around each test.
"""

import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from tradersutopia.config.billing_config import BillingConfig, BillingConfigLoader
from tradersutopia.database.session import configure_session_factory, create_tables
from tradersutopia.db_base import Base
from tradersutopia.entitlements.cache import (
    AccessDecisionCache,
    InMemoryCacheBackend,
    reset_access_cache,
)
from tradersutopia.entitlements.service import AccessService
from tradersutopia.services.billing_webhook_handler import StripeWebhookHandler
from tradersutopia.services.subscription_reconciler import SubscriptionReconciler
from tradersutopia.tests.stripe_factories import BASE_TIME, PREMIUM_PRODUCT

# Set test environment
os.environ.setdefault("ENV", "test")

# Environment that changes billing behaviour; cleared for every test
_BILLING_ENV_VARS = (
    "ALLOWED_PRODUCT_IDS",
    "ACCESS_CACHE_TTL_SECONDS",
    "BILLING_CONFIG_PATH",
    "REDIS_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
)


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every message in memory."""

    def __init__(self):
        self.messages = []

    def notify(self, message):
        self.messages.append(message)

    @property
    def kinds(self):
        return [m.kind for m in self.messages]


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """Clear billing env vars and process-wide singletons."""
    for var in _BILLING_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    BillingConfigLoader.reset_instance()
    reset_access_cache()
    yield
    BillingConfigLoader.reset_instance()
    reset_access_cache()
    configure_session_factory(None)


@pytest.fixture
def db_engine():
    """Fresh SQLite in-memory database with all tables."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    create_tables(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine."""
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    configure_session_factory(factory)
    return factory


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Database session for one test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    """Fixed clock one day into the default billing window."""
    return FixedClock(BASE_TIME + timedelta(days=1))


@pytest.fixture
def billing_config():
    """Billing config with a single premium product."""
    return BillingConfig(
        allowed_product_ids=frozenset({PREMIUM_PRODUCT}),
        access_cache_ttl_seconds=1800,
        negative_cache_ttl_seconds=60,
        default_period_days=30,
        max_payment_attempts=3,
        cancelled_grace_until_period_end=False,
    )


@pytest.fixture
def access_cache(billing_config, clock):
    """Access cache backed by an in-memory store on the fixed clock."""
    return AccessDecisionCache(
        backend=InMemoryCacheBackend(clock=clock),
        config=billing_config,
        clock=clock,
    )


@pytest.fixture
def access_service(db_session, access_cache, billing_config, clock):
    return AccessService(db_session, cache=access_cache, config=billing_config, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_handler(db_session, billing_config, access_cache, access_service, notifier, clock):
    """
    Factory for StripeWebhookHandler wired to the test database.

    Usage:
        handler = make_handler()
        handler = make_handler(billing_client=mock_client, notifier=failing)
    """
    def _make(billing_client=None, notifier_override=None):
        reconciler = SubscriptionReconciler(
            db_session,
            config=billing_config,
            billing_client=billing_client,
            clock=clock,
        )
        return StripeWebhookHandler(
            db_session,
            reconciler=reconciler,
            cache=access_cache,
            notifier=notifier_override or notifier,
            access_service=access_service,
        )
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Config fixtures
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
        config_path = make_yaml_config("billing.yml", {"allowed_products": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
