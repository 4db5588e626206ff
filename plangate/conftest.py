# plangate/conftest.py
import os
from types import SimpleNamespace

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from plangate.core.database import create_all_tables, get_db_session, init_engine, metadata
from plangate.core.locks import KeyedLock
from plangate.core.metrics import REGISTRY
from plangate.features.plans.catalog import build_catalog
from plangate.features.wiring import build_services
from plangate.tests.mocks import FakeAllocations, FakeDirectory, FakeProjectCounter, FakeProvider


PRICE_IDS = {
    "STRIPE_PRICE_STARTER_MONTHLY": "price_starter_monthly",
    "STRIPE_PRICE_STARTER_YEARLY": "price_starter_yearly",
    "STRIPE_PRICE_PRO_MONTHLY": "price_pro_monthly",
    "STRIPE_PRICE_PRO_YEARLY": "price_pro_yearly",
    "STRIPE_PRICE_ENTERPRISE_MONTHLY": "price_enterprise_monthly",
    "STRIPE_PRICE_ENTERPRISE_YEARLY": "price_enterprise_yearly",
}


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Database for the test session.

    TEST_DATABASE_URL wins (e.g. a throwaway Postgres); otherwise a SQLite
    file in a temp directory.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{tmp_path_factory.mktemp('db') / 'plangate-test.db'}"


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    init_engine(db_url)
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Empty every table before each test."""
    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(table.delete())
    yield


@pytest.fixture(autouse=True)
def reset_metrics():
    REGISTRY.reset()
    yield


@pytest.fixture
def test_settings():
    return SimpleNamespace(API_BASE_URL="https://app.example.test", STRIPE_SECRET_KEY=None, **PRICE_IDS)


@pytest.fixture
def catalog(test_settings):
    return build_catalog(test_settings)


@pytest.fixture
def provider(catalog):
    return FakeProvider(catalog)


@pytest.fixture
def project_counter():
    return FakeProjectCounter()


@pytest.fixture
def allocations():
    return FakeAllocations()


@pytest.fixture
def services(test_settings, catalog, provider, project_counter, allocations):
    return build_services(
        test_settings,
        catalog=catalog,
        provider=provider,
        project_counter=project_counter,
        directory=FakeDirectory(),
        allocated_deployments=allocations,
        locks=KeyedLock(),
    )


@pytest.fixture
def billing_disabled_services(test_settings, catalog, project_counter, allocations):
    return build_services(
        test_settings,
        catalog=catalog,
        provider=None,
        project_counter=project_counter,
        directory=FakeDirectory(),
        allocated_deployments=allocations,
    )


@pytest.fixture
def make_paid(services, provider):
    """Put an account on a paid plan through the checkout-completed path."""
    def _make_paid(account_id, plan="pro", interval="monthly", status="active", **overrides):
        from plangate.features.plans.catalog import BillingInterval, PlanId

        sub = services.subscriptions.get_or_create_subscription(account_id)
        provider.add_subscription(
            f"sub_{account_id}",
            sub.stripe_customer_id,
            plan=PlanId(plan),
            interval=BillingInterval(interval),
            status=status,
            **overrides,
        )
        return services.subscriptions.handle_checkout_completed(sub.stripe_customer_id, f"sub_{account_id}")

    return _make_paid


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient
    from plangate.main import create_app

    return TestClient(create_app(services))
