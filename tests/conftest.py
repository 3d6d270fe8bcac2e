"""Shared fixtures: a throwaway SQLite database per test and wired services."""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="cravledger-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite:///{_TEST_DIR}/import.db"
os.environ["API_KEY"] = "test-key"
os.environ["ENFORCE_PLAN_LIMITS"] = "false"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""

import pytest

from cravledger.common.db import Base, make_engine, make_session_factory
from cravledger.common.locks import AccountLocks
from cravledger.services.billing import models as billing_models  # noqa: F401
from cravledger.services.billing.service import BillingService
from cravledger.services.ledger import models as ledger_models  # noqa: F401
from cravledger.services.ledger.service import LedgerService


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path}/ledger.db")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def locks():
    return AccountLocks()


@pytest.fixture
def ledger(session_factory, locks):
    return LedgerService(session_factory, locks=locks)


class FakeProvider:
    """Records provider calls instead of reaching Stripe."""

    def __init__(self):
        self.calls = []

    def create_checkout_session(self, account_id, package_id, package, customer_id=None):
        self.calls.append(("checkout", account_id, package_id, package.credits, customer_id))
        return {"id": "cs_test_1", "url": "https://checkout.example/cs_test_1"}

    def cancel_subscription(self, provider_subscription_id, at_period_end):
        self.calls.append(("cancel", provider_subscription_id, at_period_end))

    def resume_subscription(self, provider_subscription_id):
        self.calls.append(("resume", provider_subscription_id))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def billing(session_factory, locks, provider):
    return BillingService(session_factory, locks=locks, provider=provider)
