"""Root conftest.py -- makes `invoiceflow` importable from tests and
provides temporary-store fixtures and seeding helpers."""

import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

# Add the project root to sys.path so `from invoiceflow.models import ...` works.
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from invoiceflow.config import InvoiceFlowConfig  # noqa: E402
from invoiceflow.models import InvoiceStatus  # noqa: E402
from invoiceflow.store import FollowUpStore  # noqa: E402


@pytest.fixture
def config(tmp_path) -> InvoiceFlowConfig:
    cfg = InvoiceFlowConfig()
    cfg.store.db_path = str(tmp_path / "invoiceflow.db")
    return cfg


@pytest.fixture
def store(config) -> FollowUpStore:
    """A fresh SQLite store with the unique-default index in place."""
    return FollowUpStore(config=config)


@pytest.fixture
def store_no_unique(tmp_path, config) -> FollowUpStore:
    """A store without the unique-default index, so broken states can be seeded."""
    return FollowUpStore(
        tmp_path / "no_unique.db", config=config, enforce_unique_default=False,
    )


def _seed_user(store: FollowUpStore, email: str = "owner@example.com") -> str:
    with store.transaction() as session:
        return session.create_user(email, name="Owner")


@pytest.fixture
def user_id(store) -> str:
    return _seed_user(store)


@pytest.fixture
def make_user(store):
    """Factory: create another user in ``store`` and return its id."""
    counter = iter(range(1, 1000))

    def _make() -> str:
        return _seed_user(store, f"user{next(counter)}@example.com")

    return _make


@pytest.fixture
def make_invoice(store, user_id):
    """Factory: insert an invoice for ``user_id`` with overridable fields."""
    counter = iter(range(1, 1000))

    def _make(**overrides):
        fields = {
            "user_id": user_id,
            "invoice_number": f"INV-{next(counter):04d}",
            "client_name": "Acme Corp",
            "client_email": "billing@acme.test",
            "amount": Decimal("1500.00"),
            "currency": "USD",
            "due_date": date(2025, 6, 1),
            "status": InvoiceStatus.PENDING,
        }
        fields.update(overrides)
        with store.transaction() as session:
            return session.create_invoice(**fields)

    return _make
