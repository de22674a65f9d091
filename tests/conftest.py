"""Pytest fixtures for orderledger tests."""

import random
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from orderledger.certificate_store import CertificateStore
from orderledger.document_store import DocumentStore
from orderledger.inventory import StaticInventory
from orderledger.ledger import Ledger
from orderledger.models import GiftCertificate
from orderledger.notifications import MemoryEmailAdapter
from orderledger.settings import Settings

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """A DocumentStore rooted in a temporary directory."""
    return DocumentStore(temp_dir / "data", lock_timeout=2.0)


@pytest.fixture
def certificates(store):
    return CertificateStore(store)


@pytest.fixture
def add_certificate(certificates):
    """Store a certificate directly, bypassing issuance."""

    def _add(code: str, balance: str, expires_in_days: int = 30, initial: str | None = None):
        certificate = GiftCertificate.create(
            code,
            Decimal(initial or balance),
            issued=NOW - timedelta(days=1),
            expires=NOW + timedelta(days=expires_in_days),
        )
        certificate.remaining_balance = Decimal(balance)
        return certificates.add(certificate)

    return _add


@pytest.fixture
def email():
    return MemoryEmailAdapter()


@pytest.fixture
def inventory():
    return StaticInventory({"rose-1": 12, "tulip-2": 3, "dahlia-3": 0})


@pytest.fixture
def ledger(temp_dir, store, email, inventory):
    """A Ledger over the temporary store with a fixed clock and recorded email."""
    settings = Settings(data_dir=temp_dir / "data", lock_timeout=2.0)
    return Ledger(
        store,
        settings=settings,
        email=email,
        inventory=inventory,
        clock=fixed_clock,
        rng=random.Random(42),
    )


@pytest.fixture
def customer():
    return {
        "firstName": "Ada",
        "lastName": "Lovelace",
        "email": "ada@example.com",
        "phone": "555-0100",
    }


@pytest.fixture
def items():
    """Two roses and a tulip: subtotal 20.00, total 22.40 with 12% tax."""
    return [
        {"id": "rose-1", "name": "Rose", "unitPrice": "7.50", "quantity": 2},
        {"id": "tulip-2", "name": "Tulip", "unitPrice": "5.00", "quantity": 1},
    ]
