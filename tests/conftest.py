"""
Shared fixtures: a fresh on-disk ledger per test.
"""

import os

import pytest
from fastapi.testclient import TestClient

from pixel_ledger.config import Settings
from pixel_ledger.ledger import Ledger
from pixel_ledger.main import create_app


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=os.path.join(str(tmp_path), "ledger.db"),
        retry_backoff_seconds=0.001,
        internal_token="test-token",
    )


@pytest.fixture
def ledger(settings):
    ledger = Ledger.open(settings)
    yield ledger
    ledger.close()


@pytest.fixture
def funded(ledger):
    """Create an account and top it up; returns the account id."""
    def _funded(account_id: str, cents: int) -> str:
        ledger.wallet.create_account(account_id)
        if cents > 0:
            ledger.wallet.credit(account_id, cents, f"seed-{account_id}")
        return account_id
    return _funded


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client
