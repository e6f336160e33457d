from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

from inbound_gateway.config import DATA_CONFIG, PROVISION_CONFIG
from inbound_gateway.main import create_app
from inbound_gateway.models import Credential, Order
from inbound_gateway.repositories.credentials import CredentialStore
from inbound_gateway.repositories.orders import OrderLedger
from inbound_gateway.schema import init_schema


@pytest.fixture(autouse=True)
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the application at an isolated SQLite file for each test."""

    path = tmp_path / "gateway.db"
    monkeypatch.setenv(DATA_CONFIG.sqlite_path_env_var, str(path))
    monkeypatch.setenv(PROVISION_CONFIG.sweep_interval_env_var, "0")
    init_schema()
    return path


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    """Provide a FastAPI test client bound to an isolated database."""

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def store() -> CredentialStore:
    return CredentialStore()


@pytest.fixture()
def credential(store: CredentialStore) -> Credential:
    return store.create_key("test-client")


@pytest.fixture()
def ledger() -> OrderLedger:
    return OrderLedger()


@pytest.fixture()
def paid_order(ledger: OrderLedger) -> Callable[..., Order]:
    """Factory for orders that are already paid."""

    def factory(order_id: str = "O1", user_id: str = "U1", *, expires_at: int = 0) -> Order:
        ledger.create_order(order_id, user_id, amount=990, expires_at=expires_at)
        return ledger.mark_paid(order_id)

    return factory
