"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import Optional

import pytest
from eth_utils import to_wei

from chainshield_anchor.anchoring.coordinator import AnchoringCoordinator
from chainshield_anchor.db.base import Base
from chainshield_anchor.db.session import create_db_engine, create_session_factory, init_db
from chainshield_anchor.errors import LedgerUnavailable
from chainshield_anchor.ledger.backends import InProcessLedgerBackend
from chainshield_anchor.ledger.client import FallbackLedgerClient, LiveLedgerClient
from chainshield_anchor.ledger.signer import LocalKeySigner
from chainshield_anchor.records.service import LogRecordService
from chainshield_anchor.settings import Settings

# Use test database URL from environment or default to SQLite in-memory
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")


class SwitchableBackend(InProcessLedgerBackend):
    """In-process ledger that can be taken offline or held mid-submission."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.down = False
        self.gate: Optional[asyncio.Event] = None
        self.submissions: list[str] = []

    async def submit(self, signer, function, args, params):
        if self.down:
            raise LedgerUnavailable("connection refused")
        if self.gate is not None:
            await self.gate.wait()
        receipt = await super().submit(signer, function, args, params)
        self.submissions.append(function)
        return receipt


@pytest.fixture
def make_settings():
    """Factory for isolated settings that ignore the process environment file."""

    def _make(**overrides) -> Settings:
        values = {
            "environment": "test",
            "database_url": TEST_DATABASE_URL,
            "ledger_enabled": True,
            "ledger_backend": "memory",
            "signer_generate_dev_key": False,
            "batch_max_size": 100,
            "batch_interval_seconds": 300,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture(scope="function")
def session_factory():
    """Create a fresh database per test."""
    engine = create_db_engine(TEST_DATABASE_URL)
    init_db(engine)
    try:
        yield create_session_factory(engine)
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def records(session_factory) -> LogRecordService:
    return LogRecordService(session_factory)


@pytest.fixture
def signer() -> LocalKeySigner:
    """Throwaway signer with a freshly generated key."""
    return LocalKeySigner(generate=True)


@pytest.fixture
def backend(signer) -> SwitchableBackend:
    return SwitchableBackend(
        platform_admin=signer.address,
        initial_balances={signer.address: to_wei(100, "ether")},
    )


@pytest.fixture
def live_client(settings, backend, signer) -> LiveLedgerClient:
    """Started live client with the organization and batch user registered."""
    client = LiveLedgerClient(backend, signer, settings)
    asyncio.run(client.start())
    return client


@pytest.fixture
def fallback_client(settings) -> FallbackLedgerClient:
    return FallbackLedgerClient(settings, reason="ledger disabled")


@pytest.fixture
def coordinator(records, live_client) -> AnchoringCoordinator:
    return AnchoringCoordinator(records, live_client, max_batch_size=100, flush_interval=300)


@pytest.fixture
def make_fields():
    """Factory for producer-supplied record fields."""

    def _make(**overrides) -> dict:
        fields = {
            "category": "user_login",
            "severity": "Low",
            "source": "auth-service",
            "description": "User signed in",
            "payload": {"ip": "10.0.0.7", "method": "password"},
            "timestamp": "2024-05-01T12:00:00Z",
            "actor_id": "alice",
        }
        fields.update(overrides)
        return fields

    return _make
