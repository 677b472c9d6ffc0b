"""Tests for the anchoring runtime wiring."""

import asyncio

import pytest

from chainshield_anchor.ledger.client import FallbackLedgerClient, LiveLedgerClient
from chainshield_anchor.models import AnchorStatus
from chainshield_anchor.runtime import AnchoringRuntime


def test_runtime_end_to_end(make_settings, session_factory, signer, backend, make_fields):
    settings = make_settings(batch_max_size=3)

    async def scenario():
        runtime = await AnchoringRuntime.create(
            settings, session_factory=session_factory, signer=signer, backend=backend
        )
        await runtime.start()
        critical = await runtime.create_and_maybe_anchor(make_fields(severity="Critical"))
        low = [
            await runtime.create_and_maybe_anchor(make_fields(description=f"event {i}"))
            for i in range(4)
        ]
        status = await runtime.get_network_status()
        await runtime.stop()
        reports = [await runtime.verify_integrity(record.id) for record in [critical, *low]]
        return runtime, critical, low, status, reports

    runtime, critical, low, status, reports = asyncio.run(scenario())

    assert isinstance(runtime.ledger, LiveLedgerClient)
    assert critical.status == AnchorStatus.ANCHORED
    assert status.connected
    assert runtime.coordinator.pending_count == 0
    assert all(report.hash_intact and report.ledger_verified for report in reports)
    # Three records filled one batch; the fourth went out when the runtime stopped
    batch_hashes = {runtime.records.get(record.id).batch_hash for record in low}
    assert len(batch_hashes) == 2


def test_runtime_stop_keeps_records_pending_when_ledger_down(
    make_settings, session_factory, signer, backend, make_fields
):
    async def scenario():
        runtime = await AnchoringRuntime.create(
            make_settings(), session_factory=session_factory, signer=signer, backend=backend
        )
        record = await runtime.create_and_maybe_anchor(make_fields())
        backend.down = True
        await runtime.stop()
        return runtime, record

    runtime, record = asyncio.run(scenario())

    assert runtime.records.get(record.id).status == AnchorStatus.PENDING
    assert runtime.coordinator.pending_count == 1


def test_runtime_disabled_ledger_uses_fallback(make_settings, session_factory):
    async def scenario():
        return await AnchoringRuntime.create(
            make_settings(ledger_enabled=False), session_factory=session_factory
        )

    runtime = asyncio.run(scenario())

    assert isinstance(runtime.ledger, FallbackLedgerClient)


def test_runtime_refuses_incomplete_production_settings(make_settings, session_factory):
    with pytest.raises(ValueError):
        asyncio.run(
            AnchoringRuntime.create(
                make_settings(environment="production"), session_factory=session_factory
            )
        )
