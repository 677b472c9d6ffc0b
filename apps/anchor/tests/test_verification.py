"""Tests for integrity verification against storage and the ledger."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chainshield_anchor.anchoring.coordinator import AnchoringCoordinator
from chainshield_anchor.errors import IntegrityMismatch, LedgerRejected, LedgerUnavailable, RecordNotFound
from chainshield_anchor.models import LogRecord
from chainshield_anchor.verification.service import VerificationService


@pytest.fixture
def verifier(records, live_client):
    return VerificationService(records, live_client)


def tamper(session_factory, record_id: str, **changes):
    """Edit stored fields behind the service's back."""
    with session_factory() as db:
        stored = db.get(LogRecord, record_id)
        for name, value in changes.items():
            setattr(stored, name, value)
        db.commit()


def test_unanchored_record_is_intact(records, verifier, make_fields):
    record = records.create(make_fields())

    report = asyncio.run(verifier.verify_integrity(record.id))

    assert report.hash_intact
    assert not report.anchored
    assert not report.ledger_verified
    report.raise_for_status()


def test_individually_anchored_record_verifies(coordinator, verifier, make_fields):
    record = asyncio.run(coordinator.create_and_maybe_anchor(make_fields(severity="Critical")))

    report = asyncio.run(verifier.verify_integrity(record.id))

    assert report.hash_intact
    assert report.anchored
    assert report.ledger_verified
    assert report.detail["ledger"]["entry"]["log_id"] == record.ledger_log_id
    assert report.to_dict()["detail"]["anchoring"]["tx_ref"] == record.tx_ref
    report.raise_for_status()


def test_batch_members_verify(coordinator, verifier, make_fields):
    async def scenario():
        created = [
            await coordinator.create_and_maybe_anchor(make_fields(description=f"event {i}"))
            for i in range(4)
        ]
        await coordinator.flush()
        return [await verifier.verify_integrity(record.id) for record in created]

    reports = asyncio.run(scenario())

    for report in reports:
        assert report.hash_intact
        assert report.ledger_verified
        assert report.detail["ledger"]["batch_hash_intact"]


def test_tampered_record_fails_both_checks(coordinator, verifier, session_factory, make_fields):
    record = asyncio.run(coordinator.create_and_maybe_anchor(make_fields(severity="High")))
    tamper(session_factory, record.id, description="Nothing happened")

    report = asyncio.run(verifier.verify_integrity(record.id))

    assert not report.hash_intact
    assert not report.ledger_verified
    assert report.detail["storage"]["computed_hash"] != report.detail["storage"]["stored_hash"]
    with pytest.raises(IntegrityMismatch) as exc_info:
        report.raise_for_status()
    assert exc_info.value.report is report


def test_tampered_batch_member_breaks_siblings_ledger_check(coordinator, verifier, session_factory, make_fields):
    """An untouched sibling stays intact while the shared anchor no longer matches."""

    async def scenario():
        created = [
            await coordinator.create_and_maybe_anchor(make_fields(description=f"event {i}"))
            for i in range(3)
        ]
        await coordinator.flush()
        return created

    created = asyncio.run(scenario())
    tamper(session_factory, created[0].id, payload_json={"ip": "10.0.0.8", "method": "password"})

    tampered = asyncio.run(verifier.verify_integrity(created[0].id))
    sibling = asyncio.run(verifier.verify_integrity(created[1].id))

    assert not tampered.hash_intact and not tampered.ledger_verified
    assert sibling.hash_intact
    assert not sibling.ledger_verified
    assert not sibling.detail["ledger"]["batch_hash_intact"]
    with pytest.raises(IntegrityMismatch):
        sibling.raise_for_status()


def test_fallback_anchor_is_never_ledger_verified(records, fallback_client, make_fields):
    coordinator = AnchoringCoordinator(records, fallback_client)
    verifier = VerificationService(records, fallback_client)

    async def scenario():
        record = await coordinator.create_and_maybe_anchor(make_fields(severity="Critical"))
        return await verifier.verify_integrity(record.id)

    report = asyncio.run(scenario())

    assert report.hash_intact
    assert report.anchored
    assert not report.ledger_verified
    assert report.detail["ledger"]["mode"] == "fallback"
    assert report.detail["ledger"]["locally_consistent"]
    report.raise_for_status()


def test_live_anchor_checked_without_ledger_is_unavailable(coordinator, records, fallback_client, make_fields):
    record = asyncio.run(coordinator.create_and_maybe_anchor(make_fields(severity="Critical")))
    verifier = VerificationService(records, fallback_client)

    report = asyncio.run(verifier.verify_integrity(record.id))

    assert report.hash_intact
    assert not report.ledger_verified
    assert report.detail["ledger"]["retryable"]
    with pytest.raises(LedgerUnavailable):
        report.raise_for_status()


def test_unknown_record_raises(verifier):
    with pytest.raises(RecordNotFound):
        asyncio.run(verifier.verify_integrity("00000000-0000-0000-0000-000000000000"))


def test_rejected_ledger_lookup_is_a_mismatch(coordinator, verifier, live_client, monkeypatch, make_fields):
    """An anchor the ledger refuses to return is not retried as an outage."""
    record = asyncio.run(coordinator.create_and_maybe_anchor(make_fields(severity="High")))
    monkeypatch.setattr(
        live_client.backend, "get_log", AsyncMock(side_effect=LedgerRejected("getLog reverted: Log does not exist"))
    )

    report = asyncio.run(verifier.verify_integrity(record.id))

    assert report.hash_intact
    assert not report.ledger_verified
    assert report.detail["ledger"]["retryable"] is False
    with pytest.raises(IntegrityMismatch):
        report.raise_for_status()


def test_ledger_timeout_during_check_is_retryable(coordinator, verifier, live_client, monkeypatch, make_fields):
    record = asyncio.run(coordinator.create_and_maybe_anchor(make_fields(severity="High")))
    monkeypatch.setattr(
        live_client.backend, "get_log", AsyncMock(side_effect=LedgerUnavailable("getLog timed out after 10s"))
    )

    report = asyncio.run(verifier.verify_integrity(record.id))

    assert report.detail["ledger"]["retryable"] is True
    with pytest.raises(LedgerUnavailable):
        report.raise_for_status()
