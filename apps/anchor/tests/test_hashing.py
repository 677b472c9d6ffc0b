"""Tests for content and batch hashing."""

import random
from datetime import datetime, timedelta, timezone

import pytest
from eth_utils import keccak

from chainshield_anchor.errors import ValidationError
from chainshield_anchor.integrity.hashing import (
    canonicalize,
    compute_batch_hash,
    compute_content_hash,
    ledger_digest,
    normalize_timestamp,
)


@pytest.fixture
def fields():
    return {
        "category": "firewall_alert",
        "severity": "Medium",
        "source": "edge-fw-01",
        "description": "Blocked inbound connection",
        "payload": {"port": 22, "src": "203.0.113.9", "rules": ["deny-ssh", "geo-block"]},
        "timestamp": datetime(2024, 5, 1, 12, 0, 0),
    }


def test_content_hash_is_deterministic(fields):
    """Same fields always give the same 64-char hex hash."""
    first = compute_content_hash(fields)
    second = compute_content_hash(dict(fields))

    assert first == second
    assert len(first) == 64
    int(first, 16)


def test_content_hash_ignores_key_order(fields):
    """Mapping key order does not change the hash."""
    reordered = {key: fields[key] for key in reversed(list(fields))}
    reordered["payload"] = {"rules": ["deny-ssh", "geo-block"], "src": "203.0.113.9", "port": 22}

    assert compute_content_hash(reordered) == compute_content_hash(fields)


def test_content_hash_ignores_anchoring_metadata(fields):
    """Ids and anchoring fields are not part of the hash."""
    stamped = dict(
        fields,
        id="3f1c5d1e-0000-4000-8000-000000000000",
        ledger_log_id=12,
        tx_ref="0xabc",
        anchored_at=datetime.utcnow(),
        status="Anchored",
    )

    assert compute_content_hash(stamped) == compute_content_hash(fields)


@pytest.mark.parametrize(
    "timestamp",
    [
        "2024-05-01T12:00:00Z",
        "2024-05-01T12:00:00+00:00",
        "2024-05-01T14:00:00+02:00",
        datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
        datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone(timedelta(hours=-3))),
    ],
)
def test_timestamp_representations_hash_equally(fields, timestamp):
    """Equivalent instants normalize to the same hash."""
    assert compute_content_hash(dict(fields, timestamp=timestamp)) == compute_content_hash(fields)


def test_any_field_change_changes_hash(fields):
    """Each hashed field contributes to the hash."""
    original = compute_content_hash(fields)

    assert compute_content_hash(dict(fields, description="Allowed inbound connection")) != original
    assert compute_content_hash(dict(fields, payload={**fields["payload"], "port": 2222})) != original
    assert compute_content_hash(dict(fields, timestamp=datetime(2024, 5, 1, 12, 0, 1))) != original


@pytest.mark.parametrize("missing", ["category", "severity", "source", "description", "payload", "timestamp"])
def test_missing_field_raises(fields, missing):
    """Absent or null hashed fields are rejected."""
    without = {key: value for key, value in fields.items() if key != missing}
    with pytest.raises(ValidationError, match=missing):
        compute_content_hash(without)
    with pytest.raises(ValidationError, match=missing):
        compute_content_hash(dict(fields, **{missing: None}))


def test_invalid_timestamp_raises(fields):
    with pytest.raises(ValidationError):
        compute_content_hash(dict(fields, timestamp="yesterday"))
    with pytest.raises(ValidationError):
        compute_content_hash(dict(fields, timestamp=1714564800))


def test_unserializable_payload_raises(fields):
    with pytest.raises(ValidationError):
        compute_content_hash(dict(fields, payload={"blob": object()}))


def test_canonical_form_is_compact_sorted_json(fields):
    """Canonical bytes use sorted keys and microsecond timestamps."""
    canonical = canonicalize(fields).decode("utf-8")

    assert canonical.startswith('{"category":"firewall_alert","description":')
    assert '"timestamp":"2024-05-01T12:00:00.000000"' in canonical
    assert " " not in canonical.replace("Blocked inbound connection", "")


def test_normalize_timestamp_returns_naive_utc():
    value = normalize_timestamp("2024-05-01T14:30:00+02:00")

    assert value == datetime(2024, 5, 1, 12, 30)
    assert value.tzinfo is None


def test_batch_hash_is_order_independent():
    """Batch hash is invariant under any permutation of its members."""
    hashes = [compute_content_hash({
        "category": "user_login",
        "severity": "Low",
        "source": "auth",
        "description": f"login {i}",
        "payload": {},
        "timestamp": datetime(2024, 1, 1) + timedelta(minutes=i),
    }) for i in range(20)]
    expected = compute_batch_hash(hashes)

    rng = random.Random(7)
    for _ in range(10):
        shuffled = hashes[:]
        rng.shuffle(shuffled)
        assert compute_batch_hash(shuffled) == expected


def test_batch_hash_depends_on_membership():
    hashes = ["a" * 64, "b" * 64, "c" * 64]

    assert compute_batch_hash(hashes) != compute_batch_hash(hashes[:2])


def test_empty_batch_raises():
    with pytest.raises(ValidationError):
        compute_batch_hash([])


def test_ledger_digest_is_keccak_of_preimage():
    preimage = "f" * 64

    assert ledger_digest(preimage) == keccak(preimage.encode("utf-8"))
    assert ledger_digest(preimage.encode("utf-8")) == ledger_digest(preimage)
    assert len(ledger_digest(preimage)) == 32
