"""Deterministic content hashing for log records.

A record's content hash covers only the fields the upstream producer owns and
that never change after creation. Anchoring metadata, ids and bookkeeping
timestamps are excluded so that stamping a record never alters its hash.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Union

from eth_utils import keccak

from chainshield_anchor.errors import ValidationError

HASHED_FIELDS = ("category", "severity", "source", "description", "payload", "timestamp")


def normalize_timestamp(value: Union[datetime, str]) -> datetime:
    """Normalize a timestamp to naive UTC, the form stored in the database."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp {value!r}: {e}") from e
    if not isinstance(value, datetime):
        raise ValidationError(f"Invalid timestamp type: {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def canonical_form(value: Any) -> Any:
    """Reduce a value to plain JSON types with stable representations."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return normalize_timestamp(value).isoformat(timespec="microseconds")
    if isinstance(value, Mapping):
        return {str(k): canonical_form(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonical_form(v) for v in value]
    return value


def extract_hashed_fields(fields: Mapping[str, Any]) -> dict:
    """Select the hashed subset of a record's fields, rejecting missing ones."""
    missing = [name for name in HASHED_FIELDS if fields.get(name) is None]
    if missing:
        raise ValidationError(f"Missing required hashed field(s): {', '.join(missing)}")
    hashed = {name: fields[name] for name in HASHED_FIELDS}
    hashed["timestamp"] = normalize_timestamp(hashed["timestamp"])
    return hashed


def canonicalize(fields: Mapping[str, Any]) -> bytes:
    """Canonical byte representation of a record's hashed fields."""
    hashed = extract_hashed_fields(fields)
    try:
        canonical = json.dumps(
            canonical_form(hashed),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Record fields are not canonically serializable: {e}") from e
    return canonical.encode("utf-8")


def compute_content_hash(fields: Mapping[str, Any]) -> str:
    """Compute the SHA-256 content hash (hex) of a record's stable fields."""
    return hashlib.sha256(canonicalize(fields)).hexdigest()


def compute_batch_hash(content_hashes: Iterable[str]) -> str:
    """Hash a set of content hashes independently of their arrival order."""
    hashes = sorted(content_hashes)
    if not hashes:
        raise ValidationError("Cannot compute the hash of an empty batch")
    return hashlib.sha256("".join(hashes).encode("utf-8")).hexdigest()


def ledger_digest(preimage: Union[str, bytes]) -> bytes:
    """Keccak-256 digest stored on the ledger and recomputed by verifyLog."""
    if isinstance(preimage, str):
        preimage = preimage.encode("utf-8")
    return keccak(preimage)
