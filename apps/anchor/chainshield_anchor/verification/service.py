"""Integrity verification of stored log records.

Two independent checks are reported separately:

* storage integrity: the content hash recomputed from the stored fields
  matches the hash stamped when the record was created;
* ledger integrity: for anchored records, the ledger program confirms the
  recomputed anchoring preimage against the hash it stored.

A record can be intact but never anchored, or anchored while its stored fields
were altered afterwards. Both situations must stay distinguishable, so the
report never collapses them into one flag.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from chainshield_anchor.errors import IntegrityMismatch, LedgerUnavailable, ValidationError
from chainshield_anchor.integrity.hashing import (
    compute_batch_hash,
    compute_content_hash,
    ledger_digest,
)
from chainshield_anchor.ledger.client import LedgerClient
from chainshield_anchor.models import AnchorMode, LogRecord
from chainshield_anchor.records.service import LogRecordService
from chainshield_anchor.utils import metrics

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    record_id: str
    hash_intact: bool
    ledger_verified: bool
    anchored: bool
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "hash_intact": self.hash_intact,
            "ledger_verified": self.ledger_verified,
            "anchored": self.anchored,
            "detail": self.detail,
        }

    def raise_for_status(self):
        """Raise if either check found a problem."""
        if not self.hash_intact:
            raise IntegrityMismatch(
                f"Record {self.record_id} content hash does not match its stamped hash", self
            )
        ledger = self.detail.get("ledger", {})
        if ledger.get("mode") == "fallback":
            if ledger.get("locally_consistent") is False:
                raise IntegrityMismatch(
                    f"Record {self.record_id} does not match its fallback anchor digest", self
                )
            return
        if ledger.get("error") and ledger.get("retryable"):
            raise LedgerUnavailable(f"Ledger check for record {self.record_id} failed: {ledger['error']}")
        if self.anchored and not self.ledger_verified:
            raise IntegrityMismatch(
                f"Record {self.record_id} does not verify against its ledger anchor", self
            )


class VerificationService:
    """Recompute hashes and cross-check storage and ledger."""

    def __init__(self, records: LogRecordService, ledger: LedgerClient):
        """Initialize verification service."""
        self.records = records
        self.ledger = ledger

    def _recompute(self, record: LogRecord) -> Optional[str]:
        try:
            return compute_content_hash(record.hashed_fields())
        except ValidationError as e:
            logger.warning(f"Record {record.id} fields cannot be hashed: {e}")
            return None

    def _anchoring_preimage(self, record: LogRecord, current_hash: Optional[str]) -> tuple:
        """Recomputed preimage and the locally stamped one for the record's anchor."""
        if record.batch_hash is None:
            return current_hash, record.content_hash

        members = self.records.batch_members(record.batch_hash)
        member_hashes = []
        for member in members:
            member_hash = current_hash if member.id == record.id else self._recompute(member)
            if member_hash is None:
                return None, record.batch_hash
            member_hashes.append(member_hash)
        return compute_batch_hash(member_hashes), record.batch_hash

    async def verify_integrity(self, record_id: str) -> IntegrityReport:
        """Verify one record against storage and, when anchored, the ledger."""
        record = self.records.get(record_id)
        current_hash = self._recompute(record)
        hash_intact = current_hash is not None and current_hash == record.content_hash

        detail = {
            "storage": {
                "stored_hash": record.content_hash,
                "computed_hash": current_hash,
            },
            "anchoring": record.anchoring(),
            "ledger": {"mode": record.anchor_mode},
        }
        ledger_verified = False

        if record.is_anchored and record.ledger_log_id is not None:
            preimage, stamped_preimage = self._anchoring_preimage(record, current_hash)
            ledger_detail = detail["ledger"]
            if preimage is None:
                ledger_detail["verified"] = False
                ledger_detail["error"] = "Anchored fields cannot be recomputed"
            elif record.anchor_mode == AnchorMode.FALLBACK.value:
                # Local bookkeeping only; never presented as an external anchor.
                expected = ledger_digest(stamped_preimage)
                if self.ledger.is_live:
                    consistent = ledger_digest(preimage) == expected
                else:
                    local = await self.ledger.verify_log(
                        record.ledger_log_id, preimage, expected_digest=expected
                    )
                    consistent = local.verified
                ledger_detail["verified"] = False
                ledger_detail["locally_consistent"] = consistent
                ledger_detail["error"] = "Fallback anchor: no ledger record to verify against"
            elif not self.ledger.is_live:
                ledger_detail["verified"] = False
                ledger_detail["retryable"] = True
                ledger_detail["error"] = "Ledger not connected"
            else:
                verification = await self.ledger.verify_log(record.ledger_log_id, preimage)
                ledger_verified = verification.verified
                ledger_detail["verified"] = verification.verified
                ledger_detail["entry"] = verification.entry
                if verification.error:
                    ledger_detail["error"] = verification.error
                    # A missing or rejected entry is a mismatch; a transport error can be retried.
                    ledger_detail["retryable"] = verification.retryable
                if record.batch_hash is not None:
                    ledger_detail["batch_hash_intact"] = preimage == record.batch_hash

        report = IntegrityReport(
            record_id=record.id,
            hash_intact=hash_intact,
            ledger_verified=ledger_verified,
            anchored=record.is_anchored,
            detail=detail,
        )
        metrics.verifications.labels(
            hash_intact=str(hash_intact).lower(), ledger_verified=str(ledger_verified).lower()
        ).inc()
        if not hash_intact:
            logger.warning(f"Integrity mismatch for record {record.id}", extra={"stored_hash": record.content_hash})
        return report
