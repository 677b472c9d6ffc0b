"""Log record storage with hash stamping and anchoring write-back."""

import logging
import uuid
from datetime import datetime
from typing import Iterable, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from chainshield_anchor.errors import RecordNotFound, ValidationError
from chainshield_anchor.integrity.hashing import (
    canonical_form,
    compute_content_hash,
    normalize_timestamp,
)
from chainshield_anchor.models import AnchorStatus, LogCategory, LogRecord, Severity

logger = logging.getLogger(__name__)


def parse_category(value) -> LogCategory:
    try:
        return value if isinstance(value, LogCategory) else LogCategory(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown log category: {value!r}") from None


def parse_severity(value) -> Severity:
    try:
        return value if isinstance(value, Severity) else Severity(str(value).capitalize())
    except ValueError:
        raise ValidationError(f"Unknown severity: {value!r}") from None


class LogRecordService:
    """Persist records and write anchoring results back onto them."""

    def __init__(self, session_factory: sessionmaker):
        """Initialize record service."""
        self.session_factory = session_factory

    def create(self, fields: Mapping) -> LogRecord:
        """Create a record and stamp its content hash."""
        for name in ("category", "severity"):
            if fields.get(name) is None:
                raise ValidationError(f"Missing required hashed field(s): {name}")
        category = parse_category(fields["category"])
        severity = parse_severity(fields["severity"])
        hashed = {
            "category": category.value,
            "severity": severity.value,
            "source": fields.get("source"),
            "description": fields.get("description"),
            "payload": fields.get("payload"),
            "timestamp": fields.get("timestamp"),
        }
        content_hash = compute_content_hash(hashed)

        record = LogRecord(
            id=str(uuid.uuid4()),
            category=category.value,
            severity=severity.value,
            source=hashed["source"],
            description=hashed["description"],
            payload_json=canonical_form(hashed["payload"]),
            event_timestamp=normalize_timestamp(hashed["timestamp"]),
            actor_id=fields.get("actor_id"),
            content_hash=content_hash,
            anchor_status=AnchorStatus.PENDING.value,
        )
        with self.session_factory() as db:
            db.add(record)
            db.commit()
        logger.debug(f"Log record {record.id} stamped", extra={"content_hash": content_hash})
        return record

    def get(self, record_id: str) -> LogRecord:
        """Get a record by id."""
        with self.session_factory() as db:
            record = db.get(LogRecord, record_id)
        if record is None:
            raise RecordNotFound(f"Log record {record_id} not found")
        return record

    def pending_content_hashes(self, record_ids: Iterable[str]) -> dict:
        """Content hashes of the given records that are still Pending."""
        record_ids = list(record_ids)
        if not record_ids:
            return {}
        with self.session_factory() as db:
            rows = (
                db.query(LogRecord.id, LogRecord.content_hash)
                .filter(
                    LogRecord.id.in_(record_ids),
                    LogRecord.anchor_status == AnchorStatus.PENDING.value,
                )
                .all()
            )
        hashes = {row.id: row.content_hash for row in rows}
        return {record_id: hashes[record_id] for record_id in record_ids if record_id in hashes}

    def list_pending(self, limit: Optional[int] = None) -> list[LogRecord]:
        """Pending records, oldest first."""
        with self.session_factory() as db:
            query = (
                db.query(LogRecord)
                .filter(LogRecord.anchor_status == AnchorStatus.PENDING.value)
                .order_by(LogRecord.created_at.asc())
            )
            if limit:
                query = query.limit(limit)
            return query.all()

    def batch_members(self, batch_hash: str) -> list[LogRecord]:
        """Records anchored together under a batch hash."""
        with self.session_factory() as db:
            return db.query(LogRecord).filter(LogRecord.batch_hash == batch_hash).all()

    @staticmethod
    def _stamp(record: LogRecord, result, batch_hash: Optional[str]):
        # Order matters: references are immutable once anchored_at is set.
        record.ledger_log_id = result.log_id
        record.tx_ref = result.tx_ref
        record.block_ref = result.block_ref
        record.batch_hash = batch_hash
        record.anchor_mode = result.mode.value
        record.anchor_error = None
        record.anchor_status = AnchorStatus.ANCHORED.value
        record.anchored_at = result.anchored_at or datetime.utcnow()

    def mark_anchored(self, record_id: str, result) -> bool:
        """Stamp an individual anchor. False if the record is no longer Pending."""
        with self.session_factory() as db:
            record = db.get(LogRecord, record_id)
            if record is None:
                raise RecordNotFound(f"Log record {record_id} not found")
            if record.anchor_status != AnchorStatus.PENDING.value:
                logger.warning(
                    f"Record {record_id} already {record.anchor_status}, not re-stamping",
                    extra={"tx_ref": result.tx_ref},
                )
                return False
            self._stamp(record, result, batch_hash=None)
            db.commit()
        return True

    def mark_batch_anchored(self, record_ids: Iterable[str], result, batch_hash: str) -> list[str]:
        """Stamp every still-Pending record of a batch with the same anchor."""
        record_ids = list(record_ids)
        with self.session_factory() as db:
            records = (
                db.query(LogRecord)
                .filter(
                    LogRecord.id.in_(record_ids),
                    LogRecord.anchor_status == AnchorStatus.PENDING.value,
                )
                .all()
            )
            for record in records:
                self._stamp(record, result, batch_hash=batch_hash)
            db.commit()
            marked = [record.id for record in records]
        skipped = set(record_ids) - set(marked)
        if skipped:
            logger.warning(
                f"{len(skipped)} batch records were no longer Pending",
                extra={"batch_hash": batch_hash},
            )
        return marked

    def mark_failed(self, record_id: str, error: str) -> bool:
        """Mark a Pending record Failed. False if it is no longer Pending."""
        with self.session_factory() as db:
            record = db.get(LogRecord, record_id)
            if record is None:
                raise RecordNotFound(f"Log record {record_id} not found")
            if record.anchor_status != AnchorStatus.PENDING.value:
                return False
            record.anchor_status = AnchorStatus.FAILED.value
            record.anchor_error = (error or "")[:1000]
            db.commit()
        return True
