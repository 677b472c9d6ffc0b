"""Security log record model with anchoring metadata."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, Column, DateTime, String, Text
from sqlalchemy.orm import validates

from chainshield_anchor.db.base import Base


class Severity(str, Enum):
    """Producer-assigned severity."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def anchors_immediately(self) -> bool:
        """High-priority records skip the batch."""
        return self in (Severity.HIGH, Severity.CRITICAL)


class LogCategory(str, Enum):
    """Domain event categories produced upstream."""

    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_REGISTRATION = "user_registration"
    USER_UPDATE = "user_update"
    AUTHENTICATION_FAILURE = "authentication_failure"
    SESSION_EXPIRED = "session_expired"
    ACCOUNT_LOCKED = "account_locked"
    PERMISSION_CHANGE = "permission_change"
    ROLE_CHANGE = "role_change"
    API_ACCESS = "api_access"
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    DATA_EXPORT = "data_export"
    FILE_UPLOAD = "file_upload"
    FILE_DOWNLOAD = "file_download"
    DATABASE_QUERY = "database_query"
    AUDIT_TRAIL_ACCESS = "audit_trail_access"
    NETWORK_EVENT = "network_event"
    INTRUSION_ATTEMPT = "intrusion_attempt"
    THREAT_DETECTED = "threat_detected"
    THREAT_RESOLVED = "threat_resolved"
    THREAT_ESCALATED = "threat_escalated"
    FIREWALL_ALERT = "firewall_alert"
    MALWARE_DETECTED = "malware_detected"
    SYSTEM_EVENT = "system_event"
    CONFIG_CHANGE = "config_change"
    SYSTEM_UPDATE = "system_update"
    BACKUP_CREATED = "backup_created"
    REPORT_GENERATED = "report_generated"
    REPORT_DOWNLOADED = "report_downloaded"
    ALERT_TRIGGERED = "alert_triggered"
    EMAIL_SENT = "email_sent"
    TRANSACTION = "transaction"
    BLOCKCHAIN_TRANSACTION = "blockchain_transaction"


class AnchorStatus(str, Enum):
    """Anchoring lifecycle: Pending -> Anchored | Failed."""

    PENDING = "Pending"
    ANCHORED = "Anchored"
    FAILED = "Failed"


class AnchorMode(str, Enum):
    """Whether an anchor came from the ledger or the local fallback."""

    LIVE = "live"
    FALLBACK = "fallback"


class LogRecord(Base):
    """Security event record, hash-stamped at creation."""

    __tablename__ = "log_records"

    id = Column(String(36), primary_key=True)

    # Producer-owned fields (hashed, except actor_id)
    category = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, index=True)
    source = Column(String(128), nullable=False)
    description = Column(Text, nullable=False)
    payload_json = Column(JSON, nullable=False)
    event_timestamp = Column(DateTime, nullable=False, index=True)
    actor_id = Column(String(128), nullable=True)  # Used for the ledger user key only

    content_hash = Column(String(64), nullable=False, index=True)

    # Anchoring metadata
    ledger_log_id = Column(BigInteger, nullable=True)
    tx_ref = Column(String(80), nullable=True, index=True)
    block_ref = Column(BigInteger, nullable=True)
    batch_hash = Column(String(64), nullable=True, index=True)  # NULL for individual anchors
    anchored_at = Column(DateTime, nullable=True)
    anchor_status = Column(String(16), nullable=False, default=AnchorStatus.PENDING.value, index=True)
    anchor_mode = Column(String(16), nullable=True)  # live, fallback
    anchor_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates("ledger_log_id", "tx_ref")
    def _validate_anchor_reference(self, key, value):
        if self.anchored_at is not None and getattr(self, key) != value:
            raise ValueError(f"{key} is immutable once the record is anchored")
        return value

    @validates("anchor_status")
    def _validate_status_transition(self, key, value):
        value = AnchorStatus(value).value
        current = self.anchor_status
        if current is None or current == value:
            return value
        if current != AnchorStatus.PENDING.value:
            raise ValueError(f"Invalid anchor status transition {current} -> {value}")
        return value

    @property
    def status(self) -> AnchorStatus:
        return AnchorStatus(self.anchor_status)

    @property
    def is_anchored(self) -> bool:
        return self.anchor_status == AnchorStatus.ANCHORED.value

    @property
    def is_fallback_anchor(self) -> bool:
        return self.is_anchored and self.anchor_mode == AnchorMode.FALLBACK.value

    def hashed_fields(self) -> dict:
        """Fields covered by the content hash, keyed as the producer supplies them."""
        return {
            "category": self.category,
            "severity": self.severity,
            "source": self.source,
            "description": self.description,
            "payload": self.payload_json,
            "timestamp": self.event_timestamp,
        }

    def anchoring(self) -> dict:
        """Persisted anchoring fields."""
        return {
            "ledger_log_id": self.ledger_log_id,
            "tx_ref": self.tx_ref,
            "block_ref": self.block_ref,
            "batch_hash": self.batch_hash,
            "anchored_at": self.anchored_at.isoformat() if self.anchored_at else None,
            "status": self.anchor_status,
            "mode": self.anchor_mode,
            "error": self.anchor_error,
        }
