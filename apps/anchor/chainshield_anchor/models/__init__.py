"""Database models - import all models here for metadata discovery."""

from chainshield_anchor.models.log_record import (
    AnchorMode,
    AnchorStatus,
    LogCategory,
    LogRecord,
    Severity,
)

__all__ = [
    "AnchorMode",
    "AnchorStatus",
    "LogCategory",
    "LogRecord",
    "Severity",
]
