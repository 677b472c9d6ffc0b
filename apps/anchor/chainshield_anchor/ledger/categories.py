"""Mapping between domain log categories and the ledger's fixed log type enum."""

from enum import IntEnum
from typing import Union

from chainshield_anchor.models.log_record import LogCategory


class LedgerLogType(IntEnum):
    """Log type enum as declared by the ledger program (uint8)."""

    AUTH = 0
    FILE_ACCESS = 1
    NETWORK = 2
    FIREWALL = 3
    APP = 4
    EMAIL = 5
    TXN = 6


# Categories without an entry fall into DEFAULT_LOG_TYPE.
DEFAULT_LOG_TYPE = LedgerLogType.APP

CATEGORY_LOG_TYPES = {
    LogCategory.USER_LOGIN: LedgerLogType.AUTH,
    LogCategory.USER_LOGOUT: LedgerLogType.AUTH,
    LogCategory.USER_REGISTRATION: LedgerLogType.AUTH,
    LogCategory.USER_UPDATE: LedgerLogType.AUTH,
    LogCategory.AUTHENTICATION_FAILURE: LedgerLogType.AUTH,
    LogCategory.SESSION_EXPIRED: LedgerLogType.AUTH,
    LogCategory.ACCOUNT_LOCKED: LedgerLogType.AUTH,
    LogCategory.PERMISSION_CHANGE: LedgerLogType.AUTH,
    LogCategory.ROLE_CHANGE: LedgerLogType.AUTH,
    LogCategory.DATA_ACCESS: LedgerLogType.FILE_ACCESS,
    LogCategory.DATA_MODIFICATION: LedgerLogType.FILE_ACCESS,
    LogCategory.DATA_EXPORT: LedgerLogType.FILE_ACCESS,
    LogCategory.FILE_UPLOAD: LedgerLogType.FILE_ACCESS,
    LogCategory.FILE_DOWNLOAD: LedgerLogType.FILE_ACCESS,
    LogCategory.DATABASE_QUERY: LedgerLogType.FILE_ACCESS,
    LogCategory.AUDIT_TRAIL_ACCESS: LedgerLogType.FILE_ACCESS,
    LogCategory.NETWORK_EVENT: LedgerLogType.NETWORK,
    LogCategory.INTRUSION_ATTEMPT: LedgerLogType.NETWORK,
    LogCategory.THREAT_DETECTED: LedgerLogType.NETWORK,
    LogCategory.THREAT_ESCALATED: LedgerLogType.NETWORK,
    LogCategory.FIREWALL_ALERT: LedgerLogType.FIREWALL,
    LogCategory.EMAIL_SENT: LedgerLogType.EMAIL,
    LogCategory.TRANSACTION: LedgerLogType.TXN,
    LogCategory.BLOCKCHAIN_TRANSACTION: LedgerLogType.TXN,
}


def map_category(category: Union[LogCategory, str, None]) -> LedgerLogType:
    """Map any category value to a ledger log type.

    Total over its input: unknown strings, unmapped categories and ``None``
    all map to ``DEFAULT_LOG_TYPE``.
    """
    if category is None:
        return DEFAULT_LOG_TYPE
    if not isinstance(category, LogCategory):
        try:
            category = LogCategory(str(category).lower())
        except ValueError:
            return DEFAULT_LOG_TYPE
    return CATEGORY_LOG_TYPES.get(category, DEFAULT_LOG_TYPE)


def log_type_name(value: int) -> str:
    """Readable name for a raw ledger log type value."""
    try:
        return LedgerLogType(value).name.lower()
    except ValueError:
        return DEFAULT_LOG_TYPE.name.lower()
