"""Error taxonomy for anchoring and verification."""


class AnchorError(Exception):
    """Base class for anchoring subsystem errors."""


class ValidationError(AnchorError):
    """A required hashed field is missing or malformed."""


class LedgerUnavailable(AnchorError):
    """The ledger could not be reached or did not answer in time."""


class LedgerRejected(AnchorError):
    """The ledger program reverted the transaction."""

    @property
    def already_exists(self) -> bool:
        """True when the revert only reports an existing org or user."""
        return "already exists" in str(self).lower()


class IntegrityMismatch(AnchorError):
    """A recomputed hash does not match the stamped or anchored value."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class RecordNotFound(AnchorError, LookupError):
    """No log record exists with the given id."""
