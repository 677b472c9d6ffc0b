"""Signing identity for ledger transactions."""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from eth_account import Account

from chainshield_anchor.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class LedgerSigner(ABC):
    """Abstract signer interface."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Account address that submits transactions."""
        pass

    @abstractmethod
    def sign_transaction(self, transaction: dict):
        """Sign a transaction dict and return the signed transaction."""
        pass

    def get_key_id(self) -> str:
        """Get key identifier."""
        return self.address


class LocalKeySigner(LedgerSigner):
    """Signer holding a secp256k1 private key in process memory."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        key_path: Optional[str] = None,
        generate: bool = False,
    ):
        """Initialize local signer from a key, a key file, or a new development key."""
        self.key_path = Path(key_path) if key_path else None
        self._account = self._load_or_generate_key(private_key, generate)

    def _load_or_generate_key(self, private_key: Optional[str], generate: bool):
        """Load the key, or generate and save one when allowed."""
        if private_key:
            return Account.from_key(private_key)

        if self.key_path and self.key_path.exists():
            key_hex = self.key_path.read_text().strip()
            return Account.from_key(key_hex)

        if not generate:
            raise ValueError(
                "No signer key configured. Set SIGNER_PRIVATE_KEY or SIGNER_KEY_PATH."
            )

        account = Account.create()
        if self.key_path:
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            self.key_path.write_text(account.key.hex())
            os.chmod(self.key_path, 0o600)
        logger.warning(
            f"Generated development signer {account.address}",
            extra={"key_path": str(self.key_path) if self.key_path else None},
        )
        return account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, transaction: dict):
        """Sign with the local account."""
        return self._account.sign_transaction(transaction)


def get_signer(settings: Optional[Settings] = None) -> LedgerSigner:
    """Get signer instance based on settings."""
    settings = settings or get_settings()
    return LocalKeySigner(
        private_key=settings.signer_private_key,
        key_path=settings.signer_key_path,
        generate=settings.is_development and settings.signer_generate_dev_key,
    )
