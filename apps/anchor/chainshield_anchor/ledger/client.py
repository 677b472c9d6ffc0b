"""Ledger client for anchoring log hashes on the ChainShield program.

One ``LedgerClient`` interface, two variants chosen once at startup by
``connect_ledger``:

* ``LiveLedgerClient`` signs and submits real program calls through a
  ``LedgerBackend`` and reads results back from emitted events.
* ``FallbackLedgerClient`` is used when no ledger is configured or reachable.
  It returns results with the same shape, marked ``mode=fallback``, so records
  stay schema-compatible. Fallback anchors are local bookkeeping only and are
  never reported as externally verifiable.

Anchoring calls never raise transport or revert errors; they return an
``AnchorResult`` with ``success=False`` so a failed anchor cannot disturb the
record that triggered it.
"""

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Union

from eth_utils import from_wei, keccak, to_wei
from web3 import Web3

from chainshield_anchor.errors import LedgerRejected, LedgerUnavailable
from chainshield_anchor.integrity.hashing import ledger_digest
from chainshield_anchor.ledger.backends import (
    InProcessLedgerBackend,
    LedgerBackend,
    TransactionParams,
    TransactionReceipt,
    Web3LedgerBackend,
)
from chainshield_anchor.ledger.categories import LedgerLogType, log_type_name, map_category
from chainshield_anchor.ledger.program import LedgerLogEntry
from chainshield_anchor.ledger.signer import LedgerSigner, get_signer
from chainshield_anchor.models.log_record import AnchorMode, LogCategory
from chainshield_anchor.settings import Settings
from chainshield_anchor.utils import metrics

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"
DID_PREFIX = "did:chainshield:"


def derive_org_key(org_name: str) -> bytes:
    """One-way organization key: Keccak-256 of the organization name."""
    return keccak(org_name.encode("utf-8"))


def derive_user_key(org_key: bytes, user_id: str) -> bytes:
    """One-way user key scoped to an organization."""
    return keccak(org_key + user_id.encode("utf-8"))


def batch_ref_uri(record_count: int, timestamp: Optional[int] = None) -> str:
    """Reference pointer stored with a batch anchor."""
    return f"batch:{record_count}:{timestamp if timestamp is not None else int(time.time())}"


def describe_entry(entry: LedgerLogEntry) -> dict:
    """Readable view of a ledger log entry."""
    return {
        "log_id": entry.log_id,
        "org_key": Web3.to_hex(entry.org_key),
        "user_key": Web3.to_hex(entry.user_key),
        "log_type": log_type_name(entry.log_type),
        "log_hash": Web3.to_hex(entry.log_hash),
        "ref_uri": entry.ref_uri,
        "timestamp": datetime.utcfromtimestamp(entry.timestamp).isoformat(),
        "submitted_by": entry.submitted_by,
    }


@dataclass
class AnchorResult:
    """Outcome of one anchoring submission."""

    success: bool
    mode: AnchorMode
    log_id: Optional[int] = None
    tx_ref: Optional[str] = None
    block_ref: Optional[int] = None
    gas_used: Optional[int] = None
    log_hash: Optional[str] = None
    ref_uri: Optional[str] = None
    anchored_at: Optional[datetime] = None
    error: Optional[str] = None
    retryable: bool = False

    @classmethod
    def failure(cls, mode: AnchorMode, error: str, retryable: bool) -> "AnchorResult":
        return cls(success=False, mode=mode, error=error, retryable=retryable)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["anchored_at"] = self.anchored_at.isoformat() if self.anchored_at else None
        return data


@dataclass
class LedgerVerification:
    """Outcome of checking a preimage against an anchored hash."""

    verified: bool
    mode: AnchorMode
    entry: Optional[dict] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class NetworkStatus:
    connected: bool
    mode: AnchorMode
    network: str
    chain_id: Optional[int] = None
    block_height: Optional[int] = None
    signer_address: Optional[str] = None
    signer_balance: Optional[str] = None  # ether
    gas_price_gwei: Optional[str] = None
    org_key: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


@dataclass
class FeeEstimate:
    estimated: bool
    gas_limit: Optional[int] = None
    gas_price_gwei: Optional[str] = None
    estimated_cost: Optional[str] = None  # ether
    estimated_cost_wei: Optional[int] = None
    error: Optional[str] = None


class LedgerClient(ABC):
    """Anchoring interface shared by the live and fallback variants."""

    mode: AnchorMode

    def __init__(self, settings: Settings):
        self.settings = settings
        self.org_key = derive_org_key(settings.ledger_org_name)

    @property
    def is_live(self) -> bool:
        return self.mode == AnchorMode.LIVE

    async def start(self):
        """Prepare the client for anchoring."""
        pass

    async def close(self):
        """Release resources."""
        pass

    @abstractmethod
    async def ensure_organization(self) -> bool:
        """Make sure the organization namespace exists. Idempotent."""
        pass

    @abstractmethod
    async def ensure_user(
        self, user_id: str, did: Optional[str] = None, display_name: Optional[str] = None
    ) -> bytes:
        """Make sure a ledger user exists and return its key. Idempotent."""
        pass

    @abstractmethod
    async def anchor_log(
        self,
        preimage: str,
        category: Union[LogCategory, str, None] = None,
        user_id: Optional[str] = None,
        ref_uri: str = "",
    ) -> AnchorResult:
        """Anchor the ledger digest of ``preimage``."""
        pass

    async def anchor_batch(self, batch_hash: str, record_count: int) -> AnchorResult:
        """Anchor a batch hash with the record count as reference metadata."""
        result = await self.anchor_log(
            batch_hash,
            category=None,
            user_id=self.settings.batch_user_id,
            ref_uri=batch_ref_uri(record_count),
        )
        if result.success:
            logger.info(
                f"Batch of {record_count} records anchored",
                extra={"batch_hash": batch_hash, "tx_ref": result.tx_ref, "mode": self.mode.value},
            )
        return result

    @abstractmethod
    async def verify_log(
        self, log_id: int, preimage: str, expected_digest: Optional[bytes] = None
    ) -> LedgerVerification:
        """Check ``preimage`` against the anchored entry ``log_id``."""
        pass

    @abstractmethod
    async def get_log(self, log_id: int) -> Optional[dict]:
        pass

    @abstractmethod
    async def get_network_status(self) -> NetworkStatus:
        pass

    @abstractmethod
    async def estimate_anchor_fee(self, record_count: int = 1) -> FeeEstimate:
        pass

    @abstractmethod
    async def anchoring_history(self, limit: int = 10) -> list[dict]:
        pass


class LiveLedgerClient(LedgerClient):
    """Client submitting signed transactions to the ledger program."""

    mode = AnchorMode.LIVE

    def __init__(self, backend: LedgerBackend, signer: LedgerSigner, settings: Settings):
        super().__init__(settings)
        self.backend = backend
        self.signer = signer
        self._org_ready = False
        self._known_users: set[bytes] = set()
        self._bootstrap_lock = asyncio.Lock()

    async def _bounded(self, awaitable, action: str, timeout: Optional[float] = None):
        """Await a ledger call within an explicit time bound."""
        timeout = timeout or self.settings.ledger_rpc_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise LedgerUnavailable(f"{action} timed out after {timeout}s") from e

    def _tx_params(self, gas_limit: int) -> TransactionParams:
        return TransactionParams(
            gas_limit=gas_limit,
            max_fee_per_gas=to_wei(self.settings.ledger_max_fee_gwei, "gwei"),
            max_priority_fee_per_gas=to_wei(self.settings.ledger_priority_fee_gwei, "gwei"),
            timeout=self.settings.ledger_tx_timeout_seconds,
        )

    async def _submit(self, function: str, args: tuple, gas_limit: int) -> TransactionReceipt:
        params = self._tx_params(gas_limit)
        started = time.monotonic()
        try:
            return await self._bounded(
                self.backend.submit(self.signer, function, args, params),
                function,
                timeout=params.timeout + self.settings.ledger_rpc_timeout_seconds,
            )
        finally:
            metrics.ledger_call_duration.labels(function=function).observe(time.monotonic() - started)

    async def start(self):
        """Check the network and bootstrap the organization namespace."""
        chain_id = await self._bounded(self.backend.chain_id(), "eth_chainId")
        expected = self.settings.ledger_chain_id
        if expected is not None and chain_id != expected:
            raise LedgerRejected(f"Connected to chain {chain_id}, expected {expected}")
        await self.ensure_organization()
        await self.ensure_user(self.settings.batch_user_id, display_name="Batch anchoring")
        logger.info(
            "Ledger client initialized",
            extra={
                "network": self.settings.ledger_network,
                "chain_id": chain_id,
                "org_key": Web3.to_hex(self.org_key),
                "signer": self.signer.address,
            },
        )

    async def close(self):
        await self.backend.close()

    async def ensure_organization(self) -> bool:
        async with self._bootstrap_lock:
            if self._org_ready:
                return True
            exists = await self._bounded(self.backend.org_exists(self.org_key), "orgExists")
            if not exists:
                logger.info("Organization not registered on ledger, registering")
                try:
                    receipt = await self._submit(
                        "registerOrg",
                        (self.org_key, self.settings.org_display_name, self.signer.address),
                        self.settings.ledger_register_gas_limit,
                    )
                    logger.info(
                        "Organization registered on ledger",
                        extra={"org_key": Web3.to_hex(self.org_key), "tx_ref": receipt.tx_hash},
                    )
                except LedgerRejected as e:
                    if not e.already_exists:
                        raise
                    logger.info("Organization registered concurrently, continuing")
            self._org_ready = True
            return True

    async def ensure_user(
        self, user_id: str, did: Optional[str] = None, display_name: Optional[str] = None
    ) -> bytes:
        user_key = derive_user_key(self.org_key, user_id)
        if user_key in self._known_users:
            return user_key
        await self.ensure_organization()
        async with self._bootstrap_lock:
            if user_key in self._known_users:
                return user_key
            exists = await self._bounded(
                self.backend.user_exists(self.org_key, user_key), "getUser"
            )
            if not exists:
                try:
                    await self._submit(
                        "registerUser",
                        (
                            self.org_key,
                            user_key,
                            did or f"{DID_PREFIX}{user_id}",
                            display_name or f"User {user_id}",
                        ),
                        self.settings.ledger_register_gas_limit,
                    )
                    logger.info("Ledger user registered", extra={"user_key": Web3.to_hex(user_key)})
                except LedgerRejected as e:
                    if not e.already_exists:
                        raise
            self._known_users.add(user_key)
        return user_key

    async def anchor_log(
        self,
        preimage: str,
        category: Union[LogCategory, str, None] = None,
        user_id: Optional[str] = None,
        ref_uri: str = "",
    ) -> AnchorResult:
        log_hash = ledger_digest(preimage)
        log_type = map_category(category)
        try:
            user_key = await self.ensure_user(user_id or ANONYMOUS_USER)
            receipt = await self._submit(
                "saveLog",
                (self.org_key, user_key, int(log_type), log_hash, ref_uri),
                self.settings.ledger_gas_limit,
            )
        except LedgerUnavailable as e:
            logger.warning(f"Ledger unavailable while anchoring: {e}")
            return AnchorResult.failure(self.mode, str(e), retryable=True)
        except LedgerRejected as e:
            logger.error(f"Ledger rejected anchor: {e}")
            return AnchorResult.failure(self.mode, str(e), retryable=False)

        event = receipt.find_event("LogSaved")
        if event is None:
            logger.error("LogSaved event missing from receipt", extra={"tx_ref": receipt.tx_hash})
            return AnchorResult.failure(
                self.mode, f"LogSaved event missing from receipt {receipt.tx_hash}", retryable=False
            )

        result = AnchorResult(
            success=True,
            mode=self.mode,
            log_id=int(event.args["logId"]),
            tx_ref=receipt.tx_hash,
            block_ref=receipt.block_number,
            gas_used=receipt.gas_used,
            log_hash=Web3.to_hex(log_hash),
            ref_uri=ref_uri,
            anchored_at=datetime.utcnow(),
        )
        logger.info(
            "Log anchored to ledger",
            extra={
                "ledger_log_id": result.log_id,
                "log_type": log_type.name,
                "tx_ref": result.tx_ref,
                "block_ref": result.block_ref,
            },
        )
        return result

    async def verify_log(
        self, log_id: int, preimage: str, expected_digest: Optional[bytes] = None
    ) -> LedgerVerification:
        raw = preimage.encode("utf-8")
        try:
            entry = await self._bounded(self.backend.get_log(self.org_key, log_id), "getLog")
            if entry is None:
                return LedgerVerification(False, self.mode, error="Log not found on ledger")
            verified = await self._bounded(
                self.backend.verify_log(self.org_key, log_id, raw), "verifyLog"
            )
        except LedgerUnavailable as e:
            logger.error(f"Ledger verification error: {e}")
            return LedgerVerification(False, self.mode, error=str(e), retryable=True)
        except LedgerRejected as e:
            logger.error(f"Ledger verification rejected: {e}")
            return LedgerVerification(False, self.mode, error=str(e))
        return LedgerVerification(bool(verified), self.mode, entry=describe_entry(entry))

    async def get_log(self, log_id: int) -> Optional[dict]:
        entry = await self._bounded(self.backend.get_log(self.org_key, log_id), "getLog")
        return describe_entry(entry) if entry else None

    async def get_network_status(self) -> NetworkStatus:
        try:
            chain_id, block_height, gas_price, balance = await self._bounded(
                asyncio.gather(
                    self.backend.chain_id(),
                    self.backend.block_number(),
                    self.backend.gas_price(),
                    self.backend.balance_of(self.signer.address),
                ),
                "network status",
            )
        except (LedgerUnavailable, LedgerRejected) as e:
            logger.error(f"Network status error: {e}")
            return NetworkStatus(
                connected=False,
                mode=self.mode,
                network=self.settings.ledger_network,
                signer_address=self.signer.address,
                error=str(e),
            )
        return NetworkStatus(
            connected=True,
            mode=self.mode,
            network=self.settings.ledger_network,
            chain_id=chain_id,
            block_height=block_height,
            signer_address=self.signer.address,
            signer_balance=str(from_wei(balance, "ether")),
            gas_price_gwei=str(from_wei(gas_price, "gwei")),
            org_key=Web3.to_hex(self.org_key),
        )

    async def estimate_anchor_fee(self, record_count: int = 1) -> FeeEstimate:
        user_key = derive_user_key(self.org_key, self.settings.batch_user_id)
        args = (
            self.org_key,
            user_key,
            int(LedgerLogType.APP),
            ledger_digest("0" * 64),
            batch_ref_uri(record_count),
        )
        try:
            gas = await self._bounded(
                self.backend.estimate_gas(self.signer.address, "saveLog", args), "estimateGas"
            )
            gas_price = await self._bounded(self.backend.gas_price(), "eth_gasPrice")
        except (LedgerUnavailable, LedgerRejected) as e:
            logger.error(f"Gas estimation error: {e}")
            return FeeEstimate(estimated=False, error=str(e))
        cost = gas * gas_price
        return FeeEstimate(
            estimated=True,
            gas_limit=gas,
            gas_price_gwei=str(from_wei(gas_price, "gwei")),
            estimated_cost=str(from_wei(cost, "ether")),
            estimated_cost_wei=cost,
        )

    async def anchoring_history(self, limit: int = 10) -> list[dict]:
        head = await self._bounded(self.backend.block_number(), "eth_blockNumber")
        from_block = max(0, head - self.settings.ledger_history_blocks)
        events = await self._bounded(self.backend.log_events(self.org_key, from_block), "eth_getLogs")
        history = [
            {
                "log_id": event.log_id,
                "log_type": log_type_name(event.log_type),
                "log_hash": Web3.to_hex(event.log_hash),
                "ref_uri": event.ref_uri,
                "tx_ref": event.tx_hash,
                "block_ref": event.block_number,
            }
            for event in events[-limit:]
        ]
        history.reverse()  # Most recent first
        return history


class FallbackLedgerClient(LedgerClient):
    """Schema-compatible stand-in used when no ledger is available."""

    mode = AnchorMode.FALLBACK

    def __init__(self, settings: Settings, reason: str = "ledger not configured"):
        super().__init__(settings)
        self.reason = reason

    async def ensure_organization(self) -> bool:
        return True

    async def ensure_user(
        self, user_id: str, did: Optional[str] = None, display_name: Optional[str] = None
    ) -> bytes:
        return derive_user_key(self.org_key, user_id)

    async def anchor_log(
        self,
        preimage: str,
        category: Union[LogCategory, str, None] = None,
        user_id: Optional[str] = None,
        ref_uri: str = "",
    ) -> AnchorResult:
        log_hash = ledger_digest(preimage)
        tx_digest = hashlib.sha256(log_hash + str(time.time_ns()).encode()).digest()
        tx_ref = "0x" + tx_digest.hex()
        result = AnchorResult(
            success=True,
            mode=self.mode,
            # Local reference only, unique across restarts; never a ledger entry id.
            log_id=int.from_bytes(tx_digest[:6], "big"),
            tx_ref=tx_ref,
            block_ref=0,
            gas_used=0,
            log_hash=Web3.to_hex(log_hash),
            ref_uri=ref_uri,
            anchored_at=datetime.utcnow(),
        )
        logger.info(
            "Fallback anchor recorded (not on ledger)",
            extra={"fallback_log_id": result.log_id, "log_type": map_category(category).name},
        )
        return result

    async def verify_log(
        self, log_id: int, preimage: str, expected_digest: Optional[bytes] = None
    ) -> LedgerVerification:
        # No external source of truth: compare against the digest stamped locally.
        if expected_digest is None:
            return LedgerVerification(False, self.mode, error="No anchored digest to compare")
        return LedgerVerification(ledger_digest(preimage) == expected_digest, self.mode)

    async def get_log(self, log_id: int) -> Optional[dict]:
        return None

    async def get_network_status(self) -> NetworkStatus:
        return NetworkStatus(
            connected=False,
            mode=self.mode,
            network="disconnected",
            org_key=Web3.to_hex(self.org_key),
            error=self.reason,
        )

    async def estimate_anchor_fee(self, record_count: int = 1) -> FeeEstimate:
        return FeeEstimate(estimated=False, error=f"Ledger not available: {self.reason}")

    async def anchoring_history(self, limit: int = 10) -> list[dict]:
        return []


def build_backend(settings: Settings, signer: LedgerSigner) -> LedgerBackend:
    """Create the ledger transport named by settings."""
    kind = settings.ledger_backend.lower()
    if kind == "memory":
        return InProcessLedgerBackend(
            platform_admin=signer.address,
            chain_id=settings.ledger_chain_id or 1337,
            initial_balances={signer.address: to_wei(100, "ether")},
        )
    if kind == "web3":
        if not settings.ledger_rpc_url or not settings.ledger_contract_address:
            raise ValueError("LEDGER_RPC_URL and LEDGER_CONTRACT_ADDRESS are required for the web3 backend")
        return Web3LedgerBackend(settings.ledger_rpc_url, settings.ledger_contract_address)
    raise ValueError(f"Unknown ledger backend: {settings.ledger_backend}")


async def connect_ledger(
    settings: Settings,
    signer: Optional[LedgerSigner] = None,
    backend: Optional[LedgerBackend] = None,
) -> LedgerClient:
    """Select the live or fallback client once, at startup."""
    if not settings.ledger_enabled and backend is None:
        logger.info("Ledger disabled, anchoring in fallback mode")
        return FallbackLedgerClient(settings, reason="ledger disabled")

    try:
        signer = signer or get_signer(settings)
        backend = backend or build_backend(settings, signer)
        client = LiveLedgerClient(backend, signer, settings)
        await client.start()
        return client
    except (LedgerUnavailable, LedgerRejected, ValueError) as e:
        logger.warning(f"Ledger unavailable at startup, anchoring in fallback mode: {e}")
        if backend is not None:
            await backend.close()
        return FallbackLedgerClient(settings, reason=str(e))
