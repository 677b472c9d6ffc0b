"""Transports that execute ChainShield program calls.

``Web3LedgerBackend`` talks JSON-RPC to an EVM network where the program is
deployed. ``InProcessLedgerBackend`` runs ``LedgerProgram`` inside the process
with the same transaction semantics (nonces, fees, gas bounds, blocks,
events), for local development and tests.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from eth_utils import keccak, to_wei
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from chainshield_anchor.errors import LedgerRejected, LedgerUnavailable
from chainshield_anchor.ledger.abi import CHAINSHIELD_ABI, EVENT_NAMES, WRITE_FUNCTIONS
from chainshield_anchor.ledger.program import (
    LedgerLogEntry,
    LedgerProgram,
    ProgramEvent,
    ProgramRevert,
)
from chainshield_anchor.ledger.signer import LedgerSigner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionParams:
    """Explicit fee and time bounds for one transaction."""

    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    timeout: float


@dataclass
class TransactionReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    events: list[ProgramEvent] = field(default_factory=list)

    def find_event(self, name: str) -> Optional[ProgramEvent]:
        return next((event for event in self.events if event.name == name), None)


@dataclass(frozen=True)
class LogSavedEvent:
    log_id: int
    user_key: bytes
    log_type: int
    log_hash: bytes
    ref_uri: str
    tx_hash: str
    block_number: int


class LedgerBackend(ABC):
    """Transport for program reads and signed writes."""

    @abstractmethod
    async def chain_id(self) -> int:
        pass

    @abstractmethod
    async def block_number(self) -> int:
        pass

    @abstractmethod
    async def gas_price(self) -> int:
        pass

    @abstractmethod
    async def balance_of(self, address: str) -> int:
        pass

    @abstractmethod
    async def org_exists(self, org_key: bytes) -> bool:
        pass

    @abstractmethod
    async def user_exists(self, org_key: bytes, user_key: bytes) -> bool:
        pass

    @abstractmethod
    async def get_log(self, org_key: bytes, log_id: int) -> Optional[LedgerLogEntry]:
        pass

    @abstractmethod
    async def verify_log(self, org_key: bytes, log_id: int, raw_payload: bytes) -> bool:
        pass

    @abstractmethod
    async def estimate_gas(self, sender: str, function: str, args: tuple) -> int:
        """Estimate gas; raises LedgerRejected when the call would revert."""
        pass

    @abstractmethod
    async def submit(
        self, signer: LedgerSigner, function: str, args: tuple, params: TransactionParams
    ) -> TransactionReceipt:
        """Sign, send and await inclusion of one program call."""
        pass

    @abstractmethod
    async def log_events(self, org_key: bytes, from_block: int) -> list[LogSavedEvent]:
        pass

    async def close(self):
        """Release transport resources."""
        pass


def _calldata_size(args: tuple) -> int:
    """Approximate ABI-encoded calldata size."""
    size = 4
    for arg in args:
        if isinstance(arg, (str, bytes, bytearray)) and not (isinstance(arg, bytes) and len(arg) == 32):
            length = len(arg.encode("utf-8")) if isinstance(arg, str) else len(arg)
            size += 64 + ((length + 31) // 32) * 32
        else:
            size += 32
    return size


class InProcessLedgerBackend(LedgerBackend):
    """Local chain executing the program in memory."""

    BASE_GAS = 21000
    CALLDATA_GAS_PER_BYTE = 16
    STORAGE_GAS = {"saveLog": 66000, "registerOrg": 88000, "registerUser": 66000}
    DEFAULT_STORAGE_GAS = 22100

    def __init__(
        self,
        platform_admin: str,
        chain_id: int = 1337,
        gas_price_gwei: float = 30.0,
        initial_balances: Optional[dict] = None,
    ):
        self.program = LedgerProgram(platform_admin=platform_admin, hash_function=keccak)
        self._chain_id = chain_id
        self._gas_price = to_wei(gas_price_gwei, "gwei")
        self._balances: dict[str, int] = dict(initial_balances or {})
        self._nonces: dict[str, int] = {}
        self._block_number = 0
        self._log_events: dict[bytes, list[LogSavedEvent]] = {}
        self._lock = asyncio.Lock()

    def fund(self, address: str, amount_wei: int):
        """Credit an account on the local chain."""
        self._balances[address] = self._balances.get(address, 0) + amount_wei

    def _gas_for(self, function: str, args: tuple) -> int:
        return (
            self.BASE_GAS
            + self.CALLDATA_GAS_PER_BYTE * _calldata_size(args)
            + self.STORAGE_GAS.get(function, self.DEFAULT_STORAGE_GAS)
        )

    def _execute(self, sender: str, function: str, args: tuple, timestamp: int) -> list[ProgramEvent]:
        method_name = WRITE_FUNCTIONS.get(function)
        if method_name is None:
            raise LedgerRejected(f"Unknown program function {function}")
        method = getattr(self.program, method_name)
        try:
            if function == "saveLog":
                return method(sender, *args, timestamp=timestamp)
            return method(sender, *args)
        except ProgramRevert as e:
            raise LedgerRejected(f"{function} reverted: {e}") from e

    async def chain_id(self) -> int:
        return self._chain_id

    async def block_number(self) -> int:
        return self._block_number

    async def gas_price(self) -> int:
        return self._gas_price

    async def balance_of(self, address: str) -> int:
        return self._balances.get(address, 0)

    async def org_exists(self, org_key: bytes) -> bool:
        return self.program.org_exists(org_key)

    async def user_exists(self, org_key: bytes, user_key: bytes) -> bool:
        return self.program.user_exists(org_key, user_key)

    async def get_log(self, org_key: bytes, log_id: int) -> Optional[LedgerLogEntry]:
        return self.program.get_log(org_key, log_id)

    async def verify_log(self, org_key: bytes, log_id: int, raw_payload: bytes) -> bool:
        return self.program.verify_log(org_key, log_id, raw_payload)

    async def estimate_gas(self, sender: str, function: str, args: tuple) -> int:
        return self._gas_for(function, args)

    async def submit(
        self, signer: LedgerSigner, function: str, args: tuple, params: TransactionParams
    ) -> TransactionReceipt:
        sender = signer.address
        async with self._lock:
            gas_used = self._gas_for(function, args)
            if gas_used > params.gas_limit:
                raise LedgerRejected(
                    f"{function} needs {gas_used} gas, above the limit of {params.gas_limit}"
                )
            if self._gas_price > params.max_fee_per_gas:
                raise LedgerRejected(
                    f"Gas price {self._gas_price} exceeds max fee {params.max_fee_per_gas}"
                )
            fee = gas_used * self._gas_price
            if self._balances.get(sender, 0) < fee:
                raise LedgerRejected(f"Insufficient funds for gas * price: {sender}")

            timestamp = int(time.time())
            events = self._execute(sender, function, args, timestamp)

            nonce = self._nonces.get(sender, 0)
            self._nonces[sender] = nonce + 1
            self._balances[sender] -= fee
            self._block_number += 1
            tx_hash = Web3.to_hex(
                keccak(f"{self._chain_id}:{sender}:{nonce}:{function}:{args!r}".encode("utf-8"))
            )
            for event in events:
                if event.name == "LogSaved":
                    self._log_events.setdefault(event.args["orgId"], []).append(
                        LogSavedEvent(
                            log_id=event.args["logId"],
                            user_key=event.args["userKey"],
                            log_type=event.args["logType"],
                            log_hash=event.args["logHash"],
                            ref_uri=event.args["refURI"],
                            tx_hash=tx_hash,
                            block_number=self._block_number,
                        )
                    )
            return TransactionReceipt(
                tx_hash=tx_hash,
                block_number=self._block_number,
                gas_used=gas_used,
                events=events,
            )

    async def log_events(self, org_key: bytes, from_block: int) -> list[LogSavedEvent]:
        return [e for e in self._log_events.get(org_key, []) if e.block_number >= from_block]


@contextmanager
def _ledger_errors(action: str):
    """Translate transport and revert errors into the anchoring taxonomy."""
    try:
        yield
    except ContractLogicError as e:
        raise LedgerRejected(f"{action} reverted: {e}") from e
    except TimeExhausted as e:
        raise LedgerUnavailable(f"{action} was not included in time: {e}") from e
    except (asyncio.TimeoutError, OSError) as e:
        raise LedgerUnavailable(f"{action} failed to reach the ledger: {e}") from e
    except Web3Exception as e:
        raise LedgerUnavailable(f"{action} failed: {e}") from e


class Web3LedgerBackend(LedgerBackend):
    """JSON-RPC transport to the deployed program."""

    GAS_ESTIMATE_MARGIN = 1.2

    def __init__(self, rpc_url: str, contract_address: str, w3: Optional[AsyncWeb3] = None):
        self._w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=CHAINSHIELD_ABI,
        )

    async def chain_id(self) -> int:
        with _ledger_errors("eth_chainId"):
            return await self._w3.eth.chain_id

    async def block_number(self) -> int:
        with _ledger_errors("eth_blockNumber"):
            return await self._w3.eth.block_number

    async def gas_price(self) -> int:
        with _ledger_errors("eth_gasPrice"):
            return await self._w3.eth.gas_price

    async def balance_of(self, address: str) -> int:
        with _ledger_errors("eth_getBalance"):
            return await self._w3.eth.get_balance(address)

    async def org_exists(self, org_key: bytes) -> bool:
        with _ledger_errors("orgExists"):
            return await self._contract.functions.orgExists(org_key).call()

    async def user_exists(self, org_key: bytes, user_key: bytes) -> bool:
        with _ledger_errors("getUser"):
            user = await self._contract.functions.getUser(org_key, user_key).call()
        return bool(user[2])

    async def get_log(self, org_key: bytes, log_id: int) -> Optional[LedgerLogEntry]:
        with _ledger_errors("getLog"):
            entry = await self._contract.functions.getLog(org_key, log_id).call()
        if not entry or entry[0] == 0:
            return None
        return LedgerLogEntry(
            log_id=int(entry[0]),
            org_key=bytes(entry[1]),
            user_key=bytes(entry[2]),
            log_type=int(entry[3]),
            log_hash=bytes(entry[4]),
            ref_uri=entry[5],
            timestamp=int(entry[6]),
            submitted_by=entry[7],
        )

    async def verify_log(self, org_key: bytes, log_id: int, raw_payload: bytes) -> bool:
        with _ledger_errors("verifyLog"):
            return await self._contract.functions.verifyLog(org_key, log_id, raw_payload).call()

    async def estimate_gas(self, sender: str, function: str, args: tuple) -> int:
        call = getattr(self._contract.functions, function)(*args)
        with _ledger_errors(function):
            return await call.estimate_gas({"from": sender})

    def _decode_events(self, receipt) -> list[ProgramEvent]:
        events = []
        for name in EVENT_NAMES:
            for decoded in getattr(self._contract.events, name)().process_receipt(receipt, errors=DISCARD):
                events.append(ProgramEvent(name, dict(decoded["args"])))
        return events

    async def submit(
        self, signer: LedgerSigner, function: str, args: tuple, params: TransactionParams
    ) -> TransactionReceipt:
        call = getattr(self._contract.functions, function)(*args)
        estimate = await self.estimate_gas(signer.address, function, args)
        if estimate > params.gas_limit:
            raise LedgerRejected(
                f"{function} needs {estimate} gas, above the limit of {params.gas_limit}"
            )
        gas = min(int(estimate * self.GAS_ESTIMATE_MARGIN), params.gas_limit)

        with _ledger_errors(function):
            nonce = await self._w3.eth.get_transaction_count(signer.address, "pending")
            transaction = await call.build_transaction(
                {
                    "from": signer.address,
                    "nonce": nonce,
                    "gas": gas,
                    "maxFeePerGas": params.max_fee_per_gas,
                    "maxPriorityFeePerGas": params.max_priority_fee_per_gas,
                    "chainId": await self._w3.eth.chain_id,
                }
            )
            signed = signer.sign_transaction(transaction)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=params.timeout)

        if receipt["status"] != 1:
            raise LedgerRejected(f"{function} transaction {Web3.to_hex(tx_hash)} reverted")

        return TransactionReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            events=self._decode_events(receipt),
        )

    async def log_events(self, org_key: bytes, from_block: int) -> list[LogSavedEvent]:
        with _ledger_errors("eth_getLogs"):
            logs = await self._contract.events.LogSaved().get_logs(
                from_block=from_block,
                argument_filters={"orgId": org_key},
            )
        return [
            LogSavedEvent(
                log_id=int(log["args"]["logId"]),
                user_key=bytes(log["args"]["userKey"]),
                log_type=int(log["args"]["logType"]),
                log_hash=bytes(log["args"]["logHash"]),
                ref_uri=log["args"]["refURI"],
                tx_hash=Web3.to_hex(log["transactionHash"]),
                block_number=log["blockNumber"],
            )
            for log in logs
        ]

    async def close(self):
        provider = self._w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()
