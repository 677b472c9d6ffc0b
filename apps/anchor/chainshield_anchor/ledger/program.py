"""ChainShield ledger program.

State machine of the on-chain program that stores anchored log hashes. The
deployed contract exposes the same operations through ``abi.CHAINSHIELD_ABI``;
this module executes them in-process for local ledgers and tests.

Every mutating operation runs all of its guards before touching state, so a
call either applies completely or raises ``ProgramRevert`` and leaves the
program unchanged. Log entries are append-only: ``save_log`` is the only
operation that writes them and nothing removes or edits them.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from chainshield_anchor.ledger.categories import LedgerLogType

ZERO_HASH = b"\x00" * 32


class ProgramRevert(Exception):
    """A guard rejected the call; no state was changed."""


@dataclass
class Organization:
    org_key: bytes
    name: str
    admin: str
    next_log_id: int = 1
    paused: bool = False


@dataclass
class LedgerUser:
    org_key: bytes
    user_key: bytes
    did: str
    display_name: str
    exists: bool = True


@dataclass(frozen=True)
class LedgerLogEntry:
    log_id: int
    org_key: bytes
    user_key: bytes
    log_type: int
    log_hash: bytes
    ref_uri: str
    timestamp: int
    submitted_by: str


@dataclass(frozen=True)
class ProgramEvent:
    name: str
    args: dict = field(default_factory=dict)


def _require(condition: bool, message: str):
    if not condition:
        raise ProgramRevert(message)


def _require_key(value: bytes, label: str):
    _require(isinstance(value, (bytes, bytearray)) and len(value) == 32, f"{label} must be 32 bytes")


class LedgerProgram:
    """In-process execution of the ChainShield program."""

    def __init__(self, platform_admin: str, hash_function: Callable[[bytes], bytes]):
        _require(bool(platform_admin), "Platform admin required")
        self.platform_admin = platform_admin
        self._hash = hash_function
        self._paused = False
        self._orgs: dict[bytes, Organization] = {}
        self._org_admins: dict[bytes, set[str]] = {}
        self._users: dict[tuple[bytes, bytes], LedgerUser] = {}
        self._logs: dict[bytes, list[LedgerLogEntry]] = {}

    # Guards

    def _only_platform_admin(self, caller: str):
        _require(caller == self.platform_admin, "Caller is not platform admin")

    def _only_org_admin(self, caller: str, org_key: bytes):
        _require(caller in self._org_admins.get(org_key, set()), "Caller is not org admin")

    def _org(self, org_key: bytes) -> Organization:
        org = self._orgs.get(org_key)
        _require(org is not None, "Org does not exist")
        return org

    def _when_active(self, org: Organization):
        _require(not self._paused, "Program is paused")
        _require(not org.paused, "Org is paused")

    # Platform administration

    def register_org(self, caller: str, org_key: bytes, name: str, admin: str) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        _require_key(org_key, "orgKey")
        _require(org_key not in self._orgs, "Org already exists")
        _require(bool(admin), "Admin address required")
        self._orgs[org_key] = Organization(org_key=org_key, name=name, admin=admin)
        self._org_admins[org_key] = {admin}
        self._logs[org_key] = []
        return [ProgramEvent("OrgRegistered", {"orgId": org_key, "name": name, "admin": admin})]

    def grant_org_admin(self, caller: str, org_key: bytes, account: str) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        self._org(org_key)
        _require(bool(account), "Account required")
        self._org_admins[org_key].add(account)
        return [ProgramEvent("OrgAdminGranted", {"orgId": org_key, "account": account})]

    def revoke_org_admin(self, caller: str, org_key: bytes, account: str) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        self._org(org_key)
        _require(account in self._org_admins[org_key], "Account is not org admin")
        self._org_admins[org_key].discard(account)
        return [ProgramEvent("OrgAdminRevoked", {"orgId": org_key, "account": account})]

    def pause(self, caller: str) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        _require(not self._paused, "Program is paused")
        self._paused = True
        return [ProgramEvent("Paused", {"account": caller})]

    def unpause(self, caller: str) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        _require(self._paused, "Program is not paused")
        self._paused = False
        return [ProgramEvent("Unpaused", {"account": caller})]

    def pause_org(self, caller: str, org_key: bytes) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        org = self._org(org_key)
        _require(not org.paused, "Org is paused")
        org.paused = True
        return [ProgramEvent("OrgPaused", {"orgId": org_key})]

    def unpause_org(self, caller: str, org_key: bytes) -> list[ProgramEvent]:
        self._only_platform_admin(caller)
        org = self._org(org_key)
        _require(org.paused, "Org is not paused")
        org.paused = False
        return [ProgramEvent("OrgUnpaused", {"orgId": org_key})]

    # Organization administration

    def register_user(
        self, caller: str, org_key: bytes, user_key: bytes, did: str, display_name: str
    ) -> list[ProgramEvent]:
        org = self._org(org_key)
        _require_key(user_key, "userKey")
        _require((org_key, user_key) not in self._users, "User already exists")
        self._only_org_admin(caller, org_key)
        self._when_active(org)
        self._users[(org_key, user_key)] = LedgerUser(
            org_key=org_key, user_key=user_key, did=did, display_name=display_name
        )
        return [
            ProgramEvent(
                "UserRegistered",
                {"orgId": org_key, "userId": user_key, "did": did, "displayName": display_name},
            )
        ]

    def update_user(
        self, caller: str, org_key: bytes, user_key: bytes, display_name: str
    ) -> list[ProgramEvent]:
        org = self._org(org_key)
        user = self._users.get((org_key, user_key))
        _require(user is not None, "User does not exist")
        self._only_org_admin(caller, org_key)
        self._when_active(org)
        user.display_name = display_name
        return [
            ProgramEvent("UserUpdated", {"orgId": org_key, "userId": user_key, "displayName": display_name})
        ]

    def save_log(
        self,
        caller: str,
        org_key: bytes,
        user_key: bytes,
        log_type: int,
        log_hash: bytes,
        ref_uri: str,
        timestamp: int,
    ) -> list[ProgramEvent]:
        org = self._org(org_key)
        _require((org_key, user_key) in self._users, "User does not exist")
        _require_key(log_hash, "logHash")
        _require(bytes(log_hash) != ZERO_HASH, "Log hash is zero")
        try:
            log_type = LedgerLogType(log_type)
        except ValueError:
            raise ProgramRevert(f"Invalid log type {log_type}") from None
        self._only_org_admin(caller, org_key)
        self._when_active(org)

        entry = LedgerLogEntry(
            log_id=org.next_log_id,
            org_key=org_key,
            user_key=user_key,
            log_type=int(log_type),
            log_hash=bytes(log_hash),
            ref_uri=ref_uri,
            timestamp=int(timestamp),
            submitted_by=caller,
        )
        self._logs[org_key].append(entry)
        org.next_log_id += 1
        return [
            ProgramEvent(
                "LogSaved",
                {
                    "orgId": org_key,
                    "logId": entry.log_id,
                    "userKey": user_key,
                    "logType": entry.log_type,
                    "logHash": entry.log_hash,
                    "refURI": ref_uri,
                },
            )
        ]

    # Views

    def org_exists(self, org_key: bytes) -> bool:
        return org_key in self._orgs

    def get_org(self, org_key: bytes) -> Optional[Organization]:
        return self._orgs.get(org_key)

    def is_org_admin(self, org_key: bytes, account: str) -> bool:
        return account in self._org_admins.get(org_key, set())

    def is_paused(self, org_key: Optional[bytes] = None) -> bool:
        if self._paused:
            return True
        org = self._orgs.get(org_key) if org_key is not None else None
        return bool(org and org.paused)

    def user_exists(self, org_key: bytes, user_key: bytes) -> bool:
        return (org_key, user_key) in self._users

    def get_user(self, org_key: bytes, user_key: bytes) -> Optional[LedgerUser]:
        return self._users.get((org_key, user_key))

    def log_count(self, org_key: bytes) -> int:
        return len(self._logs.get(org_key, []))

    def get_log(self, org_key: bytes, log_id: int) -> Optional[LedgerLogEntry]:
        entries = self._logs.get(org_key, [])
        if not 1 <= log_id <= len(entries):
            return None
        return entries[log_id - 1]

    def logs(self, org_key: bytes) -> tuple[LedgerLogEntry, ...]:
        return tuple(self._logs.get(org_key, []))

    def verify_log(self, org_key: bytes, log_id: int, raw_payload: bytes) -> bool:
        """Recompute the hash of ``raw_payload`` and compare it to the stored one."""
        entry = self.get_log(org_key, log_id)
        if entry is None:
            return False
        return self._hash(bytes(raw_payload)) == entry.log_hash
