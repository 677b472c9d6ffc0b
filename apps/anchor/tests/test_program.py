"""Tests for the ledger program state machine."""

import pytest
from eth_utils import keccak

from chainshield_anchor.ledger.categories import LedgerLogType
from chainshield_anchor.ledger.program import LedgerProgram, ProgramRevert

ADMIN = "0xPlatformAdmin"
ORG_ADMIN = "0xOrgAdmin"
OUTSIDER = "0xOutsider"

ORG_A = keccak(b"org-a")
ORG_B = keccak(b"org-b")
USER = keccak(b"user-1")


@pytest.fixture
def program():
    """Program with two organizations and one user in org A."""
    program = LedgerProgram(platform_admin=ADMIN, hash_function=keccak)
    program.register_org(ADMIN, ORG_A, "Org A", ORG_ADMIN)
    program.register_org(ADMIN, ORG_B, "Org B", ORG_ADMIN)
    program.register_user(ORG_ADMIN, ORG_A, USER, "did:chainshield:user-1", "User 1")
    program.register_user(ORG_ADMIN, ORG_B, USER, "did:chainshield:user-1", "User 1")
    return program


def save(program, org_key=ORG_A, payload=b"payload", caller=ORG_ADMIN, log_type=LedgerLogType.AUTH):
    return program.save_log(caller, org_key, USER, int(log_type), keccak(payload), "record://x", 1714564800)


def test_register_org_requires_platform_admin():
    program = LedgerProgram(platform_admin=ADMIN, hash_function=keccak)

    with pytest.raises(ProgramRevert, match="not platform admin"):
        program.register_org(OUTSIDER, ORG_A, "Org A", ORG_ADMIN)
    assert not program.org_exists(ORG_A)


def test_duplicate_org_reverts(program):
    with pytest.raises(ProgramRevert, match="Org already exists"):
        program.register_org(ADMIN, ORG_A, "Org A again", OUTSIDER)
    assert program.get_org(ORG_A).admin == ORG_ADMIN


def test_duplicate_user_reverts(program):
    with pytest.raises(ProgramRevert, match="User already exists"):
        program.register_user(ORG_ADMIN, ORG_A, USER, "did:other", "Other")
    assert program.get_user(ORG_A, USER).display_name == "User 1"


def test_save_log_emits_event_and_stores_entry(program):
    events = save(program, payload=b"content-hash")

    assert [event.name for event in events] == ["LogSaved"]
    assert events[0].args["logId"] == 1
    entry = program.get_log(ORG_A, 1)
    assert entry.log_hash == keccak(b"content-hash")
    assert entry.submitted_by == ORG_ADMIN
    assert entry.log_type == int(LedgerLogType.AUTH)


def test_log_ids_are_sequential_per_org(program):
    assert [save(program, ORG_A)[0].args["logId"] for _ in range(3)] == [1, 2, 3]
    assert save(program, ORG_B)[0].args["logId"] == 1
    assert program.log_count(ORG_A) == 3
    assert program.log_count(ORG_B) == 1


def test_only_org_admin_saves_logs(program):
    with pytest.raises(ProgramRevert, match="not org admin"):
        save(program, caller=OUTSIDER)

    program.grant_org_admin(ADMIN, ORG_A, OUTSIDER)
    assert save(program, caller=OUTSIDER)[0].args["logId"] == 1

    program.revoke_org_admin(ADMIN, ORG_A, OUTSIDER)
    with pytest.raises(ProgramRevert, match="not org admin"):
        save(program, caller=OUTSIDER)


def test_global_pause_blocks_writes(program):
    program.pause(ADMIN)

    with pytest.raises(ProgramRevert, match="Program is paused"):
        save(program)
    assert program.is_paused()

    program.unpause(ADMIN)
    assert save(program)[0].args["logId"] == 1


def test_org_pause_is_scoped(program):
    program.pause_org(ADMIN, ORG_A)

    with pytest.raises(ProgramRevert, match="Org is paused"):
        save(program, ORG_A)
    assert save(program, ORG_B)[0].args["logId"] == 1
    assert program.is_paused(ORG_A)
    assert not program.is_paused(ORG_B)


def test_pause_requires_platform_admin(program):
    with pytest.raises(ProgramRevert):
        program.pause(ORG_ADMIN)
    with pytest.raises(ProgramRevert):
        program.pause_org(ORG_ADMIN, ORG_A)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"log_hash": b"\x00" * 32}, "zero"),
        ({"log_hash": b"short"}, "32 bytes"),
        ({"log_type": 99}, "Invalid log type"),
        ({"user_key": keccak(b"nobody")}, "User does not exist"),
        ({"org_key": keccak(b"unknown-org")}, "Org does not exist"),
    ],
)
def test_invalid_save_log_reverts_without_state_change(program, kwargs, message):
    """A reverted call leaves the log count and next id untouched."""
    args = {
        "caller": ORG_ADMIN,
        "org_key": ORG_A,
        "user_key": USER,
        "log_type": int(LedgerLogType.APP),
        "log_hash": keccak(b"ok"),
        "ref_uri": "",
        "timestamp": 0,
    }
    args.update(kwargs)

    with pytest.raises(ProgramRevert, match=message):
        program.save_log(**args)
    assert program.log_count(ORG_A) == 0
    assert save(program)[0].args["logId"] == 1


def test_update_user(program):
    program.update_user(ORG_ADMIN, ORG_A, USER, "Renamed")

    assert program.get_user(ORG_A, USER).display_name == "Renamed"
    with pytest.raises(ProgramRevert, match="User does not exist"):
        program.update_user(ORG_ADMIN, ORG_A, keccak(b"nobody"), "x")


def test_verify_log_recomputes_hash(program):
    save(program, payload=b"original")

    assert program.verify_log(ORG_A, 1, b"original")
    assert not program.verify_log(ORG_A, 1, b"tampered")
    assert not program.verify_log(ORG_A, 2, b"original")
    assert program.get_log(ORG_A, 0) is None
