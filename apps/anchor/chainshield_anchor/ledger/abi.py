"""ABI of the deployed ChainShield program."""


def _param(name: str, type_: str, indexed: bool = None) -> dict:
    param = {"internalType": type_, "name": name, "type": type_}
    if indexed is not None:
        param["indexed"] = indexed
    return param


def _event(name: str, *inputs: dict) -> dict:
    return {"anonymous": False, "inputs": list(inputs), "name": name, "type": "event"}


def _function(name: str, inputs: list, outputs: list = None, mutability: str = "nonpayable") -> dict:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": outputs or [],
        "stateMutability": mutability,
        "type": "function",
    }


_LOG_ENTRY = {
    "components": [
        _param("logId", "uint256"),
        _param("orgId", "bytes32"),
        _param("userKey", "bytes32"),
        _param("logType", "uint8"),
        _param("logHash", "bytes32"),
        _param("refURI", "string"),
        _param("timestamp", "uint64"),
        _param("submittedBy", "address"),
    ],
    "internalType": "struct ChainShield.LogEntry",
    "name": "",
    "type": "tuple",
}

_USER = {
    "components": [
        _param("did", "string"),
        _param("displayName", "string"),
        _param("exists", "bool"),
    ],
    "internalType": "struct ChainShield.User",
    "name": "",
    "type": "tuple",
}

CHAINSHIELD_ABI = [
    {
        "inputs": [_param("platformAdmin", "address")],
        "stateMutability": "nonpayable",
        "type": "constructor",
    },
    # Events
    _event(
        "OrgRegistered",
        _param("orgId", "bytes32", True),
        _param("name", "string", False),
        _param("admin", "address", True),
    ),
    _event("OrgAdminGranted", _param("orgId", "bytes32", True), _param("account", "address", True)),
    _event("OrgAdminRevoked", _param("orgId", "bytes32", True), _param("account", "address", True)),
    _event("Paused", _param("account", "address", False)),
    _event("Unpaused", _param("account", "address", False)),
    _event("OrgPaused", _param("orgId", "bytes32", True)),
    _event("OrgUnpaused", _param("orgId", "bytes32", True)),
    _event(
        "UserRegistered",
        _param("orgId", "bytes32", True),
        _param("userId", "bytes32", True),
        _param("did", "string", False),
        _param("displayName", "string", False),
    ),
    _event(
        "UserUpdated",
        _param("orgId", "bytes32", True),
        _param("userId", "bytes32", True),
        _param("displayName", "string", False),
    ),
    _event(
        "LogSaved",
        _param("orgId", "bytes32", True),
        _param("logId", "uint256", True),
        _param("userKey", "bytes32", True),
        _param("logType", "uint8", False),
        _param("logHash", "bytes32", False),
        _param("refURI", "string", False),
    ),
    # Platform administration
    _function(
        "registerOrg",
        [_param("orgId", "bytes32"), _param("name", "string"), _param("orgAdmin", "address")],
    ),
    _function("grantOrgAdmin", [_param("orgId", "bytes32"), _param("account", "address")]),
    _function("revokeOrgAdmin", [_param("orgId", "bytes32"), _param("account", "address")]),
    _function("pause", []),
    _function("unpause", []),
    _function("pauseOrg", [_param("orgId", "bytes32")]),
    _function("unpauseOrg", [_param("orgId", "bytes32")]),
    # Organization administration
    _function(
        "registerUser",
        [
            _param("orgId", "bytes32"),
            _param("userId", "bytes32"),
            _param("did", "string"),
            _param("displayName", "string"),
        ],
    ),
    _function(
        "updateUser",
        [_param("orgId", "bytes32"), _param("userId", "bytes32"), _param("displayName", "string")],
    ),
    _function(
        "saveLog",
        [
            _param("orgId", "bytes32"),
            _param("userId", "bytes32"),
            _param("logType", "uint8"),
            _param("logHash", "bytes32"),
            _param("refURI", "string"),
        ],
    ),
    # Views
    _function(
        "getLog",
        [_param("orgId", "bytes32"), _param("logId", "uint256")],
        [_LOG_ENTRY],
        "view",
    ),
    _function(
        "getUser",
        [_param("orgId", "bytes32"), _param("userId", "bytes32")],
        [_USER],
        "view",
    ),
    _function("orgExists", [_param("orgId", "bytes32")], [_param("", "bool")], "view"),
    _function(
        "userExists",
        [_param("orgId", "bytes32"), _param("userId", "bytes32")],
        [_param("", "bool")],
        "view",
    ),
    _function("logCount", [_param("orgId", "bytes32")], [_param("", "uint256")], "view"),
    _function(
        "verifyLog",
        [_param("orgId", "bytes32"), _param("logId", "uint256"), _param("rawLog", "bytes")],
        [_param("", "bool")],
        "view",
    ),
]

# Mutating functions and the in-process program method that executes each.
WRITE_FUNCTIONS = {
    "registerOrg": "register_org",
    "grantOrgAdmin": "grant_org_admin",
    "revokeOrgAdmin": "revoke_org_admin",
    "pause": "pause",
    "unpause": "unpause",
    "pauseOrg": "pause_org",
    "unpauseOrg": "unpause_org",
    "registerUser": "register_user",
    "updateUser": "update_user",
    "saveLog": "save_log",
}

EVENT_NAMES = tuple(entry["name"] for entry in CHAINSHIELD_ABI if entry["type"] == "event")
