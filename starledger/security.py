import os


_LEVELS = {"standard", "hardened", "paranoid"}

_DEFAULTS = {
    "hardened": {
        "STARLEDGER_RPC_RATE": "60",
        "STARLEDGER_RPC_MAX": "262144",
    },
    "paranoid": {
        "STARLEDGER_RPC_RATE": "30",
        "STARLEDGER_RPC_MAX": "65536",
        "STARLEDGER_RPC_LOCAL_ONLY": "1",
    },
}

_REQUIREMENTS = {
    "hardened": ["STARLEDGER_RPC_TOKEN"],
    "paranoid": ["STARLEDGER_RPC_TOKEN"],
}


def get_security_level() -> str:
    level = os.getenv("STARLEDGER_SECURITY_LEVEL", "standard").strip().lower()
    if level not in _LEVELS:
        return "standard"
    return level


def apply_security_defaults() -> str:
    level = get_security_level()
    defaults = _DEFAULTS.get(level, {})
    for key, value in defaults.items():
        os.environ.setdefault(key, str(value))
    return level


def enforce_security_requirements(host: str = "") -> None:
    level = get_security_level()
    required = _REQUIREMENTS.get(level, [])
    missing = [key for key in required if not os.getenv(key)]
    if missing:
        raise RuntimeError(
            f"Security level '{level}' requires env vars: {', '.join(missing)}"
        )
    local_only = os.getenv("STARLEDGER_RPC_LOCAL_ONLY", "0") == "1"
    if local_only and host not in ("127.0.0.1", "localhost", "::1"):
        raise RuntimeError(
            f"Security level '{level}' only allows RPC on localhost, not {host!r}"
        )
