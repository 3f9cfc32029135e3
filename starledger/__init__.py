from .security import apply_security_defaults

apply_security_defaults()

__version__ = "0.1.0"

__all__ = [
    "crypto",
    "wallet",
    "block",
    "chain",
    "registry",
    "db",
    "rpc",
    "cli",
]
