import json
from dataclasses import dataclass
from typing import Dict

from . import crypto


@dataclass
class Wallet:
    priv: Dict[str, int]

    @staticmethod
    def create() -> "Wallet":
        return Wallet(priv=crypto.generate_keypair())

    @property
    def pub(self) -> Dict[str, int]:
        return crypto.public_key(self.priv)

    @property
    def address(self) -> str:
        return crypto.address_from_pubkey(self.pub)

    def sign_message(self, message: str) -> str:
        return crypto.sign_message(message, self.priv)

    def to_dict(self) -> Dict[str, object]:
        return {"algo": "ecdsa", "private_key": crypto.key_to_hex(self.priv)}

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "Wallet":
        if str(data.get("algo", "ecdsa")) != "ecdsa":
            raise ValueError("Only ecdsa wallets are supported.")
        key = data.get("private_key") or {}
        if "d" not in key:
            raise ValueError("wallet has no private key")
        return Wallet(priv=crypto.key_from_hex(key))

    def save(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @staticmethod
    def load(path: str) -> "Wallet":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Wallet.from_dict(data)
