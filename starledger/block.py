import json
from dataclasses import dataclass
from typing import Any, Optional

from .utils import hex_to_text, json_dumps, sha256, text_to_hex

GENESIS_DATA = {"data": "Genesis Block"}


class _GenesisSentinel:
    """Returned by ``Block.get_data`` for the bootstrap block instead of its payload."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "GENESIS"

    def __reduce__(self) -> str:
        return "GENESIS"


GENESIS = _GenesisSentinel()


def encode_body(payload: Any) -> str:
    return text_to_hex(json_dumps(payload))


def decode_body(body: str) -> Any:
    try:
        return json.loads(hex_to_text(body))
    except (TypeError, ValueError) as exc:
        raise ValueError("block body is not hex encoded JSON") from exc


@dataclass
class Block:
    body: str
    height: int = 0
    timestamp: int = 0
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    def payload_dict(self) -> dict:
        # everything the sealing hash covers; never includes ``hash``
        return {
            "body": self.body,
            "height": self.height,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
        }

    def to_dict(self) -> dict:
        data = self.payload_dict()
        data["hash"] = self.hash
        return data

    @staticmethod
    def from_dict(data: dict) -> "Block":
        return Block(
            body=str(data["body"]),
            height=int(data.get("height", 0)),
            timestamp=int(data.get("timestamp", 0)),
            prev_hash=data.get("prev_hash"),
            hash=data.get("hash"),
        )

    @staticmethod
    def build(payload: Any) -> "Block":
        return Block(body=encode_body(payload))

    def seal(self) -> str:
        self.hash = compute_hash(self)
        return self.hash

    def get_data(self) -> Any:
        if self.height == 0:
            return GENESIS
        return decode_body(self.body)


@dataclass(frozen=True)
class BlockValidation:
    valid: bool
    height: int
    expected: str
    actual: Optional[str]

    @property
    def reason(self) -> str:
        if self.valid:
            return f"Block {self.height} is valid"
        return f"Block {self.height} hash ({self.actual}) is invalid, expected {self.expected}"

    def __bool__(self) -> bool:
        return self.valid


def header_hash_from_dict(data: dict) -> str:
    payload = {
        "body": data["body"],
        "height": data["height"],
        "timestamp": data["timestamp"],
        "prev_hash": data.get("prev_hash"),
    }
    return sha256(json_dumps(payload).encode())


def compute_hash(block: Block) -> str:
    return sha256(json_dumps(block.payload_dict()).encode())


def validate(block: Block) -> BlockValidation:
    """Recompute the sealing hash from the block's current fields and compare.

    The block is only read. A block that was never sealed (``hash is None``)
    is reported as invalid.
    """
    expected = compute_hash(block)
    return BlockValidation(
        valid=block.hash is not None and expected == block.hash,
        height=block.height,
        expected=expected,
        actual=block.hash,
    )
