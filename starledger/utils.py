import hashlib
import json
import time
from typing import Any


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def text_to_hex(text: str) -> str:
    return text.encode("utf-8").hex()


def hex_to_text(data: str) -> str:
    return bytes.fromhex(data).decode("utf-8")


def now_ts() -> int:
    return int(time.time())
