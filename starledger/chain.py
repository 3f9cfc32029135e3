import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .block import GENESIS_DATA, Block, validate
from .db import ChainDB
from .utils import now_ts

logger = logging.getLogger(__name__)

OWNER_FIELD = "address"

LINKAGE = "linkage"
INTEGRITY = "integrity"


@dataclass(frozen=True)
class AuditIssue:
    height: int
    kind: str
    expected: Optional[str]
    actual: Optional[str]

    def to_dict(self) -> Dict[str, object]:
        return {
            "height": self.height,
            "kind": self.kind,
            "expected": self.expected,
            "actual": self.actual,
            "message": str(self),
        }

    def __str__(self) -> str:
        if self.kind == LINKAGE:
            return f"Block {self.height} prev_hash is {self.actual}, not {self.expected}"
        return f"Block {self.height} hash ({self.actual}) is invalid, expected {self.expected}"


class LedgerError(Exception):
    pass


class ChainIntegrityError(LedgerError):
    def __init__(self, issues: List[AuditIssue], message: str = ""):
        self.issues = list(issues)
        if not message:
            message = f"chain failed audit with {len(self.issues)} issue(s): " + "; ".join(
                str(issue) for issue in self.issues
            )
        super().__init__(message)


class AppendError(ChainIntegrityError):
    def __init__(self, block: Block, issues: List[AuditIssue]):
        self.block = block
        super().__init__(
            issues,
            f"block {block.height} rejected, chain audit found {len(issues)} issue(s): "
            + "; ".join(str(issue) for issue in issues),
        )


def audit_blocks(blocks: List[Block]) -> List[AuditIssue]:
    """Check linkage and self-integrity of every block.

    Both checks run for every position, so one pass reports every defect.
    """
    issues: List[AuditIssue] = []
    for index, block in enumerate(blocks):
        if index == 0:
            if block.prev_hash is not None:
                issues.append(AuditIssue(index, LINKAGE, expected=None, actual=block.prev_hash))
        else:
            previous = blocks[index - 1]
            if block.prev_hash != previous.hash:
                issues.append(
                    AuditIssue(index, LINKAGE, expected=previous.hash, actual=block.prev_hash)
                )
        check = validate(block)
        if not check:
            issues.append(AuditIssue(index, INTEGRITY, expected=check.expected, actual=check.actual))
    return issues


class Chain:
    """Append-only block sequence with a single serialized writer.

    ``height`` always equals ``len(blocks) - 1``. Reads copy the block list
    under the writer lock, so they never observe a block mid-append.
    """

    def __init__(self, data_dir: Optional[str] = None, clock: Callable[[], int] = now_ts):
        self.blocks: List[Block] = []
        self.height = -1
        self.clock = clock
        self.data_dir = data_dir
        self.db: Optional[ChainDB] = None
        self._lock = threading.Lock()
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)
            self.db = ChainDB(os.path.join(data_dir, "chain.db"))
            try:
                self._load()
            except Exception:
                self.close()
                raise
        self.initialize()

    def _load(self) -> None:
        loaded: List[Block] = []
        try:
            for data in self.db.iter_blocks():
                loaded.append(Block.from_dict(data))
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainIntegrityError(
                [], f"stored block {len(loaded)} is unreadable: {exc!r}"
            ) from exc
        self.blocks = loaded
        self.height = len(loaded) - 1
        if loaded:
            logger.info("loaded %d blocks from %s", len(loaded), self.data_dir)
        self.ensure_valid()

    def initialize(self) -> Block:
        with self._lock:
            if self.blocks:
                return self.blocks[0]
            return self._append_locked(Block.build(GENESIS_DATA))

    def get_height(self) -> int:
        return self.height

    def __len__(self) -> int:
        return self.height + 1

    def append(self, payload: Any) -> Block:
        with self._lock:
            return self._append_locked(Block.build(payload))

    def _append_locked(self, block: Block) -> Block:
        block.height = len(self.blocks)
        block.timestamp = int(self.clock())
        block.prev_hash = self.blocks[-1].hash if self.blocks else None
        block.seal()

        self.blocks.append(block)
        self.height += 1

        issues = audit_blocks(self.blocks)
        if issues:
            self._rollback(block)
            for issue in issues:
                logger.error("append of block %d aborted: %s", block.height, issue)
            raise AppendError(block, issues)

        if self.db is not None:
            try:
                self.db.put_block(block.hash, block.height, block.to_dict())
            except sqlite3.Error:
                self._rollback(block)
                logger.exception("could not persist block %d", block.height)
                raise

        logger.info("appended block %d %s", block.height, block.hash)
        return block

    def _rollback(self, block: Block) -> None:
        if self.blocks and self.blocks[-1] is block:
            self.blocks.pop()
            self.height -= 1

    def _snapshot(self) -> List[Block]:
        with self._lock:
            return list(self.blocks)

    def audit(self) -> List[AuditIssue]:
        issues = audit_blocks(self._snapshot())
        for issue in issues:
            logger.warning("audit: %s", issue)
        return issues

    def ensure_valid(self) -> None:
        issues = self.audit()
        if issues:
            raise ChainIntegrityError(issues)

    def get_blocks_by_hash(self, block_hash: str) -> List[Block]:
        matches = [block for block in self._snapshot() if block.hash == block_hash]
        if len(matches) > 1:
            logger.warning(
                "hash %s matches %d blocks at heights %s",
                block_hash,
                len(matches),
                [block.height for block in matches],
            )
        return matches

    def get_block_by_height(self, height: int) -> Optional[Block]:
        if height < 0:
            return None
        blocks = self._snapshot()
        if height >= len(blocks):
            return None
        return blocks[height]

    def get_data_by_owner(self, address: str) -> List[Any]:
        # linear scan; an owner index could replace this without changing results
        found = []
        for block in self._snapshot()[1:]:
            try:
                data = block.get_data()
            except ValueError:
                logger.warning("skipping block %d: body does not decode", block.height)
                continue
            if isinstance(data, dict) and data.get(OWNER_FIELD) == address:
                found.append(data)
        return found

    def dump_chain(self) -> List[dict]:
        return [block.to_dict() for block in self._snapshot()]

    def metrics(self) -> dict:
        with self._lock:
            blocks = list(self.blocks)
            stored = self.db.count_blocks() if self.db is not None else None
        return {
            "height": len(blocks) - 1,
            "blocks": len(blocks),
            "tip": blocks[-1].hash if blocks else None,
            "persistent": self.db is not None,
            "stored": stored,
        }

    def close(self) -> None:
        if self.db is not None:
            self.db.close()
            self.db = None
