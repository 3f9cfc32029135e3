"""Ownership verification in front of the chain.

A caller asks for a challenge message, signs it with the key behind its
address and submits it together with the star. The submission is accepted
only while the challenge is younger than ``WINDOW_SECONDS`` and the signature
checks out; the star is then appended as ``{"address": ..., "star": ...}``.
Nothing is stored between the two calls: the timestamp inside the message is
the only state.
"""

import logging
from typing import Any, Callable, List, Optional, Tuple

from .block import Block
from .chain import Chain, LedgerError
from .crypto import verify_message

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 300
PURPOSE_TAG = "starRegistry"

Verifier = Callable[[str, str, str], bool]


class VerificationError(LedgerError):
    pass


class MalformedMessage(VerificationError):
    pass


class Expired(VerificationError):
    def __init__(self, elapsed: int, window: int = WINDOW_SECONDS):
        self.elapsed = elapsed
        self.window = window
        super().__init__(f"challenge expired: {elapsed}s elapsed, window is {window}s")


class InvalidSignature(VerificationError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"signature does not match address {address}")


def parse_challenge(message: str) -> Tuple[str, int]:
    if not isinstance(message, str):
        raise MalformedMessage("message must be a string")
    parts = message.split(":")
    if len(parts) != 3:
        raise MalformedMessage("message must look like address:timestamp:" + PURPOSE_TAG)
    address, raw_ts, tag = parts
    if not (raw_ts.isascii() and raw_ts.isdigit()):
        raise MalformedMessage(f"message timestamp {raw_ts!r} is not a number")
    if tag != PURPOSE_TAG:
        raise MalformedMessage(f"unexpected purpose tag {tag!r}")
    return address, int(raw_ts)


class StarRegistry:
    def __init__(
        self,
        chain: Chain,
        verifier: Verifier = verify_message,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.chain = chain
        self.verifier = verifier
        self.clock = clock or chain.clock

    def issue_challenge(self, address: str) -> str:
        if not address or ":" in address:
            raise MalformedMessage("address must be non-empty and contain no ':'")
        return f"{address}:{int(self.clock())}:{PURPOSE_TAG}"

    def verify_and_submit(self, address: str, message: str, signature: str, star: Any) -> Block:
        try:
            msg_address, issued_at = parse_challenge(message)
            if msg_address != address:
                raise MalformedMessage(
                    f"message was issued for {msg_address}, not {address}"
                )

            elapsed = int(self.clock()) - issued_at
            if elapsed < 0:
                raise MalformedMessage("message timestamp is in the future")
            if elapsed >= WINDOW_SECONDS:
                raise Expired(elapsed)

            if not self._signature_ok(message, address, signature):
                raise InvalidSignature(address)
        except VerificationError as exc:
            logger.warning("rejected submission from %s: %s", address, exc)
            raise

        block = self.chain.append({"address": address, "star": star})
        logger.info("registered star for %s at height %d", address, block.height)
        return block

    def _signature_ok(self, message: str, address: str, signature: str) -> bool:
        try:
            return bool(self.verifier(message, address, signature))
        except (TypeError, ValueError):
            logger.debug("verifier raised for %s", address, exc_info=True)
            return False

    # lookups delegated to the chain

    def get_height(self) -> int:
        return self.chain.get_height()

    def get_blocks_by_hash(self, block_hash: str) -> List[Block]:
        return self.chain.get_blocks_by_hash(block_hash)

    def get_block_by_height(self, height: int) -> Optional[Block]:
        return self.chain.get_block_by_height(height)

    def get_stars_by_owner(self, address: str) -> List[Any]:
        return self.chain.get_data_by_owner(address)

    def validate_chain(self) -> List[str]:
        return [str(issue) for issue in self.chain.audit()]
