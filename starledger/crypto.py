from typing import Dict, Tuple

try:
    from cryptography.exceptions import InvalidSignature
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.hazmat.primitives.asymmetric.utils import (
        decode_dss_signature,
        encode_dss_signature,
        Prehashed,
    )
except ImportError as exc:  # pragma: no cover - hard fail when dependency missing
    raise ImportError(
        "cryptography is required. Install with `python3 -m pip install cryptography`."
    ) from exc

from .utils import sha256

CURVE = ec.SECP256K1()
# secp256k1 order (for low-s normalization)
N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
ADDRESS_LENGTH = 40


def _low_s(s: int) -> int:
    return N - s if s > N // 2 else s


# -----------------------------
# ECDSA secp256k1 (cryptography)
# -----------------------------


def generate_keypair() -> Dict[str, int]:
    key = ec.generate_private_key(CURVE)
    nums = key.private_numbers()
    return {"d": nums.private_value, "x": nums.public_numbers.x, "y": nums.public_numbers.y}


def public_key(priv: Dict[str, int]) -> Dict[str, int]:
    if "x" in priv and "y" in priv:
        return {"x": priv["x"], "y": priv["y"]}
    key = ec.derive_private_key(priv["d"], CURVE)
    pub = key.public_key().public_numbers()
    return {"x": pub.x, "y": pub.y}


def sign_digest(digest_hex: str, priv: Dict[str, int]) -> Tuple[int, int]:
    key = ec.derive_private_key(priv["d"], CURVE)
    sig = key.sign(bytes.fromhex(digest_hex), ec.ECDSA(Prehashed(hashes.SHA256())))
    r, s = decode_dss_signature(sig)
    return r, _low_s(s)


def verify_digest(digest_hex: str, r: int, s: int, pub: Dict[str, int]) -> bool:
    if r <= 0 or r >= N or s <= 0 or s >= N:
        return False
    try:
        key = ec.EllipticCurvePublicNumbers(pub["x"], pub["y"], CURVE).public_key()
    except ValueError:
        # point not on the curve
        return False
    try:
        key.verify(
            encode_dss_signature(r, s),
            bytes.fromhex(digest_hex),
            ec.ECDSA(Prehashed(hashes.SHA256())),
        )
    except InvalidSignature:
        return False
    return True


def key_to_hex(key: Dict[str, int]) -> Dict[str, str]:
    return {name: hex(key[name]) for name in ("d", "x", "y") if name in key}


def key_from_hex(key: Dict[str, str]) -> Dict[str, int]:
    return {name: int(key[name], 16) for name in ("d", "x", "y") if name in key}


def address_from_pubkey(pub: Dict[str, int]) -> str:
    payload = f"ecdsa:{pub['x']}:{pub['y']}".encode()
    return sha256(payload)[:ADDRESS_LENGTH]


# -----------------------------
# Message signatures
# -----------------------------
#
# A message signature is "x:y:r:s" in hex. The public key travels with the
# signature and must hash to the claimed address.


def message_digest(message: str) -> str:
    return sha256(message.encode("utf-8"))


def sign_message(message: str, priv: Dict[str, int]) -> str:
    pub = public_key(priv)
    r, s = sign_digest(message_digest(message), priv)
    return f"{pub['x']:x}:{pub['y']:x}:{r:x}:{s:x}"


def parse_signature(signature: str) -> Tuple[Dict[str, int], int, int]:
    parts = signature.split(":")
    if len(parts) != 4:
        raise ValueError("signature must have four hex fields")
    x, y, r, s = (int(part, 16) for part in parts)
    return {"x": x, "y": y}, r, s


def verify_message(message: str, address: str, signature: str) -> bool:
    try:
        pub, r, s = parse_signature(signature)
    except (AttributeError, ValueError):
        return False
    if address_from_pubkey(pub) != address:
        return False
    return verify_digest(message_digest(message), r, s, pub)
