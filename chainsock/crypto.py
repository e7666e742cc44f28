"""
chainsock hashing and hex primitives:

1) Keccak-256 (the pre-standard SHA-3 variant used by the EVM)
2) Function selectors and event topics derived from canonical signatures
3) Strict hex decoding for addresses, role identifiers and keys
"""

from __future__ import annotations

import binascii

from Crypto.Hash import keccak
from Crypto.Random import get_random_bytes
from eth_utils import to_checksum_address

from .errors import ChainSockError, ErrorKind

ADDRESS_LEN = 20
ROLE_LEN = 32
ZERO_ADDRESS = b"\x00" * ADDRESS_LEN


# -----------------
# Keccak
# -----------------
def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def function_selector(signature: str) -> bytes:
    # e.g. "transfer(address,uint256)" -> a9059cbb
    return keccak256(signature.encode("ascii"))[:4]


def event_topic(signature: str) -> bytes:
    return keccak256(signature.encode("ascii"))


# -----------------
# Hex helpers
# -----------------
def strip_0x(s: str) -> str:
    if s[:2] in ("0x", "0X"):
        return s[2:]
    return s


def to_0x(b: bytes) -> str:
    return "0x" + bytes(b).hex()


def _unhex(s: str) -> bytes:
    try:
        return binascii.unhexlify(s)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"not hex: {e}") from e


def decode_address(value: str, what: str = "address") -> bytes:
    """Hex address (0x optional) -> 20 bytes. The zero address is rejected."""
    if not isinstance(value, str):
        raise ChainSockError(ErrorKind.INVALID_ADDRESS, f"{what} must be a hex string")
    raw = strip_0x(value.strip())
    if len(raw) != ADDRESS_LEN * 2:
        raise ChainSockError(ErrorKind.INVALID_ADDRESS, f"invalid {what}(={value})")
    try:
        out = _unhex(raw)
    except ValueError as e:
        raise ChainSockError(ErrorKind.INVALID_ADDRESS, f"invalid {what}(={value}): {e}") from e
    if out == ZERO_ADDRESS:
        raise ChainSockError(ErrorKind.INVALID_ADDRESS, f"empty {what}")
    return out


def decode_role(value: str) -> bytes:
    """Raw hex role (no 0x) -> exactly 32 bytes, right-padded or truncated."""
    if not isinstance(value, str):
        raise ChainSockError(ErrorKind.INVALID_ROLE, "role must be a hex string")
    try:
        raw = _unhex(value.strip())
    except ValueError as e:
        raise ChainSockError(ErrorKind.INVALID_ROLE, f"failed to decode role(={value}): {e}") from e
    return raw[:ROLE_LEN].ljust(ROLE_LEN, b"\x00")


def normalize_private_key(value: str) -> bytes:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("private key is empty")
    raw = _unhex(strip_0x(value.strip()))
    if len(raw) != 32:
        raise ValueError("private key must be 32 bytes")
    return raw


def checksum(address: bytes) -> str:
    return to_checksum_address(to_0x(address))


# -----------------
# Randomness
# -----------------
def random_address() -> str:
    return checksum(get_random_bytes(ADDRESS_LEN))
