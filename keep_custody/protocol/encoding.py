"""
Canonical encodings shared by the signer side and the verifier side.

All hashing is SHA3-256. Integers and addresses are encoded as 32-byte
big-endian words; dynamic bytes are committed to by their hash. Function
identifiers (used both as ledger permission identifiers and as hook
markers) are the first four bytes of the hash of the entry-point name.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from keep_custody.errors import SelfCallError

WORD_BITS = 256
MAX_WORD = (1 << WORD_BITS) - 1
ADDRESS_BYTES = 20

ZERO_ADDRESS = "0x" + "00" * ADDRESS_BYTES


def sha3(data: bytes) -> bytes:
    return hashlib.sha3_256(data).digest()


def to_address(value: str | bytes | int) -> str:
    """Normalize an address to lowercase `0x` + 40 hex chars."""
    if isinstance(value, bytes):
        if len(value) != ADDRESS_BYTES:
            raise ValueError(f"Address must be {ADDRESS_BYTES} bytes, got {len(value)}")
        return "0x" + value.hex()
    if isinstance(value, int):
        if not 0 <= value < (1 << (8 * ADDRESS_BYTES)):
            raise ValueError(f"Address integer out of range: {value}")
        return "0x" + value.to_bytes(ADDRESS_BYTES, "big").hex()
    if not isinstance(value, str):
        raise ValueError(f"Cannot interpret {type(value).__name__} as an address")
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    if len(text) != 2 * ADDRESS_BYTES:
        raise ValueError(f"Address must be {2 * ADDRESS_BYTES} hex chars: {value!r}")
    bytes.fromhex(text)  # raises ValueError on non-hex
    return "0x" + text


def address_int(address: str) -> int:
    return int(to_address(address), 16)


def address_bytes(address: str) -> bytes:
    return bytes.fromhex(to_address(address)[2:])


def word(value: int) -> bytes:
    """Encode an unsigned integer as a 32-byte big-endian word."""
    if not 0 <= value <= MAX_WORD:
        raise ValueError(f"Value does not fit in a 256-bit word: {value}")
    return value.to_bytes(32, "big")


def address_word(address: str) -> bytes:
    return word(address_int(address))


def parse_hex_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(text)
    raise ValueError(f"Expected hex string or bytes, got {type(value).__name__}")


def parse_word(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("Booleans are not words")
    if isinstance(value, str):
        value = int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    if not isinstance(value, int):
        raise ValueError(f"Expected integer word, got {type(value).__name__}")
    if not 0 <= value <= MAX_WORD:
        raise ValueError(f"Value does not fit in a 256-bit word: {value}")
    return value


def function_id(name: str) -> int:
    """Four-byte identifier of an entry point, as an integer."""
    return int.from_bytes(sha3(name.encode("utf-8"))[:4], "big")


def selector(name: str) -> bytes:
    return sha3(name.encode("utf-8"))[:4]


def public_key_to_address(uncompressed: bytes) -> str:
    """Derive an account address from a 65-byte uncompressed public key."""
    if len(uncompressed) != 65 or uncompressed[0] != 0x04:
        raise ValueError("Expected a 65-byte uncompressed secp256k1 public key")
    return to_address(sha3(uncompressed[1:])[-ADDRESS_BYTES:])


# ════════════════════════════════════════════════════════════════
# Self-call payloads
# ════════════════════════════════════════════════════════════════

# Keep entry points reachable through a payload addressed to the keep
# itself. Arguments must be JSON scalars (ints, address strings, bools).
SELF_CALLABLE = frozenset({
    "grant",
    "revoke",
    "set_quorum",
    "set_transferability",
    "set_uri",
    "set_approval_for_all",
    "safe_transfer_from",
})


def encode_call(method: str, **kwargs: Any) -> bytes:
    """Encode a self-call payload for `method` with keyword arguments."""
    if method not in SELF_CALLABLE:
        raise SelfCallError(f"Method is not self-callable: {method}")
    body = {"method": method, "args": kwargs}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode_call(payload: bytes) -> tuple[str, dict[str, Any]]:
    try:
        body = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SelfCallError(f"Undecodable self-call payload: {exc}") from exc

    if not isinstance(body, dict):
        raise SelfCallError("Self-call payload must be an object")
    method = body.get("method")
    args = body.get("args", {})
    if method not in SELF_CALLABLE:
        raise SelfCallError(f"Method is not self-callable: {method}")
    if not isinstance(args, dict):
        raise SelfCallError("Self-call arguments must be an object")
    return method, args
