"""
Keep Schema — Pydantic models for every value that crosses the unit's boundary.

These models are the canonical data structures for operations, signature
records and emitted events. They are shared by the authorization engine,
the HTTP API and client-side signing helpers, so a value that validates
here encodes identically on both sides of a signature.

References:
    Signed message: (kind, target, value, payload, nonce)
    Domain: ("Keep", "1", chainId, keepAddress)
"""

from __future__ import annotations

import enum
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
)

from keep_custody.protocol.encoding import (
    ZERO_ADDRESS,
    function_id,
    parse_hex_bytes,
    parse_word,
    selector,
    to_address,
)


# ════════════════════════════════════════════════════════════════
# Annotated scalar types
# ════════════════════════════════════════════════════════════════

Address = Annotated[str, BeforeValidator(to_address)]

Word = Annotated[int, BeforeValidator(parse_word)]

HexBytes = Annotated[
    bytes,
    BeforeValidator(parse_hex_bytes),
    PlainSerializer(lambda b: "0x" + b.hex(), return_type=str),
]


# ════════════════════════════════════════════════════════════════
# Reserved identifiers and markers
# ════════════════════════════════════════════════════════════════

EXECUTE_ID = function_id("execute")  # ledger id whose balance is a vote

SIGNATURE_VALID = selector("is_valid_signature")
TOKEN_RECEIVED = selector("on_erc1155_received")
BATCH_TOKEN_RECEIVED = selector("on_erc1155_batch_received")


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class OperationKind(int, enum.Enum):
    """Execution primitives; the integer value is part of the signed message."""

    CALL = 0
    DELEGATECALL = 1
    CREATE = 2
    CREATE2 = 3

    @property
    def is_creation(self) -> bool:
        return self in (OperationKind.CREATE, OperationKind.CREATE2)


class EventName(str, enum.Enum):
    """Names of events appended to the keep's event log."""

    LEDGER_OPENED = "LedgerOpened"
    EXECUTED = "Executed"
    CONTRACT_CREATED = "ContractCreated"
    QUORUM_SET = "QuorumSet"
    TRANSFER_SINGLE = "TransferSingle"
    TRANSFER_BATCH = "TransferBatch"
    APPROVAL_FOR_ALL = "ApprovalForAll"
    TRANSFERABILITY_SET = "TransferabilitySet"
    URI = "URI"
    REDEMPTION_START_SET = "RedemptionStartSet"
    REDEEMED = "Redeemed"


# ════════════════════════════════════════════════════════════════
# Operations and signatures
# ════════════════════════════════════════════════════════════════


class Operation(BaseModel):
    """
    One execution request against the keep's target runtime.

    `target` is ignored by the creation kinds. For CREATE2 the payload is
    the 32-byte placement salt followed by the creation code.
    """

    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    target: Address = ZERO_ADDRESS
    value: Word = 0
    payload: HexBytes = b""

    @classmethod
    def call(cls, target: str, value: int = 0, payload: bytes = b"") -> Operation:
        return cls(kind=OperationKind.CALL, target=target, value=value, payload=payload)

    @classmethod
    def delegate_call(cls, target: str, payload: bytes = b"") -> Operation:
        return cls(kind=OperationKind.DELEGATECALL, target=target, payload=payload)

    @classmethod
    def create(cls, code: bytes, value: int = 0) -> Operation:
        return cls(kind=OperationKind.CREATE, value=value, payload=code)

    @classmethod
    def create2(cls, code: bytes, salt: bytes, value: int = 0) -> Operation:
        if len(salt) != 32:
            raise ValueError("CREATE2 salt must be exactly 32 bytes")
        return cls(kind=OperationKind.CREATE2, value=value, payload=salt + code)

    def split_salt(self) -> tuple[bytes, bytes]:
        """Return (salt, creation code) for a CREATE2 operation."""
        if self.kind != OperationKind.CREATE2:
            raise ValueError("Only CREATE2 operations carry a salt")
        if len(self.payload) < 32:
            raise ValueError("CREATE2 payload is shorter than its 32-byte salt")
        return self.payload[:32], self.payload[32:]


class Signature(BaseModel):
    """A recoverable secp256k1 signature triple, optionally naming its signer."""

    model_config = ConfigDict(frozen=True)

    v: int = Field(ge=0, le=28)
    r: Word
    s: Word
    user: Address | None = None

    @property
    def recovery_id(self) -> int:
        return self.v - 27 if self.v >= 27 else self.v

    def to_bytes(self) -> bytes:
        """r ‖ s ‖ v, the 65-byte form handed to delegated validators."""
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])

    def to_recoverable(self) -> bytes:
        """r ‖ s ‖ recovery id, the 65-byte form used for key recovery."""
        return (
            self.r.to_bytes(32, "big")
            + self.s.to_bytes(32, "big")
            + bytes([self.recovery_id])
        )


# ════════════════════════════════════════════════════════════════
# Events and state snapshots
# ════════════════════════════════════════════════════════════════


class KeepEvent(BaseModel):
    """An event as read back from the hash-chained event log."""

    sequence_number: int
    name: EventName
    data: dict[str, Any]
    entry_hash: str
    previous_hash: str
    recorded_at: str

    @computed_field
    @property
    def short_hash(self) -> str:
        return self.entry_hash[:16]


class KeepStatus(BaseModel):
    """Read-only summary of a keep's authorization state."""

    address: Address
    chain_id: int
    initialized: bool
    nonce: int
    quorum: int
    total_weight: int
    domain_separator: HexBytes
