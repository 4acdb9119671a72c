"""
Keep Ledger — SQLAlchemy models for balances, authorization state and events.

One database holds one keep. Balances, the quorum, the replay counter and
the event log live side by side so a single transaction covers all of
them: a rolled-back entry point leaves no trace in any table.

The event log is append-only and hash-chained: each entry stores
SHA-256(previous_hash || canonical_json(entry_fields)), so any
retroactive alteration is detectable by re-walking the chain.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


class UInt256(TypeDecorator):
    """Unsigned 256-bit integer stored as its decimal string."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class BalanceDB(Base):
    """Per-account, per-identifier balance."""

    __tablename__ = "balances"

    account = Column(String(42), primary_key=True)
    token_id = Column(UInt256, primary_key=True)
    amount = Column(UInt256, nullable=False, default=0)

    __table_args__ = (
        Index("ix_balance_token", "token_id"),
    )

    def __repr__(self) -> str:
        return f"<Balance {self.account[:10]} id={self.token_id} amount={self.amount}>"


class SupplyDB(Base):
    """Total supply per identifier."""

    __tablename__ = "supplies"

    token_id = Column(UInt256, primary_key=True)
    amount = Column(UInt256, nullable=False, default=0)


class OperatorApprovalDB(Base):
    """Blanket approvals: `operator` may move or burn any of `owner`'s units."""

    __tablename__ = "operator_approvals"

    owner = Column(String(42), primary_key=True)
    operator = Column(String(42), primary_key=True)
    approved = Column(Boolean, nullable=False, default=False)


class TokenSettingsDB(Base):
    """Per-identifier transferability flag and locally stored metadata URI."""

    __tablename__ = "token_settings"

    token_id = Column(UInt256, primary_key=True)
    transferable = Column(Boolean, nullable=False, default=False)
    uri = Column(Text, nullable=True)


class KeepStateDB(Base):
    """
    The keep's authorization state. Exactly one row (id=1).

    quorum == 0 means "not initialized". The cached domain separator is
    only valid while the runtime reports `initial_chain_id`.
    """

    __tablename__ = "keep_state"

    id = Column(Integer, primary_key=True, default=1)
    nonce = Column(UInt256, nullable=False, default=0)
    quorum = Column(UInt256, nullable=False, default=0)
    initial_chain_id = Column(UInt256, nullable=True)
    initial_domain_separator = Column(
        String(66), nullable=True,
        comment="0x-prefixed hex of the setup-time separator",
    )


class EventDB(Base):
    """
    A single emitted event. This table is APPEND-ONLY.

    Entries are written inside the same transaction as the state change
    that produced them, so an aborted entry point never leaves an event.
    """

    __tablename__ = "events"

    sequence_number = Column(
        Integer, primary_key=True, autoincrement=False,
        comment="Monotonically increasing sequence number",
    )
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)
    name = Column(String(50), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    recorded_at = Column(
        String(40), nullable=False,
        comment="ISO-8601 UTC timestamp, stored as text so it hashes stably",
    )

    def __repr__(self) -> str:
        return (
            f"<Event seq={self.sequence_number} "
            f"name={self.name} hash={self.entry_hash[:12]}...>"
        )
