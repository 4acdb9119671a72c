"""
Keep Ledger Service — multi-identifier balances plus an append-only event log.

This service is the repository the authorization engine is injected with.
It provides:
- Per-account, per-identifier balances and per-identifier supply
- Operator approvals, transferability flags and local metadata URIs
- The keep's authorization state row (nonce, quorum, cached separator)
- Append-only, SHA-256 hash-chained event recording and verification

Every method runs inside `transaction()`. Calls made while a transaction
is already open join it; a standalone call opens and commits its own.
That is what lets an entry point compose many ledger writes into one
indivisible read-modify-write unit.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import Engine, create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from keep_custody.errors import (
    InsufficientBalance,
    LedgerIntegrityError,
    NotAuthorized,
    TransferDisabled,
    UnsafeRecipient,
)
from keep_custody.ledger.models import (
    Base,
    BalanceDB,
    EventDB,
    KeepStateDB,
    OperatorApprovalDB,
    SupplyDB,
    TokenSettingsDB,
)
from keep_custody.protocol.encoding import ZERO_ADDRESS, to_address
from keep_custody.protocol.schema import EventName

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Genesis Constants
# ════════════════════════════════════════════════════════════════

GENESIS_HASH = "0" * 64  # The "previous hash" for the first entry in the chain

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///:memory:"


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    if not database_url.startswith("sqlite"):
        return {}
    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite:"):
        # one shared connection, otherwise every session sees a fresh database
        kwargs["poolclass"] = StaticPool
    return kwargs


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN itself, which breaks SAVEPOINT nesting; emit it ourselves
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class LedgerService:
    """
    Keep Ledger Service — the persistent record of one keep.

    Usage:
        ledger = LedgerService("sqlite+pysqlite:///keep.db")
        ledger.initialize()  # Create tables, seed state row and genesis event

        with ledger.transaction():
            ledger.mint(operator, account, token_id, 1)
            ledger.state().quorum = 1
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL) -> None:
        """
        Initialize the ledger service.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
        """
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=False, **_engine_kwargs(database_url))
        if database_url.startswith("sqlite"):
            _enable_sqlite_savepoints(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._session: Session | None = None

    def initialize(self) -> None:
        """
        Create the schema, the state row and the genesis event.

        Safe to call on an already-initialized database.
        """
        Base.metadata.create_all(self.engine)

        with self.transaction() as session:
            if session.get(KeepStateDB, 1) is None:
                session.add(KeepStateDB(id=1, nonce=0, quorum=0))

            genesis = session.get(EventDB, 0)
            if genesis is None:
                genesis = self._build_event(
                    sequence_number=0,
                    previous_hash=GENESIS_HASH,
                    name=EventName.LEDGER_OPENED.value,
                    data={"message": "Genesis of the keep event log"},
                )
                session.add(genesis)
                logger.info("Genesis event created: hash=%s", genesis.entry_hash[:16])

    # ── Unit of work ────────────────────────────────────────────

    @property
    def in_transaction(self) -> bool:
        return self._session is not None

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Open a unit of work, or join the one already open.

        The outermost transaction commits when its block exits normally
        and rolls back if the block raises.
        """
        if self._session is not None:
            yield self._session
            return

        session = self.SessionLocal()
        self._session = session
        try:
            with session.begin():
                yield session
        finally:
            self._session = None
            session.close()

    @contextmanager
    def savepoint(self) -> Iterator[Session]:
        """
        Nest a savepoint inside the current unit of work (opening one if
        needed).

        If the block raises, only the writes and events made inside it are
        discarded; the enclosing transaction stays usable. Runtime call
        frames run inside one of these.
        """
        with self.transaction() as session:
            with session.begin_nested():
                yield session

    # ── Authorization state ─────────────────────────────────────

    def state(self) -> KeepStateDB:
        """
        The keep's state row. Mutate it only inside `transaction()`;
        changes are persisted when the outermost transaction commits.
        """
        with self.transaction() as session:
            row = session.get(KeepStateDB, 1)
            if row is None:
                raise LedgerIntegrityError(
                    "No keep state row found. Call initialize() first."
                )
            return row

    # ── Balances ────────────────────────────────────────────────

    def balance_of(self, account: str, token_id: int) -> int:
        with self.transaction() as session:
            row = session.get(BalanceDB, (to_address(account), token_id))
            return row.amount if row is not None else 0

    def total_supply(self, token_id: int) -> int:
        with self.transaction() as session:
            row = session.get(SupplyDB, token_id)
            return row.amount if row is not None else 0

    def mint(self, operator: str, to: str, token_id: int, amount: int) -> None:
        to = to_address(to)
        if to == ZERO_ADDRESS:
            raise UnsafeRecipient("Cannot mint to the zero address")

        with self.transaction() as session:
            self._credit(session, to, token_id, amount)
            supply = self._supply_row(session, token_id)
            supply.amount += amount
            self.append_event(EventName.TRANSFER_SINGLE, {
                "operator": to_address(operator),
                "from": ZERO_ADDRESS,
                "to": to,
                "id": token_id,
                "amount": amount,
            })

        logger.info("Minted: id=%d amount=%d to=%s", token_id, amount, to[:10])

    def burn(self, operator: str, account: str, token_id: int, amount: int) -> None:
        account = to_address(account)
        with self.transaction() as session:
            self._debit(session, account, token_id, amount)
            supply = self._supply_row(session, token_id)
            supply.amount -= amount
            self.append_event(EventName.TRANSFER_SINGLE, {
                "operator": to_address(operator),
                "from": account,
                "to": ZERO_ADDRESS,
                "id": token_id,
                "amount": amount,
            })

        logger.info("Burned: id=%d amount=%d from=%s", token_id, amount, account[:10])

    def transfer(
        self,
        operator: str,
        sender: str,
        to: str,
        token_ids: list[int],
        amounts: list[int],
    ) -> None:
        """
        Move units between accounts.

        Raises:
            NotAuthorized: operator is neither the owner nor approved.
            TransferDisabled: an identifier is not transferable.
            InsufficientBalance: the sender lacks units.
            UnsafeRecipient: the recipient is the zero address.
        """
        operator, sender, to = to_address(operator), to_address(sender), to_address(to)
        if len(token_ids) != len(amounts):
            raise ValueError("token_ids and amounts must have the same length")
        if to == ZERO_ADDRESS:
            raise UnsafeRecipient("Cannot transfer to the zero address")

        with self.transaction() as session:
            if operator != sender and not self.is_approved_for_all(sender, operator):
                raise NotAuthorized(
                    f"{operator} is not approved to move units of {sender}"
                )
            for token_id, amount in zip(token_ids, amounts):
                if not self.transferable(token_id):
                    raise TransferDisabled(f"Identifier {token_id} is not transferable")
                self._debit(session, sender, token_id, amount)
                self._credit(session, to, token_id, amount)

            if len(token_ids) == 1:
                self.append_event(EventName.TRANSFER_SINGLE, {
                    "operator": operator, "from": sender, "to": to,
                    "id": token_ids[0], "amount": amounts[0],
                })
            else:
                self.append_event(EventName.TRANSFER_BATCH, {
                    "operator": operator, "from": sender, "to": to,
                    "ids": list(token_ids), "amounts": list(amounts),
                })

    # ── Approvals, transferability, metadata ────────────────────

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        with self.transaction() as session:
            row = session.get(OperatorApprovalDB, (to_address(owner), to_address(operator)))
            return bool(row and row.approved)

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        owner, operator = to_address(owner), to_address(operator)
        with self.transaction() as session:
            row = session.get(OperatorApprovalDB, (owner, operator))
            if row is None:
                row = OperatorApprovalDB(owner=owner, operator=operator, approved=approved)
                session.add(row)
            row.approved = approved
            self.append_event(EventName.APPROVAL_FOR_ALL, {
                "owner": owner, "operator": operator, "approved": approved,
            })

    def transferable(self, token_id: int) -> bool:
        with self.transaction() as session:
            row = session.get(TokenSettingsDB, token_id)
            return bool(row and row.transferable)

    def set_transferable(self, operator: str, token_id: int, on: bool) -> None:
        with self.transaction() as session:
            self._settings_row(session, token_id).transferable = on
            self.append_event(EventName.TRANSFERABILITY_SET, {
                "operator": to_address(operator), "id": token_id, "on": on,
            })

    def token_uri(self, token_id: int) -> str | None:
        with self.transaction() as session:
            row = session.get(TokenSettingsDB, token_id)
            return row.uri if row is not None else None

    def set_token_uri(self, token_id: int, uri: str) -> None:
        with self.transaction() as session:
            self._settings_row(session, token_id).uri = uri
            self.append_event(EventName.URI, {"uri": uri, "id": token_id})

    # ── Event log ───────────────────────────────────────────────

    def append_event(self, name: EventName | str, data: dict[str, Any]) -> EventDB:
        """
        Append an event to the hash-chained log.

        This is the ONLY write to the events table. There is no update,
        no delete. The entry is only durable if the enclosing transaction
        commits.

        Raises:
            LedgerIntegrityError: If no genesis event exists.
        """
        name = name.value if isinstance(name, EventName) else name
        with self.transaction() as session:
            last_entry = session.execute(
                select(EventDB).order_by(EventDB.sequence_number.desc()).limit(1)
            ).scalar_one_or_none()

            if last_entry is None:
                raise LedgerIntegrityError(
                    "Cannot append: no genesis event found. Call initialize() first."
                )

            entry = self._build_event(
                sequence_number=last_entry.sequence_number + 1,
                previous_hash=last_entry.entry_hash,
                name=name,
                data=_jsonable(data),
            )
            session.add(entry)
            session.flush()

            logger.debug(
                "Event appended: seq=%d name=%s hash=%s",
                entry.sequence_number, name, entry.entry_hash[:16],
            )
            return entry

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Verify the integrity of the entire event chain.

        Walks every entry from genesis forward, recomputing each hash and
        checking linkage to the previous entry.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.transaction() as session:
            entries = session.execute(
                select(EventDB).order_by(EventDB.sequence_number.asc())
            ).scalars().all()

            if not entries:
                return False, 0, "No entries found in event log"

            first = entries[0]
            if first.sequence_number != 0:
                return False, 0, f"First entry has sequence {first.sequence_number}, expected 0"

            if first.previous_hash != GENESIS_HASH:
                return False, 0, "Genesis event has incorrect previous_hash"

            for i, entry in enumerate(entries):
                expected_hash = self._compute_hash(
                    sequence_number=entry.sequence_number,
                    previous_hash=entry.previous_hash,
                    name=entry.name,
                    data=entry.data,
                    recorded_at=entry.recorded_at,
                )

                if entry.entry_hash != expected_hash:
                    return (
                        False, i,
                        f"Hash mismatch at sequence {entry.sequence_number}: "
                        f"stored={entry.entry_hash[:16]}... "
                        f"computed={expected_hash[:16]}..."
                    )

                if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                    return (
                        False, i,
                        f"Chain break at sequence {entry.sequence_number}: "
                        f"previous_hash does not match prior entry's hash"
                    )

            return (
                True, len(entries),
                f"Chain verified: {len(entries)} entries, integrity intact"
            )

    def get_latest_events(self, limit: int = 50) -> list[EventDB]:
        """Retrieve the most recent events, newest first."""
        with self.transaction() as session:
            return list(
                session.execute(
                    select(EventDB)
                    .order_by(EventDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_events_by_name(
        self,
        name: EventName | str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EventDB]:
        """Retrieve events by name, oldest first."""
        name = name.value if isinstance(name, EventName) else name
        with self.transaction() as session:
            return list(
                session.execute(
                    select(EventDB)
                    .where(EventDB.name == name)
                    .order_by(EventDB.sequence_number.asc())
                    .limit(limit)
                    .offset(offset)
                ).scalars().all()
            )

    def get_event_count(self) -> int:
        """Return the total number of entries in the event log."""
        with self.transaction() as session:
            result = session.execute(select(func.count()).select_from(EventDB))
            return result.scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    def _balance_row(self, session: Session, account: str, token_id: int) -> BalanceDB:
        row = session.get(BalanceDB, (account, token_id))
        if row is None:
            row = BalanceDB(account=account, token_id=token_id, amount=0)
            session.add(row)
            session.flush()
        return row

    def _supply_row(self, session: Session, token_id: int) -> SupplyDB:
        row = session.get(SupplyDB, token_id)
        if row is None:
            row = SupplyDB(token_id=token_id, amount=0)
            session.add(row)
            session.flush()
        return row

    def _settings_row(self, session: Session, token_id: int) -> TokenSettingsDB:
        row = session.get(TokenSettingsDB, token_id)
        if row is None:
            row = TokenSettingsDB(token_id=token_id, transferable=False)
            session.add(row)
            session.flush()
        return row

    def _credit(self, session: Session, account: str, token_id: int, amount: int) -> None:
        if amount < 0:
            raise ValueError("Amount must be non-negative")
        row = self._balance_row(session, account, token_id)
        row.amount += amount

    def _debit(self, session: Session, account: str, token_id: int, amount: int) -> None:
        if amount < 0:
            raise ValueError("Amount must be non-negative")
        row = self._balance_row(session, account, token_id)
        if row.amount < amount:
            raise InsufficientBalance(
                f"{account} holds {row.amount} of id {token_id}, needs {amount}"
            )
        row.amount -= amount

    def _build_event(
        self,
        sequence_number: int,
        previous_hash: str,
        name: str,
        data: dict[str, Any],
    ) -> EventDB:
        recorded_at = datetime.now(timezone.utc).isoformat()
        entry_hash = self._compute_hash(
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            name=name,
            data=data,
            recorded_at=recorded_at,
        )
        return EventDB(
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            name=name,
            data=data,
            recorded_at=recorded_at,
        )

    @staticmethod
    def _compute_hash(
        sequence_number: int,
        previous_hash: str,
        name: str,
        data: dict[str, Any],
        recorded_at: str,
    ) -> str:
        """
        Compute the SHA-256 hash for an event entry.

        Hash = SHA-256(previous_hash || canonical_json(entry_fields))
        """
        hashable = {
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "name": name,
            "data": data,
            "recorded_at": recorded_at,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (previous_hash + canonical).encode("utf-8")
        ).hexdigest()
