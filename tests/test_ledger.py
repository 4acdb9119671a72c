"""
Tests for the keep ledger — balances, transfers and the hash-chained event log.

Validates:
- Genesis and append-only hash chain
- Tamper detection
- Transferability gating, approvals and receiver hooks
- Events are rolled back with a failed entry point or savepoint
"""

from __future__ import annotations

import pytest

from keep_custody.errors import (
    InsufficientBalance,
    NotAuthorized,
    TransferDisabled,
    UnsafeRecipient,
)
from keep_custody.ledger.models import EventDB
from keep_custody.ledger.service import GENESIS_HASH, LedgerService
from keep_custody.protocol.encoding import ZERO_ADDRESS, to_address
from keep_custody.protocol.schema import BATCH_TOKEN_RECEIVED, TOKEN_RECEIVED, EventName

from conftest import OUTSIDER

ALICE = to_address(0xA11CE)
BOB = to_address(0xB0B)


class TestEventChain:
    def setup_method(self):
        self.ledger = LedgerService()
        self.ledger.initialize()

    def test_genesis(self):
        events = self.ledger.get_latest_events()
        assert len(events) == 1
        assert events[0].sequence_number == 0
        assert events[0].previous_hash == GENESIS_HASH
        assert events[0].name == EventName.LEDGER_OPENED.value

    def test_initialize_is_idempotent(self):
        self.ledger.initialize()
        assert self.ledger.get_event_count() == 1

    def test_chain_links(self):
        self.ledger.mint(ALICE, ALICE, 1, 5)
        self.ledger.mint(ALICE, BOB, 1, 5)
        events = list(reversed(self.ledger.get_latest_events()))
        for prev, entry in zip(events, events[1:]):
            assert entry.previous_hash == prev.entry_hash
            assert entry.sequence_number == prev.sequence_number + 1

    def test_verify_chain(self):
        self.ledger.mint(ALICE, ALICE, 1, 5)
        is_valid, verified, _ = self.ledger.verify_chain()
        assert is_valid
        assert verified == 2

    def test_tamper_detected(self):
        self.ledger.mint(ALICE, ALICE, 1, 5)
        with self.ledger.transaction() as session:
            row = session.get(EventDB, 1)
            row.data = {**row.data, "amount": 500}

        is_valid, _, message = self.ledger.verify_chain()
        assert not is_valid
        assert "Hash mismatch" in message

    def test_events_by_name(self):
        self.ledger.mint(ALICE, ALICE, 1, 5)
        self.ledger.set_approval_for_all(ALICE, BOB, True)
        approvals = self.ledger.get_events_by_name(EventName.APPROVAL_FOR_ALL)
        assert len(approvals) == 1
        assert approvals[0].data == {"owner": ALICE, "operator": BOB, "approved": True}

    def test_transaction_rolls_back_events(self):
        with pytest.raises(InsufficientBalance):
            with self.ledger.transaction():
                self.ledger.mint(ALICE, ALICE, 1, 5)
                self.ledger.burn(ALICE, ALICE, 1, 6)
        assert self.ledger.get_event_count() == 1
        assert self.ledger.balance_of(ALICE, 1) == 0

    def test_savepoint_discards_only_inner_writes(self):
        with self.ledger.transaction():
            self.ledger.mint(ALICE, ALICE, 1, 5)
            with pytest.raises(InsufficientBalance):
                with self.ledger.savepoint():
                    self.ledger.mint(ALICE, BOB, 1, 3)
                    self.ledger.burn(ALICE, BOB, 1, 4)
            self.ledger.mint(ALICE, ALICE, 1, 1)

        assert self.ledger.balance_of(ALICE, 1) == 6
        assert self.ledger.balance_of(BOB, 1) == 0
        assert self.ledger.total_supply(1) == 6
        assert self.ledger.get_event_count() == 3
        is_valid, verified, message = self.ledger.verify_chain()
        assert is_valid, message
        assert verified == 3

    def test_savepoint_opens_a_transaction_when_none_is_open(self):
        with self.ledger.savepoint():
            self.ledger.mint(ALICE, ALICE, 1, 5)
        assert not self.ledger.in_transaction
        assert self.ledger.balance_of(ALICE, 1) == 5


class TestBalances:
    def setup_method(self):
        self.ledger = LedgerService()
        self.ledger.initialize()

    def test_mint_and_burn_track_supply(self):
        self.ledger.mint(ALICE, ALICE, 3, 10)
        self.ledger.burn(ALICE, ALICE, 3, 4)
        assert self.ledger.balance_of(ALICE, 3) == 6
        assert self.ledger.total_supply(3) == 6

    def test_large_amounts(self):
        amount = 2**200
        self.ledger.mint(ALICE, ALICE, 3, amount)
        assert self.ledger.balance_of(ALICE, 3) == amount

    def test_mint_to_zero_address(self):
        with pytest.raises(UnsafeRecipient):
            self.ledger.mint(ALICE, ZERO_ADDRESS, 1, 1)

    def test_burn_more_than_balance(self):
        with pytest.raises(InsufficientBalance):
            self.ledger.burn(ALICE, ALICE, 1, 1)


class RecipientContract:
    def __init__(self, accept: bool) -> None:
        self.accept = accept
        self.received: list[tuple] = []

    def on_erc1155_received(self, operator, sender, token_id, amount, data) -> bytes:
        self.received.append((operator, sender, token_id, amount))
        return TOKEN_RECEIVED if self.accept else b""

    def on_erc1155_batch_received(self, operator, sender, token_ids, amounts, data) -> bytes:
        self.received.append((operator, sender, tuple(token_ids), tuple(amounts)))
        return BATCH_TOKEN_RECEIVED if self.accept else b""


class TestTransfers:
    @pytest.fixture(autouse=True)
    def _setup(self, initialized_keep):
        self.keep = initialized_keep
        self.admin = initialized_keep.address
        self.keep.grant(self.admin, ALICE, 5, 10)
        self.keep.grant(self.admin, ALICE, 6, 10)

    def test_transfer_disabled_by_default(self):
        with pytest.raises(TransferDisabled):
            self.keep.safe_transfer_from(ALICE, ALICE, BOB, 5, 1)
        assert self.keep.balance_of(ALICE, 5) == 10

    def test_transfer_after_enabling(self):
        self.keep.set_transferability(self.admin, 5, True)
        self.keep.safe_transfer_from(ALICE, ALICE, BOB, 5, 4)
        assert self.keep.balance_of(ALICE, 5) == 6
        assert self.keep.balance_of(BOB, 5) == 4
        event = self.keep.events(limit=1)[0]
        assert event.name == EventName.TRANSFER_SINGLE
        assert event.data["from"] == ALICE

    def test_transfer_requires_owner_or_operator(self):
        self.keep.set_transferability(self.admin, 5, True)
        with pytest.raises(NotAuthorized):
            self.keep.safe_transfer_from(OUTSIDER, ALICE, BOB, 5, 1)

        self.keep.set_approval_for_all(ALICE, OUTSIDER, True)
        self.keep.safe_transfer_from(OUTSIDER, ALICE, BOB, 5, 1)
        assert self.keep.balance_of(BOB, 5) == 1

    def test_batch_transfer(self):
        self.keep.set_transferability(self.admin, 5, True)
        self.keep.set_transferability(self.admin, 6, True)
        self.keep.safe_batch_transfer_from(ALICE, ALICE, BOB, [5, 6], [1, 2])
        assert self.keep.balance_of(BOB, 6) == 2
        assert self.keep.events(limit=1)[0].name == EventName.TRANSFER_BATCH

    def test_batch_is_all_or_nothing(self):
        self.keep.set_transferability(self.admin, 5, True)
        with pytest.raises(TransferDisabled):
            self.keep.safe_batch_transfer_from(ALICE, ALICE, BOB, [5, 6], [1, 1])
        assert self.keep.balance_of(BOB, 5) == 0

    def test_contract_recipient_must_acknowledge(self, runtime):
        self.keep.set_transferability(self.admin, 5, True)
        refuser = to_address(0x7EF)
        runtime.install(refuser, RecipientContract(accept=False))

        with pytest.raises(UnsafeRecipient):
            self.keep.safe_transfer_from(ALICE, ALICE, refuser, 5, 1)
        assert self.keep.balance_of(ALICE, 5) == 10

    def test_contract_recipient_acknowledges_batch(self, runtime):
        for token_id in (5, 6):
            self.keep.set_transferability(self.admin, token_id, True)
        acceptor = to_address(0xACC)
        contract = RecipientContract(accept=True)
        runtime.install(acceptor, contract)

        self.keep.safe_batch_transfer_from(ALICE, ALICE, acceptor, [5, 6], [1, 1])
        assert contract.received == [(ALICE, ALICE, (5, 6), (1, 1))]

    def test_grant_to_refusing_contract(self, runtime):
        refuser = to_address(0x7EF)
        runtime.install(refuser, RecipientContract(accept=False))
        with pytest.raises(UnsafeRecipient):
            self.keep.grant(self.admin, refuser, 5, 1)
        assert self.keep.total_supply(5) == 10
