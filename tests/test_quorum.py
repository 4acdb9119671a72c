"""
Tests for the Membership & Quorum Guard and the privileged entry points.

Validates:
- grant / revoke / set_quorum authorization
- 0 < quorum <= total weight after every operation (randomized)
- A revoke below quorum aborts with weight unchanged
- Function-scoped permission identifiers
"""

from __future__ import annotations

import random

import pytest

from keep_custody.authority.permissions import PermissionDecision
from keep_custody.errors import (
    InvalidThreshold,
    KeepError,
    NotAuthorized,
    QuorumExceedsSupply,
)
from keep_custody.protocol.encoding import encode_call, function_id, to_address
from keep_custody.protocol.schema import EXECUTE_ID, EventName, Operation

from conftest import OUTSIDER, RELAYER


class TestGrantRevoke:
    @pytest.fixture(autouse=True)
    def _setup(self, initialized_keep, signers):
        self.keep = initialized_keep
        self.signers = signers

    def test_grant_raises_total_weight(self):
        self.keep.grant(self.keep.address, OUTSIDER, EXECUTE_ID, 1)
        assert self.keep.total_weight() == 4
        assert self.keep.guard.is_member(OUTSIDER)

    def test_weight_is_binary(self):
        self.keep.grant(self.keep.address, self.signers[1], EXECUTE_ID, 5)
        assert self.keep.balance_of(self.signers[1], EXECUTE_ID) == 6
        assert self.keep.guard.is_member(self.signers[1])

    def test_outsider_cannot_grant(self):
        with pytest.raises(NotAuthorized):
            self.keep.grant(OUTSIDER, OUTSIDER, EXECUTE_ID, 1)
        assert self.keep.total_weight() == 3

    def test_member_cannot_grant_directly(self):
        with pytest.raises(NotAuthorized):
            self.keep.grant(self.signers[0], OUTSIDER, EXECUTE_ID, 1)
        assert self.keep.total_weight() == 3

    def test_member_cannot_revoke_others(self):
        with pytest.raises(NotAuthorized):
            self.keep.revoke(self.signers[0], self.signers[1], EXECUTE_ID, 1)
        assert self.keep.balance_of(self.signers[1], EXECUTE_ID) == 1

    def test_member_may_revoke_own_weight(self):
        self.keep.revoke(self.signers[2], self.signers[2], EXECUTE_ID, 1)
        assert self.keep.total_weight() == 2
        assert not self.keep.guard.is_member(self.signers[2])

    def test_revoke_below_quorum_aborts(self):
        self.keep.revoke(self.signers[2], self.signers[2], EXECUTE_ID, 1)
        events_before = self.keep.ledger.get_event_count()

        with pytest.raises(QuorumExceedsSupply):
            self.keep.revoke(self.signers[1], self.signers[1], EXECUTE_ID, 1)

        assert self.keep.total_weight() == 2
        assert self.keep.balance_of(self.signers[1], EXECUTE_ID) == 1
        assert self.keep.ledger.get_event_count() == events_before

    def test_outsider_cannot_revoke_others(self):
        with pytest.raises(NotAuthorized):
            self.keep.revoke(OUTSIDER, self.signers[0], EXECUTE_ID, 1)

    def test_approved_operator_may_revoke(self):
        self.keep.grant(self.keep.address, OUTSIDER, 42, 10)
        operator = to_address(0x0B0B)
        self.keep.set_approval_for_all(OUTSIDER, operator, True)

        self.keep.revoke(operator, OUTSIDER, 42, 4)
        assert self.keep.balance_of(OUTSIDER, 42) == 6
        assert self.keep.total_supply(42) == 6


class TestSetQuorum:
    @pytest.fixture(autouse=True)
    def _setup(self, initialized_keep, signers):
        self.keep = initialized_keep
        self.signers = signers

    def test_set_quorum(self):
        self.keep.set_quorum(self.keep.address, 3)
        assert self.keep.quorum == 3
        event = self.keep.events(limit=1)[0]
        assert event.name == EventName.QUORUM_SET
        assert event.data == {"caller": self.keep.address, "threshold": 3}

    def test_zero_threshold(self):
        with pytest.raises(InvalidThreshold):
            self.keep.set_quorum(self.keep.address, 0)
        assert self.keep.quorum == 2

    def test_above_total_weight(self):
        with pytest.raises(QuorumExceedsSupply):
            self.keep.set_quorum(self.keep.address, 4)
        assert self.keep.quorum == 2

    def test_outsider_rejected(self):
        with pytest.raises(NotAuthorized):
            self.keep.set_quorum(OUTSIDER, 1)

    def test_single_member_rejected(self):
        with pytest.raises(NotAuthorized):
            self.keep.set_quorum(self.signers[0], 1)
        assert self.keep.quorum == 2

    def test_signed_self_call_sets_quorum(self, signer_keys, sign):
        op = Operation.call(self.keep.address, payload=encode_call("set_quorum", threshold=1))
        self.keep.execute(RELAYER, op, sign(self.keep, op, signer_keys[:2]))
        assert self.keep.quorum == 1


class TestScopedPermissions:
    @pytest.fixture(autouse=True)
    def _setup(self, initialized_keep):
        self.keep = initialized_keep
        self.delegate = to_address(0xDE1E)
        initialized_keep.grant(initialized_keep.address, self.delegate, function_id("set_quorum"), 1)

    def test_scoped_holder_may_call_its_entry_point(self):
        result = self.keep.permissions.check_permission(self.delegate, "set_quorum")
        assert result.decision == PermissionDecision.SCOPED
        self.keep.set_quorum(self.delegate, 1)
        assert self.keep.quorum == 1

    def test_scoped_holder_is_not_a_member(self):
        assert not self.keep.guard.is_member(self.delegate)
        with pytest.raises(NotAuthorized):
            self.keep.grant(self.delegate, self.delegate, EXECUTE_ID, 1)

    def test_keep_itself_is_privileged(self):
        result = self.keep.permissions.check_permission(self.keep.address, "grant")
        assert result.decision == PermissionDecision.SELF
        assert result.is_allowed


class TestQuorumInvariant:
    """Randomized grant / revoke / set_quorum sequences never break the invariant."""

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234, 9001])
    def test_invariant_holds(self, initialized_keep, signers, seed):
        keep = initialized_keep
        rng = random.Random(seed)
        accounts = signers + [to_address(0x1000 + i) for i in range(3)]

        for _ in range(40):
            action = rng.choice(["grant", "revoke", "set_quorum"])
            account = rng.choice(accounts)
            try:
                if action == "grant":
                    keep.grant(keep.address, account, EXECUTE_ID, rng.randint(1, 2))
                elif action == "revoke":
                    keep.revoke(keep.address, account, EXECUTE_ID, rng.randint(1, 2))
                else:
                    keep.set_quorum(keep.address, rng.randint(0, 6))
            except KeepError:
                pass

            quorum, total = keep.quorum, keep.total_weight()
            assert 0 < quorum <= total
            assert total == sum(keep.balance_of(a, EXECUTE_ID) for a in accounts)
