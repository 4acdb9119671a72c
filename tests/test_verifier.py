"""
Tests for the Signature Verifier.

Validates:
- Exactly `quorum` ordered, distinct member signatures are required
- Duplicate, descending, non-member and short signature sets are rejected
- Claimed signers must match recovery
- Contract signers validate through the delegated hook
"""

from __future__ import annotations

import pytest
from coincurve import PrivateKey

from keep_custody.errors import InvalidSignature
from keep_custody.protocol.encoding import to_address
from keep_custody.protocol.schema import (
    EXECUTE_ID,
    SIGNATURE_VALID,
    TOKEN_RECEIVED,
    Operation,
    Signature,
)
from keep_custody.protocol.signing import sign_digest

CONTRACT_SIGNER = to_address(b"\xff" * 20)


class ContractSigner:
    """Smart account that answers delegated validation."""

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.seen: list[bytes] = []

    def is_valid_signature(self, digest: bytes, signature: bytes) -> bytes:
        self.seen.append(digest)
        return SIGNATURE_VALID if self.accept else b"\x00\x00\x00\x00"

    def on_erc1155_received(self, operator, sender, token_id, amount, data) -> bytes:
        return TOKEN_RECEIVED


class TestQuorumSignatures:
    @pytest.fixture(autouse=True)
    def _setup(self, initialized_keep, signer_keys, signers, sign, recorder):
        self.keep = initialized_keep
        self.keys = signer_keys
        self.signers = signers
        self.sign = sign
        self.op = Operation.call(recorder[0], payload=b"ping")

    def test_accepts_ascending_quorum(self):
        signatures = self.sign(self.keep, self.op, self.keys[:2])
        assert self.keep.verifier.verify(self.op, 0, signatures) == self.signers[:2]

    def test_accepts_non_adjacent_members(self):
        signatures = self.sign(self.keep, self.op, [self.keys[0], self.keys[2]])
        assert self.keep.verifier.verify(self.op, 0, signatures) == [self.signers[0], self.signers[2]]

    def test_rejects_too_few(self):
        signatures = self.sign(self.keep, self.op, self.keys[:1])
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_rejects_descending_order(self):
        signatures = self.sign(self.keep, self.op, [self.keys[1], self.keys[0]])
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_rejects_duplicate_signer(self):
        signatures = self.sign(self.keep, self.op, [self.keys[0], self.keys[0]])
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_rejects_non_member(self):
        outsider = PrivateKey((99).to_bytes(32, "big"))
        signatures = self.sign(self.keep, self.op, [self.keys[0], outsider])
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_ignores_surplus_entries(self):
        signatures = self.sign(self.keep, self.op, self.keys[:2])
        signatures.append(Signature(v=27, r=1, s=1))
        assert self.keep.verifier.verify(self.op, 0, signatures) == self.signers[:2]

    def test_rejects_signature_for_other_nonce(self):
        signatures = self.sign(self.keep, self.op, self.keys[:2], nonce=1)
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_rejects_unrecoverable_entry(self):
        signatures = self.sign(self.keep, self.op, self.keys[:1])
        signatures.append(Signature(v=27, r=0, s=0))
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_claimed_signer_must_match_recovery(self):
        digest = self.keep.digest(self.op, 0)
        first = sign_digest(self.keys[0], digest, user=self.signers[0])
        wrong = sign_digest(self.keys[1], digest, user=self.signers[2])
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, [first, wrong])

    def test_claimed_signer_matching_recovery_is_accepted(self):
        digest = self.keep.digest(self.op, 0)
        signatures = [
            sign_digest(self.keys[0], digest, user=self.signers[0]),
            sign_digest(self.keys[1], digest, user=self.signers[1]),
        ]
        assert self.keep.verifier.verify(self.op, 0, signatures) == self.signers[:2]


class TestContractSigners:
    @pytest.fixture(autouse=True)
    def _setup(self, initialized_keep, signer_keys, signers, runtime, recorder):
        self.keep = initialized_keep
        self.keys = signer_keys
        self.signers = signers
        self.runtime = runtime
        self.op = Operation.call(recorder[0])

    def _enroll(self, handler: ContractSigner) -> None:
        self.runtime.install(CONTRACT_SIGNER, handler)
        self.keep.grant(self.keep.address, CONTRACT_SIGNER, EXECUTE_ID, 1)

    def test_delegated_validation_accepted(self):
        handler = ContractSigner(accept=True)
        self._enroll(handler)

        digest = self.keep.digest(self.op, 0)
        signatures = [
            sign_digest(self.keys[0], digest),
            Signature(v=27, r=1, s=1, user=CONTRACT_SIGNER),
        ]
        assert self.keep.verifier.verify(self.op, 0, signatures) == [self.signers[0], CONTRACT_SIGNER]
        assert handler.seen == [digest]

    def test_delegated_validation_rejected(self):
        self._enroll(ContractSigner(accept=False))

        digest = self.keep.digest(self.op, 0)
        signatures = [
            sign_digest(self.keys[0], digest),
            Signature(v=27, r=1, s=1, user=CONTRACT_SIGNER),
        ]
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)

    def test_contract_without_hook_is_rejected(self):
        self.runtime.install(CONTRACT_SIGNER, object())
        digest = self.keep.digest(self.op, 0)
        signatures = [
            sign_digest(self.keys[0], digest),
            Signature(v=27, r=1, s=1, user=CONTRACT_SIGNER),
        ]
        with pytest.raises(InvalidSignature):
            self.keep.verifier.verify(self.op, 0, signatures)
