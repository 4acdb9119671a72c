"""
Signature Verifier — quorum check over an ordered signature set.

Exactly `quorum` entries are consulted; surplus entries are ignored and a
short set is rejected. Signers must appear in strictly ascending address
order, which rejects duplicates and fixes a canonical order in one pass.
A contract-bearing signer is asked to validate the signature itself and
must answer with the fixed success marker.

A single bad entry rejects the whole set. There is no partial credit.
"""

from __future__ import annotations

import logging
from typing import Sequence

from keep_custody.authority.domain import DomainSeparatorBuilder
from keep_custody.authority.quorum import QuorumGuard
from keep_custody.errors import InvalidSignature
from keep_custody.protocol.encoding import address_int
from keep_custody.protocol.schema import SIGNATURE_VALID, Operation, Signature
from keep_custody.protocol.signing import recover_signer
from keep_custody.runtime.base import ExecutionRuntime

logger = logging.getLogger(__name__)


class SignatureVerifier:
    """Verifies that a quorum of members signed an operation at a nonce."""

    def __init__(
        self,
        domain: DomainSeparatorBuilder,
        guard: QuorumGuard,
        runtime: ExecutionRuntime,
    ) -> None:
        self.domain = domain
        self.guard = guard
        self.runtime = runtime

    def verify(
        self,
        operation: Operation,
        nonce: int,
        signatures: Sequence[Signature],
    ) -> list[str]:
        """
        Verify `signatures` over the digest of (operation, nonce).

        Returns:
            The accepted signer addresses, in order.

        Raises:
            InvalidSignature: on any rejected entry or too few entries.
        """
        digest = self.domain.digest(operation, nonce)
        threshold = self.guard.quorum()

        if len(signatures) < threshold:
            raise InvalidSignature(
                f"Quorum requires {threshold} signatures, got {len(signatures)}"
            )

        signers: list[str] = []
        previous = 0
        for index in range(threshold):
            signer = self._resolve_signer(digest, signatures[index], index)

            if not self.guard.is_member(signer):
                raise InvalidSignature(f"Signer #{index} {signer} holds no execution weight")

            if address_int(signer) <= previous:
                raise InvalidSignature(
                    f"Signer #{index} {signer} is not strictly above the previous signer"
                )

            previous = address_int(signer)
            signers.append(signer)

        logger.info(
            "Signatures verified: nonce=%d kind=%s signers=%d",
            nonce, operation.kind.name, len(signers),
        )
        return signers

    def _resolve_signer(self, digest: bytes, signature: Signature, index: int) -> str:
        candidate = signature.user
        recovered: str | None = None

        if candidate is None:
            recovered = self._recover(digest, signature, index)
            candidate = recovered

        if self.runtime.code_at(candidate):
            marker = self.runtime.is_valid_signature(candidate, digest, signature.to_bytes())
            if marker != SIGNATURE_VALID:
                raise InvalidSignature(
                    f"Signer #{index} {candidate} rejected delegated validation"
                )
            return candidate

        if recovered is None:
            recovered = self._recover(digest, signature, index)
            if recovered != candidate:
                raise InvalidSignature(
                    f"Signer #{index} recovers to {recovered}, not the claimed {candidate}"
                )
        return candidate

    @staticmethod
    def _recover(digest: bytes, signature: Signature, index: int) -> str:
        try:
            return recover_signer(digest, signature)
        except ValueError as exc:
            raise InvalidSignature(f"Signature #{index} does not recover: {exc}") from exc
