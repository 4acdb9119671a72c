"""
Membership & Quorum Guard — owns the invariant 0 < quorum <= total weight.

Membership is binary: any non-zero balance of the execution identifier
is one vote, regardless of magnitude. Total weight is that identifier's
supply. Every entry point that changes the quorum or shrinks the supply
consults this guard inside the same transaction as the change, so the
invariant is never violated in committed state.
"""

from __future__ import annotations

import logging

from keep_custody.errors import InvalidThreshold, QuorumExceedsSupply
from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.schema import EXECUTE_ID

logger = logging.getLogger(__name__)


class QuorumGuard:
    """Reads membership and enforces the quorum/supply invariant."""

    def __init__(self, ledger: LedgerService) -> None:
        self.ledger = ledger

    def total_weight(self) -> int:
        return self.ledger.total_supply(EXECUTE_ID)

    def is_member(self, account: str) -> bool:
        return self.ledger.balance_of(account, EXECUTE_ID) > 0

    def quorum(self) -> int:
        return self.ledger.state().quorum

    def check_threshold(self, threshold: int, supply: int | None = None) -> None:
        """
        Raises:
            InvalidThreshold: threshold is zero (or negative).
            QuorumExceedsSupply: threshold is above `supply` (default: total weight).
        """
        if threshold <= 0:
            raise InvalidThreshold("Quorum threshold must be greater than zero")
        if supply is None:
            supply = self.total_weight()
        if threshold > supply:
            raise QuorumExceedsSupply(
                f"Quorum {threshold} exceeds total weight {supply}"
            )

    def check_supply(self) -> None:
        """Re-validate the current quorum after total weight has shrunk."""
        quorum = self.quorum()
        supply = self.total_weight()
        if quorum > supply:
            logger.warning(
                "Revocation rejected: quorum=%d would exceed total weight=%d",
                quorum, supply,
            )
            raise QuorumExceedsSupply(
                f"Quorum {quorum} would exceed total weight {supply}"
            )

    def set_quorum(self, threshold: int) -> None:
        self.check_threshold(threshold)
        self.ledger.state().quorum = threshold
        logger.info("Quorum set: %d (total weight %d)", threshold, self.total_weight())
