"""
Error taxonomy for the Keep authorization unit.

Every error is fail-fast: it is raised at the point of violation and
propagates out of the entry point, where the unit of work rolls back all
ledger writes, counter advances, emitted events and runtime effects.
Nothing here is retried internally.
"""

from __future__ import annotations


class KeepError(Exception):
    """Base class for all Keep errors. `code` is stable across releases."""

    code = "keep_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class AlreadyInitialized(KeepError):
    code = "already_initialized"


class NotInitialized(KeepError):
    code = "not_initialized"


class InvalidThreshold(KeepError):
    code = "invalid_threshold"


class QuorumExceedsSupply(KeepError):
    code = "quorum_exceeds_supply"


class InvalidSignature(KeepError):
    code = "invalid_signature"


class ExecutionFailed(KeepError):
    code = "execution_failed"


class NotAuthorized(KeepError):
    code = "not_authorized"


class ReentrancyRejected(KeepError):
    code = "reentrancy_rejected"


class SelfCallError(KeepError):
    code = "invalid_self_call"


class RedemptionNotStarted(KeepError):
    code = "redemption_not_started"


class InvalidAssetOrder(KeepError):
    code = "invalid_asset_order"


# ── Ledger collaborator ────────────────────────────────────────


class LedgerError(KeepError):
    code = "ledger_error"


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"


class TransferDisabled(LedgerError):
    code = "transfer_disabled"


class UnsafeRecipient(LedgerError):
    code = "unsafe_recipient"


class LedgerIntegrityError(LedgerError):
    """Raised when the event log hash chain cannot be extended."""

    code = "ledger_integrity"
