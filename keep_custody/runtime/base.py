"""
Target-execution runtime — the environment a keep dispatches into.

The keep never performs calls or contract creation itself. It asks an
injected runtime to do so, which makes the execution environment (a
chain node, a simulator, a test double) a replaceable dependency. A
runtime must also support snapshots so the keep can undo every effect
of an aborted entry point, and must roll attached journals (the keep's
ledger) back together with every call frame that fails.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol


class Revert(Exception):
    """Raised by contract handlers to fail the current call frame."""


@dataclass(frozen=True)
class CallResult:
    """Outcome of a call or delegate call."""

    success: bool
    return_data: bytes = b""
    error: str = ""


@dataclass
class CallContext:
    """
    What a contract handler sees while executing.

    `address` is the account whose storage is in effect: the callee for a
    plain call, the caller for a delegate call.
    """

    runtime: "ExecutionRuntime"
    address: str
    sender: str
    value: int
    storage: dict[str, Any] = field(default_factory=dict)


class ContractHandler(Protocol):
    """
    Behaviour attached to an account with code.

    Every hook is optional; a runtime treats a missing hook as "no
    answer" (an empty return value).
    """

    def on_call(self, ctx: CallContext, payload: bytes) -> bytes: ...


class FrameJournal(Protocol):
    """State kept outside the runtime that must follow call-frame rollback."""

    def savepoint(self) -> AbstractContextManager[Any]: ...


class ExecutionRuntime(ABC):
    """Abstract execution environment consumed by the keep."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        """Live network identity."""

    @property
    @abstractmethod
    def timestamp(self) -> int:
        """Current block time in seconds."""

    @abstractmethod
    def code_at(self, address: str) -> bytes:
        """Deployed code of an account; empty for plain accounts."""

    @abstractmethod
    def storage(self, address: str) -> dict[str, Any]:
        """Persistent storage of an account, covered by snapshots."""

    @abstractmethod
    def attach_journal(self, journal: FrameJournal) -> None:
        """Enter `journal.savepoint()` around every call frame from now on."""

    @abstractmethod
    def call(self, sender: str, target: str, value: int, payload: bytes) -> CallResult:
        """Invoke `target` in its own storage context, forwarding `value`."""

    @abstractmethod
    def delegate_call(self, sender: str, target: str, value: int, payload: bytes) -> CallResult:
        """Run `target`'s code against `sender`'s storage. No value moves."""

    @abstractmethod
    def create(self, sender: str, value: int, code: bytes) -> str | None:
        """Place a new contract at an environment-assigned address."""

    @abstractmethod
    def create2(self, sender: str, value: int, code: bytes, salt: bytes) -> str | None:
        """Place a new contract at an address derived from `salt` and `code`."""

    @abstractmethod
    def is_valid_signature(self, account: str, digest: bytes, signature: bytes) -> bytes:
        """Ask a contract account to validate a signature; returns its marker."""

    @abstractmethod
    def notify_token_received(
        self,
        operator: str,
        sender: str,
        to: str,
        token_id: int,
        amount: int,
        data: bytes,
    ) -> bytes:
        """Deliver a single-transfer notification to a contract recipient."""

    @abstractmethod
    def notify_batch_token_received(
        self,
        operator: str,
        sender: str,
        to: str,
        token_ids: list[int],
        amounts: list[int],
        data: bytes,
    ) -> bytes:
        """Deliver a batch-transfer notification to a contract recipient."""

    @abstractmethod
    def asset_balance(self, asset: str, holder: str) -> int:
        """Balance of a fungible asset held by `holder`."""

    @abstractmethod
    def transfer_asset_from(
        self,
        asset: str,
        spender: str,
        owner: str,
        to: str,
        amount: int,
    ) -> None:
        """Move `amount` of `asset` from `owner` to `to` using `spender`'s allowance."""

    @abstractmethod
    def snapshot(self) -> Any:
        """Capture all mutable state."""

    @abstractmethod
    def revert(self, snapshot: Any) -> None:
        """Restore state captured by `snapshot()`."""
