"""
Keep — the group-custody authorization unit.

The keep composes independent capabilities rather than inheriting them:

- a ledger (balances, approvals, event log, persisted state)
- a permission engine for direct privileged calls
- a quorum guard owning 0 < quorum <= total weight
- a signature verifier for signed requests
- an execution dispatcher with a re-entrancy guard
- a domain separator builder

Two paths lead to execution: a signed request verified against the
quorum (`execute`), or a direct call from an authorized caller (`relay`,
`multirelay`). Both converge on the dispatcher.

Every public mutating method runs as one all-or-nothing unit of work
(`atomic`): ledger writes, counter advances, emitted events and runtime
effects either all persist or are all rolled back.

Usage:
    keep = Keep(address, runtime, ledger)
    runtime.install(keep.address, keep)
    keep.initialize(deployer, [], [alice, bob, carol], threshold=2)

    digest = keep.digest(Operation.call(target, value=1))
    keep.execute(relayer, Operation.call(target, value=1), [sig_a, sig_b])
"""

from __future__ import annotations

import inspect
import logging
from contextlib import contextmanager
from typing import Iterator, Sequence

from keep_custody.authority.dispatcher import ExecutionDispatcher, ReentrancyGuard
from keep_custody.authority.domain import DomainSeparatorBuilder
from keep_custody.authority.permissions import PermissionEngine
from keep_custody.authority.quorum import QuorumGuard
from keep_custody.authority.verifier import SignatureVerifier
from keep_custody.errors import (
    AlreadyInitialized,
    InvalidSignature,
    NotInitialized,
    SelfCallError,
    UnsafeRecipient,
)
from keep_custody.integrations.metadata import UriFetcher
from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.encoding import ZERO_ADDRESS, address_int, decode_call, to_address
from keep_custody.protocol.schema import (
    BATCH_TOKEN_RECEIVED,
    EXECUTE_ID,
    TOKEN_RECEIVED,
    EventName,
    KeepEvent,
    KeepStatus,
    Operation,
    Signature,
)
from keep_custody.runtime.base import CallContext, ExecutionRuntime

logger = logging.getLogger(__name__)


class Keep:
    """A shared account controlled by a quorum of execution-weight holders."""

    def __init__(
        self,
        address: str,
        runtime: ExecutionRuntime,
        ledger: LedgerService,
        uri_fetcher: UriFetcher | None = None,
    ) -> None:
        self.address = to_address(address)
        self.runtime = runtime
        self.ledger = ledger
        self.uri_fetcher = uri_fetcher

        self.domain = DomainSeparatorBuilder(self.address, runtime, ledger)
        self.guard = QuorumGuard(ledger)
        self.permissions = PermissionEngine(self.address, ledger)
        self.verifier = SignatureVerifier(self.domain, self.guard, runtime)
        self.dispatcher = ExecutionDispatcher(self.address, runtime, ledger)
        self._reentrancy = ReentrancyGuard(self.address)

        # a failed call frame must take its ledger writes with it
        runtime.attach_journal(ledger)

    # ── Unit of work ────────────────────────────────────────────

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Run a block as one indivisible unit across ledger and runtime.

        Nested use joins the outer unit; only the outermost one commits
        or rolls back. A runtime call frame nested inside the unit holds
        a ledger savepoint, so a frame that fails and is swallowed by its
        caller leaves no ledger trace either.
        """
        if self.ledger.in_transaction:
            yield
            return

        snapshot = self.runtime.snapshot()
        try:
            with self.ledger.transaction():
                yield
        except Exception:
            self.runtime.revert(snapshot)
            raise

    @contextmanager
    def _entry(self, caller: str) -> Iterator[None]:
        with self._reentrancy.enter(caller), self.atomic():
            yield

    # ── Views ───────────────────────────────────────────────────

    @property
    def nonce(self) -> int:
        return self.ledger.state().nonce

    @property
    def quorum(self) -> int:
        return self.ledger.state().quorum

    @property
    def initialized(self) -> bool:
        return self.quorum != 0

    def total_weight(self) -> int:
        return self.guard.total_weight()

    def balance_of(self, account: str, token_id: int) -> int:
        return self.ledger.balance_of(account, token_id)

    def total_supply(self, token_id: int) -> int:
        return self.ledger.total_supply(token_id)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return self.ledger.is_approved_for_all(owner, operator)

    def transferable(self, token_id: int) -> bool:
        return self.ledger.transferable(token_id)

    def domain_separator(self) -> bytes:
        return self.domain.current()

    def digest(self, operation: Operation, nonce: int | None = None) -> bytes:
        """Digest to sign for `operation`; defaults to the current nonce."""
        return self.domain.digest(operation, self.nonce if nonce is None else nonce)

    def uri(self, token_id: int) -> str:
        """Local metadata URI, else the fallback source's, else empty."""
        local = self.ledger.token_uri(token_id)
        if local:
            return local
        if self.uri_fetcher is not None:
            return self.uri_fetcher.uri(token_id)
        return ""

    def status(self) -> KeepStatus:
        with self.ledger.transaction():
            state = self.ledger.state()
            return KeepStatus(
                address=self.address,
                chain_id=self.runtime.chain_id,
                initialized=state.quorum != 0,
                nonce=state.nonce,
                quorum=state.quorum,
                total_weight=self.total_weight(),
                domain_separator=self.domain.current(),
            )

    def events(self, limit: int = 50) -> list[KeepEvent]:
        """Most recent events, newest first."""
        return [
            KeepEvent(
                sequence_number=e.sequence_number,
                name=e.name,
                data=e.data,
                entry_hash=e.entry_hash,
                previous_hash=e.previous_hash,
                recorded_at=e.recorded_at,
            )
            for e in self.ledger.get_latest_events(limit)
        ]

    # ── Initialization ──────────────────────────────────────────

    def initialize(
        self,
        caller: str,
        operations: Sequence[Operation],
        signers: Sequence[str],
        threshold: int,
    ) -> None:
        """
        One-time setup.

        Runs the bootstrap operations through the dispatcher (ungated: no
        signer set exists yet), seeds one unit of execution weight per
        signer, fixes the quorum and caches the domain separator.

        Raises:
            AlreadyInitialized: quorum is already set.
            InvalidThreshold: threshold is zero.
            QuorumExceedsSupply: threshold is above the number of signers.
            InvalidSignature: signers are not strictly ascending and non-zero.
            ExecutionFailed: a bootstrap operation failed.
        """
        with self._entry(caller):
            state = self.ledger.state()
            if state.quorum != 0:
                raise AlreadyInitialized(f"Keep {self.address} is already initialized")

            self.guard.check_threshold(threshold, supply=len(signers))

            for operation in operations:
                self.dispatcher.dispatch(operation)

            previous = 0
            for signer in signers:
                signer = to_address(signer)
                if address_int(signer) <= previous:
                    raise InvalidSignature(
                        f"Signer {signer} is not strictly above the previous signer"
                    )
                previous = address_int(signer)
                self._mint(self.address, signer, EXECUTE_ID, 1, b"")

            state.quorum = threshold
            self.domain.cache()

        logger.info(
            "Keep initialized: address=%s signers=%d quorum=%d bootstrap_ops=%d",
            self.address, len(signers), threshold, len(operations),
        )

    # ── Execution ───────────────────────────────────────────────

    def execute(
        self,
        caller: str,
        operation: Operation,
        signatures: Sequence[Signature],
    ) -> bool:
        """
        Execute a quorum-signed operation at the current nonce.

        Raises:
            NotInitialized: no quorum has been set.
            InvalidSignature: the signature set does not satisfy the quorum.
            ExecutionFailed: the operation itself failed.
        """
        with self._entry(caller):
            state = self.ledger.state()
            if state.quorum == 0:
                raise NotInitialized(f"Keep {self.address} has no quorum yet")
            self.verifier.verify(operation, state.nonce, signatures)
            return self.dispatcher.dispatch(operation)

    def relay(self, caller: str, operation: Operation) -> bool:
        """Execute an operation on the direct authority of `caller`."""
        with self._entry(caller):
            self.permissions.require(caller, "relay")
            return self.dispatcher.dispatch(operation)

    def multirelay(self, caller: str, operations: Sequence[Operation]) -> bool:
        """Execute a batch of operations; any failure aborts the whole batch."""
        with self._entry(caller):
            self.permissions.require(caller, "multirelay")
            for operation in operations:
                self.dispatcher.dispatch(operation)
            return True

    # ── Membership & quorum ─────────────────────────────────────

    def grant(self, caller: str, to: str, token_id: int, amount: int, data: bytes = b"") -> None:
        """Mint `amount` of `token_id` to `to`; execution weight grows with it."""
        with self._entry(caller):
            self.permissions.require(caller, "grant")
            self._mint(caller, to, token_id, amount, data)

    def revoke(self, caller: str, account: str, token_id: int, amount: int) -> None:
        """
        Burn `amount` of `token_id` from `account`.

        Raises:
            NotAuthorized: caller is not the account, its operator, or privileged.
            QuorumExceedsSupply: burning execution weight would drop it below quorum.
        """
        with self._entry(caller):
            caller, account = to_address(caller), to_address(account)
            if caller != account and not self.ledger.is_approved_for_all(account, caller):
                self.permissions.require(caller, "revoke")

            self.ledger.burn(caller, account, token_id, amount)

            if token_id == EXECUTE_ID:
                self.guard.check_supply()

    def set_quorum(self, caller: str, threshold: int) -> None:
        """
        Raises:
            NotAuthorized, InvalidThreshold, QuorumExceedsSupply
        """
        with self._entry(caller):
            self.permissions.require(caller, "set_quorum")
            self.guard.set_quorum(threshold)
            self.ledger.append_event(EventName.QUORUM_SET, {
                "caller": to_address(caller),
                "threshold": threshold,
            })

    # ── Ledger administration ───────────────────────────────────

    def set_transferability(self, caller: str, token_id: int, on: bool) -> None:
        with self._entry(caller):
            self.permissions.require(caller, "set_transferability")
            self.ledger.set_transferable(caller, token_id, on)

    def set_uri(self, caller: str, token_id: int, uri: str) -> None:
        with self._entry(caller):
            self.permissions.require(caller, "set_uri")
            self.ledger.set_token_uri(token_id, uri)

    def set_approval_for_all(self, caller: str, operator: str, approved: bool) -> None:
        with self._entry(caller):
            self.ledger.set_approval_for_all(caller, operator, approved)

    def safe_transfer_from(
        self,
        caller: str,
        sender: str,
        to: str,
        token_id: int,
        amount: int,
        data: bytes = b"",
    ) -> None:
        with self._entry(caller):
            self.ledger.transfer(caller, sender, to, [token_id], [amount])
            self._check_receiver(caller, sender, to, [token_id], [amount], data)

    def safe_batch_transfer_from(
        self,
        caller: str,
        sender: str,
        to: str,
        token_ids: Sequence[int],
        amounts: Sequence[int],
        data: bytes = b"",
    ) -> None:
        with self._entry(caller):
            self.ledger.transfer(caller, sender, to, list(token_ids), list(amounts))
            self._check_receiver(caller, sender, to, list(token_ids), list(amounts), data)

    def multicall(self, caller: str, payloads: Sequence[bytes]) -> list[bytes]:
        """Run several self-call payloads as `caller`, all or nothing."""
        with self._entry(caller):
            return [self._self_call(caller, payload) for payload in payloads]

    # ── Runtime hooks ───────────────────────────────────────────

    def on_call(self, ctx: CallContext, payload: bytes) -> bytes:
        """Entry from the runtime: plain value is accepted, payloads are self-calls."""
        if not payload:
            return b""
        return self._self_call(ctx.sender, payload)

    def on_erc1155_received(
        self,
        operator: str,
        sender: str,
        token_id: int,
        amount: int,
        data: bytes,
    ) -> bytes:
        return TOKEN_RECEIVED

    def on_erc1155_batch_received(
        self,
        operator: str,
        sender: str,
        token_ids: list[int],
        amounts: list[int],
        data: bytes,
    ) -> bytes:
        return BATCH_TOKEN_RECEIVED

    # ── Internal ────────────────────────────────────────────────

    def _self_call(self, caller: str, payload: bytes) -> bytes:
        method, args = decode_call(payload)
        handler = getattr(self, method)
        try:
            inspect.signature(handler).bind(caller, **args)
        except TypeError as exc:
            raise SelfCallError(f"Bad arguments for {method}: {exc}") from exc

        logger.debug("Self-call: %s by %s", method, caller)
        handler(caller, **args)
        return b""

    def _mint(self, operator: str, to: str, token_id: int, amount: int, data: bytes) -> None:
        self.ledger.mint(operator, to, token_id, amount)
        self._check_receiver(operator, ZERO_ADDRESS, to, [token_id], [amount], data)

    def _check_receiver(
        self,
        operator: str,
        sender: str,
        to: str,
        token_ids: list[int],
        amounts: list[int],
        data: bytes,
    ) -> None:
        if not self.runtime.code_at(to):
            return

        if len(token_ids) == 1:
            marker = self.runtime.notify_token_received(
                operator, sender, to, token_ids[0], amounts[0], data
            )
            expected = TOKEN_RECEIVED
        else:
            marker = self.runtime.notify_batch_token_received(
                operator, sender, to, token_ids, amounts, data
            )
            expected = BATCH_TOKEN_RECEIVED

        if marker != expected:
            raise UnsafeRecipient(f"Recipient {to} did not accept the transfer")

