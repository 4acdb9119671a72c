"""
Local Runtime — deterministic in-memory execution environment.

Models just enough of an account-based chain for a keep to be run,
tested and demonstrated without a node:
- native balances, deployed code and per-account storage
- Python handlers standing in for contract code
- CREATE / CREATE2 address derivation; creation code that starts with
  the INVALID opcode (0xfe) fails to deploy
- fungible assets with allowances (redemption payouts)
- a settable chain id (fork simulation) and block timestamp
- whole-state snapshots so a failed frame or aborted entry point can be undone
- attached journals (a keep's ledger) rolled back with each failed frame
"""

from __future__ import annotations

import copy
import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from keep_custody.protocol.encoding import address_bytes, sha3, to_address, word
from keep_custody.runtime.base import (
    CallContext,
    CallResult,
    ExecutionRuntime,
    FrameJournal,
    Revert,
)

logger = logging.getLogger(__name__)

INVALID_OPCODE = b"\xfe"
HANDLER_CODE = b"\x00handler"  # placeholder code for accounts backed by a handler


@dataclass
class Account:
    balance: int = 0
    code: bytes = b""
    nonce: int = 0
    storage: dict[str, Any] = field(default_factory=dict)


class LocalRuntime(ExecutionRuntime):
    """
    In-memory runtime.

    Usage:
        runtime = LocalRuntime(chain_id=1)
        runtime.fund(keep_address, 10**18)
        runtime.install(target_address, MyContract())
    """

    def __init__(self, chain_id: int = 1, timestamp: int = 0) -> None:
        self._chain_id = chain_id
        self._timestamp = timestamp
        self.accounts: dict[str, Account] = {}
        self.assets: dict[str, dict[str, int]] = {}
        self.allowances: dict[tuple[str, str, str], int] = {}
        self._handlers: dict[str, Any] = {}
        self._factories: dict[bytes, Callable[[str], Any]] = {}
        self._journals: list[FrameJournal] = []

    # ── Environment ─────────────────────────────────────────────

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def timestamp(self) -> int:
        return self._timestamp

    def fork(self, chain_id: int) -> None:
        """Continue on a network with a different identity."""
        logger.warning("Runtime forked: chain_id %d -> %d", self._chain_id, chain_id)
        self._chain_id = chain_id

    def warp(self, timestamp: int) -> None:
        self._timestamp = timestamp

    # ── Accounts ────────────────────────────────────────────────

    def account(self, address: str) -> Account:
        address = to_address(address)
        if address not in self.accounts:
            self.accounts[address] = Account()
        return self.accounts[address]

    def fund(self, address: str, amount: int) -> None:
        self.account(address).balance += amount

    def balance(self, address: str) -> int:
        return self.account(address).balance

    def storage(self, address: str) -> dict[str, Any]:
        return self.account(address).storage

    def install(self, address: str, handler: Any, code: bytes = HANDLER_CODE) -> None:
        """Attach a handler (and code) to an address."""
        address = to_address(address)
        self.account(address).code = code
        self._handlers[address] = handler

    def register_code(self, code: bytes, factory: Callable[[str], Any]) -> None:
        """Give contracts deployed with `code` a handler built by `factory(address)`."""
        self._factories[code] = factory

    def code_at(self, address: str) -> bytes:
        return self.account(address).code

    def _handler(self, address: str) -> Any:
        if not self.code_at(address):
            return None
        return self._handlers.get(to_address(address))

    def attach_journal(self, journal: FrameJournal) -> None:
        if not any(j is journal for j in self._journals):
            self._journals.append(journal)

    @contextmanager
    def _frame(self) -> Iterator[None]:
        with ExitStack() as stack:
            for journal in self._journals:
                stack.enter_context(journal.savepoint())
            yield

    # ── Calls ───────────────────────────────────────────────────

    def call(self, sender: str, target: str, value: int, payload: bytes) -> CallResult:
        sender, target = to_address(sender), to_address(target)
        snap = self.snapshot()
        try:
            with self._frame():
                self._move_value(sender, target, value)
                handler = self._handler(target)
                if handler is None or not hasattr(handler, "on_call"):
                    return CallResult(True)
                ctx = CallContext(self, target, sender, value, self.storage(target))
                return CallResult(True, handler.on_call(ctx, payload) or b"")
        except Exception as exc:
            self.revert(snap)
            logger.info("Call frame failed: %s -> %s: %s", sender[:10], target[:10], exc)
            return CallResult(False, error=str(exc))

    def delegate_call(self, sender: str, target: str, value: int, payload: bytes) -> CallResult:
        sender, target = to_address(sender), to_address(target)
        snap = self.snapshot()
        try:
            with self._frame():
                handler = self._handler(target)
                if handler is None or not hasattr(handler, "on_call"):
                    return CallResult(True)
                ctx = CallContext(self, sender, sender, value, self.storage(sender))
                return CallResult(True, handler.on_call(ctx, payload) or b"")
        except Exception as exc:
            self.revert(snap)
            logger.info("Delegate frame failed: %s -> %s: %s", sender[:10], target[:10], exc)
            return CallResult(False, error=str(exc))

    def _move_value(self, sender: str, to: str, value: int) -> None:
        if value == 0:
            return
        source = self.account(sender)
        if source.balance < value:
            raise Revert(f"Insufficient native balance: {source.balance} < {value}")
        source.balance -= value
        self.account(to).balance += value

    # ── Creation ────────────────────────────────────────────────

    def create(self, sender: str, value: int, code: bytes) -> str | None:
        creator = self.account(sender)
        address = to_address(sha3(address_bytes(sender) + word(creator.nonce))[-20:])
        creator.nonce += 1
        return self._deploy(sender, address, value, code)

    def create2(self, sender: str, value: int, code: bytes, salt: bytes) -> str | None:
        if len(salt) != 32:
            raise ValueError("CREATE2 salt must be 32 bytes")
        preimage = b"\xff" + address_bytes(sender) + salt + sha3(code)
        address = to_address(sha3(preimage)[-20:])
        return self._deploy(sender, address, value, code)

    def _deploy(self, sender: str, address: str, value: int, code: bytes) -> str | None:
        if code.startswith(INVALID_OPCODE):
            logger.info("Creation aborted by invalid opcode at %s", address[:10])
            return None
        if self.code_at(address):
            logger.info("Creation collided with existing code at %s", address[:10])
            return None
        if self.balance(sender) < value:
            return None

        self._move_value(sender, address, value)
        self.account(address).code = code
        factory = self._factories.get(code)
        if factory is not None:
            self._handlers[address] = factory(address)
        return address

    # ── Hooks ───────────────────────────────────────────────────

    def is_valid_signature(self, account: str, digest: bytes, signature: bytes) -> bytes:
        hook = getattr(self._handler(account), "is_valid_signature", None)
        if hook is None:
            return b""
        try:
            return bytes(hook(digest, signature) or b"")
        except Exception as exc:
            logger.info("Delegated signature check failed for %s: %s", account[:10], exc)
            return b""

    def notify_token_received(
        self,
        operator: str,
        sender: str,
        to: str,
        token_id: int,
        amount: int,
        data: bytes,
    ) -> bytes:
        hook = getattr(self._handler(to), "on_erc1155_received", None)
        if hook is None:
            return b""
        return bytes(hook(operator, sender, token_id, amount, data) or b"")

    def notify_batch_token_received(
        self,
        operator: str,
        sender: str,
        to: str,
        token_ids: list[int],
        amounts: list[int],
        data: bytes,
    ) -> bytes:
        hook = getattr(self._handler(to), "on_erc1155_batch_received", None)
        if hook is None:
            return b""
        return bytes(hook(operator, sender, token_ids, amounts, data) or b"")

    # ── Fungible assets ─────────────────────────────────────────

    def mint_asset(self, asset: str, holder: str, amount: int) -> None:
        holders = self.assets.setdefault(to_address(asset), {})
        holder = to_address(holder)
        holders[holder] = holders.get(holder, 0) + amount

    def asset_balance(self, asset: str, holder: str) -> int:
        return self.assets.get(to_address(asset), {}).get(to_address(holder), 0)

    def approve_asset(self, asset: str, owner: str, spender: str, amount: int) -> None:
        key = (to_address(asset), to_address(owner), to_address(spender))
        self.allowances[key] = amount

    def transfer_asset_from(
        self,
        asset: str,
        spender: str,
        owner: str,
        to: str,
        amount: int,
    ) -> None:
        asset, spender, owner, to = (to_address(a) for a in (asset, spender, owner, to))
        if spender != owner:
            key = (asset, owner, spender)
            allowance = self.allowances.get(key, 0)
            if allowance < amount:
                raise Revert(f"Allowance too low: {allowance} < {amount}")
            self.allowances[key] = allowance - amount

        holders = self.assets.setdefault(asset, {})
        if holders.get(owner, 0) < amount:
            raise Revert(f"Asset balance too low for {owner[:10]}")
        holders[owner] -= amount
        holders[to] = holders.get(to, 0) + amount

    # ── Snapshots ───────────────────────────────────────────────

    def snapshot(self) -> Any:
        return (
            copy.deepcopy(self.accounts),
            copy.deepcopy(self.assets),
            dict(self.allowances),
            dict(self._handlers),
        )

    def revert(self, snapshot: Any) -> None:
        accounts, assets, allowances, handlers = snapshot
        self.accounts = copy.deepcopy(accounts)
        self.assets = copy.deepcopy(assets)
        self.allowances = dict(allowances)
        self._handlers = dict(handlers)
