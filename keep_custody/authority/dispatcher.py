"""
Execution Dispatcher — performs one operation against the runtime.

Each dispatch advances the replay counter by one, in the same transaction
as the attempted execution: if the operation (or anything else in the
enclosing entry point) fails, the advance is rolled back with it.

Operation kinds are handled by explicit case analysis:

- CALL          value-and-payload call into the target's own context
- DELEGATECALL  the target's code run against the keep's storage
- CREATE        new contract at a runtime-assigned address
- CREATE2       new contract at an address fixed by (salt, code)

Successful calls emit `Executed`; successful creations emit
`ContractCreated`. The events are the only record of what ran.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from keep_custody.errors import ExecutionFailed, ReentrancyRejected
from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.encoding import to_address
from keep_custody.protocol.schema import EventName, Operation, OperationKind
from keep_custody.runtime.base import ExecutionRuntime

logger = logging.getLogger(__name__)


class ReentrancyGuard:
    """
    Rejects re-entry from outside while a keep entry point is running.

    Only the keep itself may re-enter: that is how a dispatched operation
    addressed to the keep administers it.
    """

    def __init__(self, owner: str) -> None:
        self.owner = to_address(owner)
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._depth > 0

    @contextmanager
    def enter(self, caller: str) -> Iterator[None]:
        if self._depth and to_address(caller) != self.owner:
            logger.warning("Re-entrant call rejected from %s", caller)
            raise ReentrancyRejected(f"Re-entrant call from {caller} rejected")
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1


class ExecutionDispatcher:
    """Dispatches operations for one keep."""

    def __init__(self, keep_address: str, runtime: ExecutionRuntime, ledger: LedgerService) -> None:
        self.keep_address = to_address(keep_address)
        self.runtime = runtime
        self.ledger = ledger

    def dispatch(self, operation: Operation) -> bool:
        """
        Run `operation`. Must be called inside the ledger's transaction.

        Raises:
            ExecutionFailed: the call reverted or the creation produced no address.
        """
        state = self.ledger.state()
        nonce = state.nonce
        state.nonce = nonce + 1

        if operation.kind in (OperationKind.CALL, OperationKind.DELEGATECALL):
            self._dispatch_call(operation, nonce)
        else:
            self._dispatch_create(operation, nonce)
        return True

    def _dispatch_call(self, operation: Operation, nonce: int) -> None:
        if operation.kind == OperationKind.CALL:
            result = self.runtime.call(
                self.keep_address, operation.target, operation.value, operation.payload
            )
        else:
            result = self.runtime.delegate_call(
                self.keep_address, operation.target, operation.value, operation.payload
            )

        if not result.success:
            logger.warning(
                "Execution failed: nonce=%d kind=%s target=%s error=%s",
                nonce, operation.kind.name, operation.target, result.error,
            )
            raise ExecutionFailed(
                f"{operation.kind.name} to {operation.target} failed: {result.error}"
            )

        self.ledger.append_event(EventName.EXECUTED, {
            "kind": int(operation.kind),
            "target": operation.target,
            "value": operation.value,
            "payload": operation.payload,
        })
        logger.info(
            "Executed: nonce=%d kind=%s target=%s value=%d",
            nonce, operation.kind.name, operation.target, operation.value,
        )

    def _dispatch_create(self, operation: Operation, nonce: int) -> None:
        if operation.kind == OperationKind.CREATE:
            address = self.runtime.create(self.keep_address, operation.value, operation.payload)
        else:
            try:
                salt, code = operation.split_salt()
            except ValueError as exc:
                raise ExecutionFailed(str(exc)) from exc
            address = self.runtime.create2(self.keep_address, operation.value, code, salt)

        if address is None:
            logger.warning("Creation failed: nonce=%d kind=%s", nonce, operation.kind.name)
            raise ExecutionFailed(f"{operation.kind.name} produced no contract")

        self.ledger.append_event(EventName.CONTRACT_CREATED, {
            "kind": int(operation.kind),
            "address": address,
            "value": operation.value,
        })
        logger.info(
            "Contract created: nonce=%d kind=%s address=%s",
            nonce, operation.kind.name, address,
        )
