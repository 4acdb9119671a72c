"""
Domain Separator Builder — binds signed messages to one keep on one network.

The separator commits to a fixed scheme name and version, the live chain
id and the keep's own address. It is computed once at initialization and
cached together with the chain id it was computed for; if the runtime
later reports a different chain id (a fork), it is recomputed on every
read so signatures made for the original network cannot be replayed on
the fork.
"""

from __future__ import annotations

import logging

from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.encoding import address_word, sha3, to_address, word
from keep_custody.protocol.schema import Operation
from keep_custody.runtime.base import ExecutionRuntime

logger = logging.getLogger(__name__)


SCHEME_NAME = "Keep"
SCHEME_VERSION = "1"

DOMAIN_TYPEHASH = sha3(
    b"EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
EXECUTE_TYPEHASH = sha3(
    b"Execute(uint8 op,address to,uint256 value,bytes data,uint120 nonce)"
)


def compute_domain_separator(chain_id: int, keep_address: str) -> bytes:
    return sha3(
        DOMAIN_TYPEHASH
        + sha3(SCHEME_NAME.encode("utf-8"))
        + sha3(SCHEME_VERSION.encode("utf-8"))
        + word(chain_id)
        + address_word(keep_address)
    )


def execute_struct_hash(operation: Operation, nonce: int) -> bytes:
    return sha3(
        EXECUTE_TYPEHASH
        + word(int(operation.kind))
        + address_word(operation.target)
        + word(operation.value)
        + sha3(operation.payload)
        + word(nonce)
    )


def execute_digest(separator: bytes, operation: Operation, nonce: int) -> bytes:
    """The 32-byte digest signers sign for `operation` at `nonce`."""
    return sha3(b"\x19\x01" + separator + execute_struct_hash(operation, nonce))


class DomainSeparatorBuilder:
    """Produces the keep's current domain separator."""

    def __init__(self, keep_address: str, runtime: ExecutionRuntime, ledger: LedgerService) -> None:
        self.keep_address = to_address(keep_address)
        self.runtime = runtime
        self.ledger = ledger

    def compute(self, chain_id: int) -> bytes:
        return compute_domain_separator(chain_id, self.keep_address)

    def cache(self) -> bytes:
        """Compute and store the separator for the live chain id."""
        chain_id = self.runtime.chain_id
        separator = self.compute(chain_id)
        state = self.ledger.state()
        state.initial_chain_id = chain_id
        state.initial_domain_separator = "0x" + separator.hex()
        logger.info("Domain separator cached for chain_id=%d", chain_id)
        return separator

    def current(self) -> bytes:
        state = self.ledger.state()
        chain_id = self.runtime.chain_id
        if state.initial_domain_separator and state.initial_chain_id == chain_id:
            return bytes.fromhex(state.initial_domain_separator[2:])
        return self.compute(chain_id)

    def digest(self, operation: Operation, nonce: int) -> bytes:
        return execute_digest(self.current(), operation, nonce)
