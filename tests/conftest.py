"""Shared fixtures: an in-memory ledger, a local runtime and deterministic signers."""

from __future__ import annotations

from typing import Any, Callable

import pytest
from coincurve import PrivateKey

from keep_custody.authority.keep import Keep
from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.encoding import function_id, to_address
from keep_custody.protocol.schema import Operation, Signature
from keep_custody.protocol.signing import address_of, sign_digest
from keep_custody.runtime.base import CallContext, Revert
from keep_custody.runtime.local import LocalRuntime

KEEP_ADDRESS = to_address(0xC0FFEE)
DEPLOYER = to_address(0xD0)
RELAYER = to_address(0x4E1A7)
OUTSIDER = to_address(0xBAD)


# ── Test contracts ─────────────────────────────────────────────


class Recorder:
    """Accepts every call and records (sender, value, payload, storage owner)."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, int, bytes, str]] = []

    def on_call(self, ctx: CallContext, payload: bytes) -> bytes:
        self.calls.append((ctx.sender, ctx.value, payload, ctx.address))
        ctx.storage["last_payload"] = payload
        return b"ok"


class Reverter:
    def on_call(self, ctx: CallContext, payload: bytes) -> bytes:
        raise Revert("always reverts")


def grant_scope(keep: Keep, account: str, *entry_points: str) -> None:
    """Give `account` direct authority over `entry_points`, as a signed self-call would."""
    for entry_point in entry_points:
        keep.grant(keep.address, account, function_id(entry_point), 1)


# ── Fixtures ───────────────────────────────────────────────────


@pytest.fixture
def signer_keys() -> list[PrivateKey]:
    """Three keys ordered by ascending address."""
    keys = [PrivateKey(i.to_bytes(32, "big")) for i in (11, 22, 33)]
    return sorted(keys, key=lambda k: int(address_of(k), 16))


@pytest.fixture
def signers(signer_keys) -> list[str]:
    return [address_of(k) for k in signer_keys]


@pytest.fixture
def runtime() -> LocalRuntime:
    return LocalRuntime(chain_id=1, timestamp=1_000)


@pytest.fixture
def ledger() -> LedgerService:
    service = LedgerService()
    service.initialize()
    return service


@pytest.fixture
def keep(runtime, ledger) -> Keep:
    unit = Keep(KEEP_ADDRESS, runtime, ledger)
    runtime.install(unit.address, unit)
    return unit


@pytest.fixture
def initialized_keep(keep, signers) -> Keep:
    """Keep with three signers and a quorum of two."""
    keep.initialize(DEPLOYER, [], signers, 2)
    return keep


@pytest.fixture
def sign() -> Callable[..., list[Signature]]:
    def _sign(keep: Keep, operation: Operation, keys: list[PrivateKey], nonce: int | None = None,
              **overrides: Any) -> list[Signature]:
        digest = keep.digest(operation, nonce)
        return [sign_digest(key, digest, **overrides) for key in keys]

    return _sign


@pytest.fixture
def recorder(runtime) -> tuple[str, Recorder]:
    address = to_address(0x5EC0)
    handler = Recorder()
    runtime.install(address, handler)
    return address, handler


@pytest.fixture
def reverter(runtime) -> str:
    address = to_address(0xDEAD)
    runtime.install(address, Reverter())
    return address
