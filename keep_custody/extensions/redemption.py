"""
Redemption Calculator — pro-rata exit for keep members.

A keep opts in by calling `set_redemption_start` (normally through a
signed CALL addressed to this module). Once the start time has passed, a
holder of any identifier can burn units and receive a proportional share
of each listed asset the keep holds:

    share = burn_amount * keep_balance // supply_before_burn

Shares that round down to zero are skipped. The burn and every payout
run in the keep's unit of work, so a failed payout undoes the burn.

Start times live in the module's runtime storage, keyed by keep, so
runtime snapshots cover them. `RedemptionStartSet` and `Redeemed` are
appended to the served keep's hash-chained event log, in the keep's
transaction.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Sequence

from keep_custody.errors import (
    ExecutionFailed,
    InvalidAssetOrder,
    NotAuthorized,
    RedemptionNotStarted,
    SelfCallError,
)
from keep_custody.protocol.encoding import address_int, to_address
from keep_custody.protocol.schema import EventName
from keep_custody.runtime.base import CallContext, ExecutionRuntime, Revert

if TYPE_CHECKING:
    from keep_custody.authority.keep import Keep

logger = logging.getLogger(__name__)


def redemption_amount(burn_amount: int, balance: int, supply: int) -> int:
    """Pro-rata share of `balance` for burning `burn_amount` out of `supply`."""
    if supply <= 0:
        raise ValueError("Supply must be positive")
    return burn_amount * balance // supply


def encode_start(token_id: int, start: int) -> bytes:
    """Payload for a keep CALL that sets its redemption start."""
    body = {"method": "set_redemption_start", "args": {"token_id": token_id, "start": start}}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


class Redemption:
    """
    Redemption module, deployed at its own address.

    Usage:
        redemption = Redemption(address, runtime)
        runtime.install(redemption.address, redemption)
        redemption.attach(keep)

        redemption.set_redemption_start(keep.address, token_id, start=1_700_000_000)
        paid = redemption.redeem(member, keep, token_id, amount, [asset_a, asset_b])
    """

    def __init__(self, address: str, runtime: ExecutionRuntime) -> None:
        self.address = to_address(address)
        self.runtime = runtime
        self._keeps: dict[str, Keep] = {}

    def attach(self, keep: Keep) -> None:
        """Serve `keep`: accept its start times and record into its event log."""
        self._keeps[keep.address] = keep

    # ── State ───────────────────────────────────────────────────

    @property
    def _storage(self) -> dict[str, Any]:
        return self.runtime.storage(self.address)

    def redemption_start(self, keep_address: str, token_id: int) -> int:
        """Start time for (keep, id); zero means unset."""
        starts = self._storage.get("starts", {})
        return starts.get(f"{to_address(keep_address)}:{token_id}", 0)

    # ── Entry points ────────────────────────────────────────────

    def set_redemption_start(self, caller: str, token_id: int, start: int) -> None:
        """
        Set the start time for redemptions of `token_id` in the calling keep.

        Raises:
            NotAuthorized: the caller is not a keep this module serves.
        """
        caller = to_address(caller)
        keep = self._keeps.get(caller)
        if keep is None:
            raise NotAuthorized(f"{caller} is not a keep served by this redemption module")

        with keep.atomic():
            starts = self._storage.setdefault("starts", {})
            starts[f"{caller}:{token_id}"] = start
            keep.ledger.append_event(EventName.REDEMPTION_START_SET, {
                "keep": caller, "id": token_id, "start": start,
            })
        logger.info("Redemption start set: keep=%s id=%d start=%d", caller[:10], token_id, start)

    def redeem(
        self,
        caller: str,
        keep: Keep,
        token_id: int,
        amount: int,
        assets: Sequence[str],
    ) -> list[int]:
        """
        Burn `amount` of `token_id` from `caller` and pay out pro-rata shares.

        `keep` is the Keep aggregate whose units are redeemed. The keep
        must have approved this module to spend each asset, and the
        caller must have approved this module as an operator (or the
        module must hold the keep's `revoke` permission).

        Returns:
            The amount paid for each asset, in order (zero when skipped).

        Raises:
            RedemptionNotStarted: start unset or still in the future.
            InvalidAssetOrder: assets not strictly ascending.
            ExecutionFailed: an asset transfer failed.
        """
        caller = to_address(caller)
        start = self.redemption_start(keep.address, token_id)
        if start == 0 or self.runtime.timestamp < start:
            raise RedemptionNotStarted(
                f"Redemption of id {token_id} in {keep.address} has not started"
            )

        paid: list[int] = []
        with keep.atomic():
            supply = keep.total_supply(token_id)
            keep.revoke(self.address, caller, token_id, amount)

            previous = 0
            for asset in assets:
                asset = to_address(asset)
                if address_int(asset) <= previous:
                    raise InvalidAssetOrder(f"Asset {asset} is not strictly above the previous asset")
                previous = address_int(asset)

                share = redemption_amount(amount, self.runtime.asset_balance(asset, keep.address), supply)
                if share != 0:
                    try:
                        self.runtime.transfer_asset_from(asset, self.address, keep.address, caller, share)
                    except Revert as exc:
                        raise ExecutionFailed(f"Payout of {asset} failed: {exc}") from exc
                paid.append(share)

            keep.ledger.append_event(EventName.REDEEMED, {
                "redeemer": caller,
                "keep": keep.address,
                "id": token_id,
                "amount": amount,
            })

        logger.info(
            "Redeemed: keep=%s id=%d amount=%d by=%s",
            keep.address[:10], token_id, amount, caller[:10],
        )
        return paid

    # ── Runtime hook ────────────────────────────────────────────

    def on_call(self, ctx: CallContext, payload: bytes) -> bytes:
        try:
            body = json.loads(payload.decode("utf-8"))
            if body["method"] != "set_redemption_start":
                raise KeyError(body["method"])
            token_id, start = int(body["args"]["token_id"]), int(body["args"]["start"])
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            raise SelfCallError(f"Unsupported redemption payload: {exc}") from exc
        self.set_redemption_start(ctx.sender, token_id, start)
        return b""
