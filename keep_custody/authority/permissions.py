"""
Permission enforcement for privileged keep entry points.

A direct (unsigned) call to a privileged entry point is authorized when
the caller is:

- the keep itself, i.e. a quorum-signed operation routed back into the keep
- a holder of the entry point's own permission identifier,
  `function_id(<entry point>)`, which scopes a delegate to one capability

Execution weight alone confers no direct authority: a member acts only
through a quorum-signed request. Anything else is denied. The check
happens before any state is touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from keep_custody.errors import NotAuthorized
from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.encoding import function_id, to_address

logger = logging.getLogger(__name__)


class PermissionDecision(str, Enum):
    """Result of a permission check."""

    SELF = "self"
    SCOPED = "scoped"
    FORBIDDEN = "forbidden"


@dataclass
class PermissionCheckResult:
    """Result of checking a caller against an entry point."""

    decision: PermissionDecision
    caller: str
    entry_point: str
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision != PermissionDecision.FORBIDDEN


class PermissionEngine:
    """Decides whether a caller may invoke a privileged entry point directly."""

    def __init__(self, keep_address: str, ledger: LedgerService) -> None:
        self.keep_address = to_address(keep_address)
        self.ledger = ledger

    def check_permission(self, caller: str, entry_point: str) -> PermissionCheckResult:
        caller = to_address(caller)

        if caller == self.keep_address:
            return PermissionCheckResult(
                decision=PermissionDecision.SELF,
                caller=caller,
                entry_point=entry_point,
                reason="Call originates from the keep itself",
            )

        if self.ledger.balance_of(caller, function_id(entry_point)) > 0:
            return PermissionCheckResult(
                decision=PermissionDecision.SCOPED,
                caller=caller,
                entry_point=entry_point,
                reason=f"Caller holds the '{entry_point}' permission identifier",
            )

        return PermissionCheckResult(
            decision=PermissionDecision.FORBIDDEN,
            caller=caller,
            entry_point=entry_point,
            reason=f"Caller {caller} may not invoke '{entry_point}'",
        )

    def require(self, caller: str, entry_point: str) -> PermissionCheckResult:
        """
        Raises:
            NotAuthorized: if the caller is not permitted.
        """
        result = self.check_permission(caller, entry_point)
        if not result.is_allowed:
            logger.warning("Permission denied: %s", result.reason)
            raise NotAuthorized(result.reason)
        return result
