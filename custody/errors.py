"""
Custody Error Taxonomy

Every failure the custody core can surface to a workflow caller. Fatal kinds
carry the asset and capability ids involved and the attempted transition so
the caller can report them without re-deriving context.

    NotAuthorized               capability missing or for the wrong type
    CapabilityAlreadyConsumed   replay, or the losing side of a race
    CapabilityMismatch          token type / domain pair differs from request
    PreconditionFailed          state does not permit the transition
    PolicyDenied                withdraw policy rejected the request
    Indeterminate               outcome unknown (timeout, connectivity)

Only Indeterminate is recoverable; the state machine reconciles it by
querying the ledger before any resubmission.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Dict, Optional, Type


class CustodyError(Exception):
    """Base class for custody protocol failures."""

    code = "ECustody"
    retryable = False

    def __init__(
        self,
        message: str,
        asset_id: Optional[str] = None,
        capability_id: Optional[str] = None,
        transition: Optional[str] = None,
    ):
        self.message = message
        self.asset_id = asset_id
        self.capability_id = capability_id
        self.transition = transition
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [self.message]
        if self.transition:
            parts.append(f"transition={self.transition}")
        if self.asset_id:
            parts.append(f"asset={self.asset_id}")
        if self.capability_id:
            parts.append(f"capability={self.capability_id}")
        return " ".join(parts)


class NotAuthorized(CustodyError):
    """Capability missing or bound to a different asset type."""
    code = "ENotAuthorized"


class CapabilityAlreadyConsumed(CustodyError):
    """A single-use capability was presented a second time."""
    code = "ECapabilityAlreadyConsumed"


class CapabilityMismatch(CustodyError):
    """Transfer token type or domain pair does not match the request."""
    code = "ECapabilityMismatch"


class PreconditionFailed(CustodyError):
    """Asset state does not permit the requested transition."""
    code = "EPreconditionFailed"


class PolicyDenied(CustodyError):
    """Withdraw policy predicate rejected the withdrawal."""
    code = "EPolicyDenied"

    def __init__(self, reason: str, **kwargs):
        self.reason = reason
        super().__init__(f"withdraw policy denied: {reason}", **kwargs)


class Indeterminate(CustodyError):
    """Submission outcome unknown; committed state must be re-queried."""
    code = "EIndeterminate"
    retryable = True

    def __init__(self, message: str, digest: str = "", **kwargs):
        self.digest = digest
        super().__init__(message, **kwargs)


class DecodeError(CustodyError):
    """Ledger response did not match the expected outcome shape."""
    code = "EDecode"


class LedgerFault(Exception):
    """Connectivity or transport failure raised by a ledger client."""
    pass


class ConfigError(Exception):
    """Configuration error."""
    pass


# Abort codes a ledger may return in a rejected outcome. Ledger-specific
# refinements of PreconditionFailed carry enough detail for the state machine
# to correct its local view before propagating.
REJECTION_CODES: Dict[str, Type[CustodyError]] = {
    NotAuthorized.code: NotAuthorized,
    CapabilityAlreadyConsumed.code: CapabilityAlreadyConsumed,
    CapabilityMismatch.code: CapabilityMismatch,
    PreconditionFailed.code: PreconditionFailed,
    PolicyDenied.code: PolicyDenied,
    "EUpdatesLocked": PreconditionFailed,
    "EAssetUnlocked": PreconditionFailed,
    "ENotInKiosk": PreconditionFailed,
    "ENotOwner": NotAuthorized,
}


def split_rejection(reason: str) -> tuple:
    """Split a rejection reason ``"ECode: detail"`` into (code, detail)."""
    code, _, detail = reason.partition(":")
    return code.strip(), detail.strip()


def error_for_rejection(
    reason: str,
    asset_id: Optional[str] = None,
    capability_id: Optional[str] = None,
    transition: Optional[str] = None,
) -> CustodyError:
    """Map a ledger rejection reason onto the error taxonomy."""
    code, detail = split_rejection(reason)
    cls = REJECTION_CODES.get(code)
    context = dict(asset_id=asset_id, capability_id=capability_id, transition=transition)
    if cls is None:
        return PreconditionFailed(f"ledger rejected operation: {reason}", **context)
    if cls is PolicyDenied:
        return PolicyDenied(detail or "rejected by ledger", **context)
    return cls(f"ledger rejected operation: {detail or code}", **context)
