"""
Capability Issuer

Permission objects that gate custody transitions, and the consumption ledger
that makes the single-use ones single-use.

    MintCapability   persistent, bound to an asset type, never consumed
    UnlockTicket     single use, bound to one asset id
    TransferToken    single use, bound to an asset type and a
                     (from-domain, to-domain) pair
    PublisherWitness proof of publishing authority over a package's types

Issuance is split in two steps because capability ids are assigned by the
ledger: ``authorize_*`` validates before submission, ``issue_*`` records the
committed capability. Consumption follows the same rule: the state machine
calls ``consume`` only once the authorizing operation has committed, which is
what keeps consumption and transition atomic from the caller's point of view.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from custody.errors import CapabilityAlreadyConsumed, NotAuthorized
from custody.observability import AuditEventType, AuditLogger, CustodyLayer, get_logger
from custody.registry import Asset, CustodyDomain

logger = get_logger("issuer", CustodyLayer.ISSUER)


# =============================================================================
# CAPABILITY OBJECTS
# =============================================================================

class CapabilityKind(Enum):
    MINT = "mint_capability"
    UNLOCK_TICKET = "unlock_ticket"
    TRANSFER_TOKEN = "transfer_token"


@dataclass(frozen=True)
class MintCapability:
    """Authorizes minting and unlock-ticket issuance for one asset type."""
    capability_id: str
    asset_type: str
    holder: CustodyDomain = CustodyDomain.ISSUER

    kind = CapabilityKind.MINT

    def covers(self, asset_type: str) -> bool:
        return self.asset_type == asset_type


@dataclass(frozen=True)
class PublisherWitness:
    """
    Delegated witness derived from a package publisher object.

    A publisher proves authority over every type declared in its package,
    i.e. every type string starting with ``<package_id>::``.
    """
    publisher_id: str
    package_id: str

    def covers(self, asset_type: str) -> bool:
        return asset_type.startswith(f"{self.package_id}::")


@dataclass(frozen=True)
class UnlockTicket:
    """One-time permission to flip one asset from locked to updatable."""
    capability_id: str
    asset_id: str
    holder: CustodyDomain = CustodyDomain.ISSUER

    kind = CapabilityKind.UNLOCK_TICKET


@dataclass(frozen=True)
class TransferToken:
    """One-time permission to withdraw an asset of a type between two domains."""
    capability_id: str
    asset_type: str
    from_domain: CustodyDomain
    to_domain: CustodyDomain

    kind = CapabilityKind.TRANSFER_TOKEN

    def mismatches(
        self,
        asset_type: str,
        from_domain: CustodyDomain,
        to_domain: CustodyDomain,
    ) -> List[str]:
        """Describe every binding of this token that differs from the request."""
        problems: List[str] = []
        if self.asset_type != asset_type:
            problems.append(f"type {self.asset_type} != {asset_type}")
        if self.from_domain != from_domain:
            problems.append(f"from {self.from_domain.value} != {from_domain.value}")
        if self.to_domain != to_domain:
            problems.append(f"to {self.to_domain.value} != {to_domain.value}")
        return problems


SingleUseCapability = Union[UnlockTicket, TransferToken]


# =============================================================================
# CONSUMPTION LEDGER
# =============================================================================

class ConsumptionLedger:
    """
    Registry of consumed capability ids.

    Unlike a nonce registry, entries never expire: a consumed capability
    stays consumed for the lifetime of the system.
    """

    def __init__(self):
        self._consumed: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def check_and_register(self, capability_id: str) -> bool:
        """
        Register a consumption.

        Returns True if the capability was fresh, False on a replay.
        """
        with self._lock:
            if capability_id in self._consumed:
                return False
            self._consumed[capability_id] = datetime.now(timezone.utc)
            return True

    def is_consumed(self, capability_id: str) -> bool:
        with self._lock:
            return capability_id in self._consumed

    def consumed_at(self, capability_id: str) -> Optional[datetime]:
        with self._lock:
            return self._consumed.get(capability_id)

    def size(self) -> int:
        with self._lock:
            return len(self._consumed)


# =============================================================================
# ISSUER
# =============================================================================

class CapabilityIssuer:
    """Issues capabilities and enforces single-use consumption."""

    def __init__(self, audit: Optional[AuditLogger] = None):
        self._mint_caps: Dict[str, MintCapability] = {}
        self._outstanding: Dict[str, SingleUseCapability] = {}
        self._ledger = ConsumptionLedger()
        self._lock = threading.Lock()
        self._audit = audit or AuditLogger()

    @property
    def consumption(self) -> ConsumptionLedger:
        return self._ledger

    def issue_mint_capability(self, capability_id: str, asset_type: str) -> MintCapability:
        """Register the deployment-time mint capability for an asset type."""
        cap = MintCapability(capability_id=capability_id, asset_type=asset_type)
        with self._lock:
            self._mint_caps[capability_id] = cap
        return cap

    def require_mint_capability(self, mint_cap: MintCapability, asset_type: str) -> None:
        with self._lock:
            known = self._mint_caps.get(mint_cap.capability_id)
        if known is None or known != mint_cap:
            raise NotAuthorized("mint capability not recognized", capability_id=mint_cap.capability_id)
        if not mint_cap.covers(asset_type):
            raise NotAuthorized(
                f"mint capability covers {mint_cap.asset_type}, not {asset_type}",
                capability_id=mint_cap.capability_id,
            )

    # -- unlock tickets -------------------------------------------------------

    def authorize_unlock_ticket(self, mint_cap: MintCapability, asset: Asset) -> None:
        try:
            self.require_mint_capability(mint_cap, asset.asset_type)
        except NotAuthorized as exc:
            raise NotAuthorized(exc.message, asset_id=asset.asset_id,
                                capability_id=mint_cap.capability_id,
                                transition="create_unlock_ticket") from exc

    def issue_unlock_ticket(
        self,
        mint_cap: MintCapability,
        asset: Asset,
        ticket_id: str,
        holder: CustodyDomain = CustodyDomain.ISSUER,
    ) -> UnlockTicket:
        self.authorize_unlock_ticket(mint_cap, asset)
        ticket = UnlockTicket(capability_id=ticket_id, asset_id=asset.asset_id, holder=holder)
        self._register(ticket, asset_id=asset.asset_id)
        return ticket

    # -- transfer tokens ------------------------------------------------------

    def authorize_transfer_token(self, witness: PublisherWitness, asset_type: str) -> None:
        if not witness.covers(asset_type):
            raise NotAuthorized(
                f"publisher {witness.publisher_id} has no authority over {asset_type}",
                capability_id=witness.publisher_id,
                transition="create_transfer_token",
            )

    def issue_transfer_token(
        self,
        witness: PublisherWitness,
        asset_type: str,
        from_domain: CustodyDomain,
        to_domain: CustodyDomain,
        token_id: str,
    ) -> TransferToken:
        self.authorize_transfer_token(witness, asset_type)
        token = TransferToken(
            capability_id=token_id,
            asset_type=asset_type,
            from_domain=from_domain,
            to_domain=to_domain,
        )
        self._register(token, from_domain=from_domain.value, to_domain=to_domain.value)
        return token

    def _register(self, capability: SingleUseCapability, **details: str) -> None:
        with self._lock:
            self._outstanding[capability.capability_id] = capability
        self._audit.record(
            AuditEventType.CAPABILITY_ISSUED,
            actor=CustodyDomain.ISSUER.value,
            resource_type=capability.kind.value,
            resource_id=capability.capability_id,
            action="issue",
            **details,
        )
        logger.info(
            f"Issued {capability.kind.value}",
            operation="issue",
            capability_id=capability.capability_id,
        )

    # -- consumption ----------------------------------------------------------

    def is_consumed(self, capability: SingleUseCapability) -> bool:
        return self._ledger.is_consumed(capability.capability_id)

    def check_unconsumed(self, capability: SingleUseCapability, transition: str) -> None:
        """Fast-fail a capability already known to be spent."""
        if self.is_consumed(capability):
            raise CapabilityAlreadyConsumed(
                f"{capability.kind.value} already consumed",
                capability_id=capability.capability_id,
                transition=transition,
            )

    def consume(self, capability: SingleUseCapability, transition: str = "") -> None:
        """Consume a single-use capability. A second call always fails."""
        if not self._ledger.check_and_register(capability.capability_id):
            self._audit.record(
                AuditEventType.CAPABILITY_REPLAYED,
                actor="",
                resource_type=capability.kind.value,
                resource_id=capability.capability_id,
                action="consume",
                outcome="failure",
            )
            raise CapabilityAlreadyConsumed(
                f"{capability.kind.value} already consumed",
                capability_id=capability.capability_id,
                transition=transition or None,
            )
        with self._lock:
            self._outstanding.pop(capability.capability_id, None)
        self._audit.record(
            AuditEventType.CAPABILITY_CONSUMED,
            actor="",
            resource_type=capability.kind.value,
            resource_id=capability.capability_id,
            action="consume",
            transition=transition,
        )

    def settle(self, capability: SingleUseCapability, transition: str) -> None:
        """
        Record the consumption of a capability whose authorizing operation committed.

        The committed outcome is authoritative, so this never fails: a losing
        concurrent submitter may already have marked the id consumed.
        """
        self._ledger.check_and_register(capability.capability_id)
        with self._lock:
            self._outstanding.pop(capability.capability_id, None)
        self._audit.record(
            AuditEventType.CAPABILITY_CONSUMED,
            actor="",
            resource_type=capability.kind.value,
            resource_id=capability.capability_id,
            action="consume",
            transition=transition,
        )

    def mark_consumed(self, capability_id: str) -> None:
        """Record a consumption learned from the ledger rather than performed here."""
        if self._ledger.check_and_register(capability_id):
            with self._lock:
                self._outstanding.pop(capability_id, None)
            logger.warning(
                "Capability found consumed on ledger",
                operation="reconcile",
                capability_id=capability_id,
            )

    def outstanding(self) -> List[SingleUseCapability]:
        with self._lock:
            return list(self._outstanding.values())
