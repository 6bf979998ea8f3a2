"""
Asset Registry

In-memory mirror of the assets a custody workflow has observed on the ledger.
The registry holds data only; the sequencing rules live in the state machine.
It does enforce I1 structurally: a mutation call against a record flagged
``updatable=False`` is rejected here, before anything is submitted.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from custody.errors import PreconditionFailed


# =============================================================================
# CUSTODY DOMAINS AND STATES
# =============================================================================

class CustodyDomain(Enum):
    """Logical holders of assets."""
    ISSUER = "issuer"
    CUSTODIAL_WALLET = "custodial_wallet"
    NON_CUSTODIAL_WALLET = "non_custodial_wallet"


class AssetState(Enum):
    """Placement of an asset in the custody lifecycle."""
    MINTED = "minted"
    IN_KIOSK = "in_kiosk"
    TRANSFER_PENDING = "transfer_pending"
    WITHDRAWN = "withdrawn"

    def is_held(self) -> bool:
        """True when the asset sits with an owner and no transfer is in flight."""
        return self is not AssetState.TRANSFER_PENDING

    def is_loose(self) -> bool:
        """True when the asset is held directly by a wallet, outside any kiosk."""
        return self in {AssetState.MINTED, AssetState.WITHDRAWN}


# =============================================================================
# ASSET RECORDS
# =============================================================================

@dataclass(frozen=True)
class AssetFields:
    """Mutable fields of an asset. Replaced wholesale on every update."""
    name: str = "Battle Pass"
    description: str = ""
    media_url: str = ""
    level: int = 1
    level_cap: int = 70
    xp: int = 0
    xp_to_next_level: int = 1000

    @classmethod
    def names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def with_changes(self, **changes: Any) -> "AssetFields":
        unknown = sorted(set(changes) - set(self.names()))
        if unknown:
            raise PreconditionFailed(f"unknown asset fields: {unknown}", transition="update")
        updated = replace(self, **changes)
        if updated.level > updated.level_cap:
            raise PreconditionFailed(
                f"level {updated.level} exceeds level cap {updated.level_cap}",
                transition="update",
            )
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.names()}


@dataclass
class TransitionRecord:
    """One committed transition of an asset."""
    transition: str
    from_state: Optional[AssetState]
    to_state: AssetState
    digest: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transition": self.transition,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "digest": self.digest,
            "timestamp": self.timestamp,
        }


@dataclass
class Asset:
    """A mintable, mutable, non-fungible asset as last observed."""
    asset_id: str
    asset_type: str
    fields: AssetFields
    owner: CustodyDomain = CustodyDomain.ISSUER
    state: AssetState = AssetState.MINTED
    updatable: bool = False
    kiosk_id: Optional[str] = None
    stats: Dict[str, str] = field(default_factory=dict)
    game_asset_id: Optional[str] = None
    history: List[TransitionRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "asset_type": self.asset_type,
            "fields": self.fields.to_dict(),
            "owner": self.owner.value,
            "state": self.state.value,
            "updatable": self.updatable,
            "kiosk_id": self.kiosk_id,
            "stats": dict(self.stats),
            "game_asset_id": self.game_asset_id,
            "history": [h.to_dict() for h in self.history],
        }


# =============================================================================
# REGISTRY
# =============================================================================

class AssetRegistry:
    """Thread-safe store of asset records keyed by asset id."""

    def __init__(self):
        self._assets: Dict[str, Asset] = {}
        self._lock = threading.RLock()

    def add(self, asset: Asset) -> Asset:
        with self._lock:
            if asset.asset_id in self._assets:
                raise PreconditionFailed("asset already registered", asset_id=asset.asset_id)
            self._assets[asset.asset_id] = asset
            return asset

    def get(self, asset_id: str) -> Asset:
        with self._lock:
            asset = self._assets.get(asset_id)
        if asset is None:
            raise PreconditionFailed("unknown asset", asset_id=asset_id)
        return asset

    def __contains__(self, asset_id: object) -> bool:
        with self._lock:
            return asset_id in self._assets

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)

    def require_mutable(self, asset_id: str, transition: str = "update") -> Asset:
        """Return the asset, or raise when updates are locked (I1)."""
        asset = self.get(asset_id)
        if not asset.updatable:
            raise PreconditionFailed(
                "asset is locked for updates",
                asset_id=asset_id,
                transition=transition,
            )
        return asset

    def apply_fields(self, asset_id: str, **changes: Any) -> Asset:
        """Apply a committed update. Mutability is checked before submission, not here."""
        with self._lock:
            asset = self.get(asset_id)
            asset.fields = asset.fields.with_changes(**changes)
            return asset

    def apply_stats(self, asset_id: str, stats: Dict[str, str]) -> Asset:
        with self._lock:
            asset = self.get(asset_id)
            asset.stats.update(stats)
            return asset

    def resync(
        self,
        asset_id: str,
        state: AssetState,
        owner: CustodyDomain,
        kiosk_id: Optional[str],
        updatable: bool,
        fields: Optional[AssetFields] = None,
    ) -> Asset:
        """Overwrite placement, custody domain and lock state with what the ledger reports."""
        with self._lock:
            asset = self.get(asset_id)
            asset.state = state
            asset.owner = owner
            asset.kiosk_id = kiosk_id
            asset.updatable = updatable
            if fields is not None:
                asset.fields = fields
            return asset

    def set_updatable(self, asset_id: str, updatable: bool) -> Asset:
        with self._lock:
            asset = self.get(asset_id)
            asset.updatable = updatable
            return asset

    def move(
        self,
        asset_id: str,
        state: AssetState,
        owner: Optional[CustodyDomain] = None,
        kiosk_id: Optional[str] = None,
    ) -> Asset:
        """Record a change of placement and, optionally, custody domain."""
        with self._lock:
            asset = self.get(asset_id)
            asset.state = state
            if owner is not None:
                asset.owner = owner
            asset.kiosk_id = kiosk_id
            return asset

    def record(self, asset_id: str, record: TransitionRecord) -> None:
        with self._lock:
            self.get(asset_id).history.append(record)
