"""
Kiosk Container

Per-owner shared containers that assets are deposited into and withdrawn
from. A kiosk is owned by exactly one custody domain; other domains may
deposit only under an explicit grant.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from custody.errors import NotAuthorized, PreconditionFailed
from custody.registry import CustodyDomain


@dataclass
class Kiosk:
    """A shared container owned by one custody domain."""
    kiosk_id: str
    owner: CustodyDomain
    owner_token_id: Optional[str] = None
    assets: Set[str] = field(default_factory=set)
    grants: Set[CustodyDomain] = field(default_factory=set)

    def accepts_deposit_from(self, depositor: CustodyDomain) -> bool:
        return depositor == self.owner or depositor in self.grants

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kiosk_id": self.kiosk_id,
            "owner": self.owner.value,
            "owner_token_id": self.owner_token_id,
            "assets": sorted(self.assets),
            "grants": sorted(g.value for g in self.grants),
        }


class KioskContainer:
    """Thread-safe set of kiosks keyed by kiosk id."""

    def __init__(self):
        self._kiosks: Dict[str, Kiosk] = {}
        self._lock = threading.RLock()

    def add(self, kiosk: Kiosk) -> Kiosk:
        with self._lock:
            self._kiosks[kiosk.kiosk_id] = kiosk
            return kiosk

    def get(self, kiosk_id: str) -> Kiosk:
        with self._lock:
            kiosk = self._kiosks.get(kiosk_id)
        if kiosk is None:
            raise PreconditionFailed(f"unknown kiosk {kiosk_id}")
        return kiosk

    def __contains__(self, kiosk_id: object) -> bool:
        with self._lock:
            return kiosk_id in self._kiosks

    def grant(self, kiosk_id: str, domain: CustodyDomain) -> Kiosk:
        """Allow ``domain`` to deposit into a kiosk it does not own."""
        with self._lock:
            kiosk = self.get(kiosk_id)
            kiosk.grants.add(domain)
            return kiosk

    def check_deposit(self, kiosk_id: str, asset_id: str, depositor: CustodyDomain) -> Kiosk:
        kiosk = self.get(kiosk_id)
        if not kiosk.accepts_deposit_from(depositor):
            raise NotAuthorized(
                f"{depositor.value} may not deposit into kiosk {kiosk_id} owned by {kiosk.owner.value}",
                asset_id=asset_id,
                transition="deposit",
            )
        return kiosk

    def place(self, kiosk_id: str, asset_id: str) -> Kiosk:
        with self._lock:
            kiosk = self.get(kiosk_id)
            kiosk.assets.add(asset_id)
            return kiosk

    def discard(self, kiosk_id: str, asset_id: str) -> None:
        with self._lock:
            kiosk = self._kiosks.get(kiosk_id)
            if kiosk is not None:
                kiosk.assets.discard(asset_id)

    def holds(self, kiosk_id: str, asset_id: str) -> bool:
        with self._lock:
            kiosk = self._kiosks.get(kiosk_id)
            return kiosk is not None and asset_id in kiosk.assets
