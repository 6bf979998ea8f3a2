"""
Dynamic-field stats of an asset.

Stats and the game asset id are stored on the ledger as dynamic fields of the
asset, keyed by two declared key types: one field per stat under the stat key
type, and at most one game asset id under the game-asset-id key type. Fields
under any other key type are ignored.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from custody.ledger import LedgerClient

GAME_ASSET_ID_UNSET = "not set"


@dataclass
class StatSheet:
    game_asset_id: str = GAME_ASSET_ID_UNSET
    stats: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"game_asset_id": self.game_asset_id, "stats": dict(self.stats)}


def read_stats(
    ledger: LedgerClient,
    asset_id: str,
    stat_key_type: str,
    game_asset_id_key_type: str,
) -> StatSheet:
    """Decode every stat and the game asset id attached to ``asset_id``."""
    sheet = StatSheet()
    for entry in ledger.query_dynamic_fields(asset_id):
        if entry.name_type == game_asset_id_key_type:
            sheet.game_asset_id = str(entry.value)
        elif entry.name_type == stat_key_type:
            sheet.stats[entry.name] = str(entry.value)
    return sheet


def get_stat(ledger: LedgerClient, asset_id: str, name: str, stat_key_type: str) -> Optional[str]:
    for entry in ledger.query_dynamic_fields(asset_id):
        if entry.name_type == stat_key_type and entry.name == name:
            return str(entry.value)
    return None


def get_game_asset_id(ledger: LedgerClient, asset_id: str, game_asset_id_key_type: str) -> Optional[str]:
    for entry in ledger.query_dynamic_fields(asset_id):
        if entry.name_type == game_asset_id_key_type:
            return str(entry.value)
    return None
