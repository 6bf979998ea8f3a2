"""
Outcome Decoder

Turns the raw response of a ledger submission into a typed ``Outcome``.
Every object change becomes one of three tagged variants keyed by its
declared type:

    Created(object_id, object_type, owner)
    Mutated(object_id, object_type, owner)
    Deleted(object_id, object_type)

The raw payload is validated against ``OUTCOME_SCHEMA`` first; anything that
does not fit raises ``DecodeError`` instead of yielding a partially filled
result. Lookups by declared type are exact, except that a declared type also
matches its generic instantiations (``pkg::m::T`` matches ``pkg::m::T<X>``).

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from jsonschema import Draft202012Validator

from custody.errors import DecodeError


SHARED_OWNER = "shared"
IMMUTABLE_OWNER = "immutable"


OUTCOME_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["digest", "status", "objectChanges"],
    "properties": {
        "digest": {"type": "string", "minLength": 1},
        "status": {
            "type": "object",
            "required": ["status"],
            "properties": {
                "status": {"enum": ["success", "failure"]},
                "error": {"type": "string"},
            },
            "if": {"properties": {"status": {"const": "failure"}}},
            "then": {"required": ["status", "error"]},
        },
        "objectChanges": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["type", "objectId", "objectType"],
                "properties": {
                    "type": {"enum": ["created", "mutated", "deleted"]},
                    "objectId": {"type": "string", "minLength": 1},
                    "objectType": {"type": "string", "minLength": 1},
                    "owner": {
                        "anyOf": [
                            {"type": "null"},
                            {"const": "Immutable"},
                            {
                                "type": "object",
                                "required": ["AddressOwner"],
                                "properties": {"AddressOwner": {"type": "string"}},
                            },
                            {
                                "type": "object",
                                "required": ["Shared"],
                            },
                            {
                                "type": "object",
                                "required": ["ObjectOwner"],
                                "properties": {"ObjectOwner": {"type": "string"}},
                            },
                        ]
                    },
                },
            },
        },
        "events": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["type"],
                "properties": {
                    "type": {"type": "string"},
                    "parsedJson": {"type": "object"},
                },
            },
        },
    },
}


@lru_cache(maxsize=1)
def _outcome_validator() -> Draft202012Validator:
    Draft202012Validator.check_schema(OUTCOME_SCHEMA)
    return Draft202012Validator(OUTCOME_SCHEMA)


def matches_type(declared: str, actual: str) -> bool:
    return actual == declared or actual.startswith(declared + "<")


# =============================================================================
# VARIANTS
# =============================================================================

class OutcomeStatus(Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"


class ChangeKind(Enum):
    CREATED = "created"
    MUTATED = "mutated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Created:
    object_id: str
    object_type: str
    owner: Optional[str] = None

    kind: ClassVar[ChangeKind] = ChangeKind.CREATED


@dataclass(frozen=True)
class Mutated:
    object_id: str
    object_type: str
    owner: Optional[str] = None

    kind: ClassVar[ChangeKind] = ChangeKind.MUTATED


@dataclass(frozen=True)
class Deleted:
    object_id: str
    object_type: str

    kind: ClassVar[ChangeKind] = ChangeKind.DELETED


ObjectChange = Union[Created, Mutated, Deleted]


@dataclass(frozen=True)
class Event:
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome:
    """Typed result of one submitted operation."""
    digest: str
    status: OutcomeStatus
    reason: str = ""
    changes: Tuple[ObjectChange, ...] = ()
    events: Tuple[Event, ...] = ()

    @property
    def committed(self) -> bool:
        return self.status == OutcomeStatus.COMMITTED

    def _of(self, kind: ChangeKind, object_type: str) -> List[ObjectChange]:
        return [
            c for c in self.changes
            if c.kind == kind and matches_type(object_type, c.object_type)
        ]

    def created(self, object_type: str) -> List[Created]:
        return self._of(ChangeKind.CREATED, object_type)  # type: ignore[return-value]

    def mutated(self, object_type: str) -> List[Mutated]:
        return self._of(ChangeKind.MUTATED, object_type)  # type: ignore[return-value]

    def deleted(self, object_type: str) -> List[Deleted]:
        return self._of(ChangeKind.DELETED, object_type)  # type: ignore[return-value]

    def single_created(self, object_type: str) -> Created:
        """The one object of ``object_type`` this operation created."""
        found = self.created(object_type)
        if len(found) != 1:
            raise DecodeError(
                f"expected exactly one created {object_type}, found {len(found)} in {self.digest}"
            )
        return found[0]

    def events_of(self, event_type: str) -> List[Event]:
        return [e for e in self.events if matches_type(event_type, e.event_type)]


# =============================================================================
# DECODER
# =============================================================================

def _decode_owner(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if raw == "Immutable":
        return IMMUTABLE_OWNER
    if "AddressOwner" in raw:
        return raw["AddressOwner"]
    if "ObjectOwner" in raw:
        return raw["ObjectOwner"]
    return SHARED_OWNER


def _decode_change(raw: Dict[str, Any]) -> ObjectChange:
    kind = ChangeKind(raw["type"])
    if kind == ChangeKind.CREATED:
        return Created(raw["objectId"], raw["objectType"], _decode_owner(raw.get("owner")))
    if kind == ChangeKind.MUTATED:
        return Mutated(raw["objectId"], raw["objectType"], _decode_owner(raw.get("owner")))
    return Deleted(raw["objectId"], raw["objectType"])


def decode_outcome(raw: Any) -> Outcome:
    """Decode a raw ledger response, raising ``DecodeError`` on any unexpected shape."""
    errors = sorted(_outcome_validator().iter_errors(raw), key=lambda e: list(e.absolute_path))
    if errors:
        err = errors[0]
        where = "/".join(str(p) for p in err.absolute_path) or "<root>"
        raise DecodeError(f"malformed ledger outcome at {where}: {err.message}")

    status_raw = raw["status"]
    committed = status_raw["status"] == "success"
    return Outcome(
        digest=raw["digest"],
        status=OutcomeStatus.COMMITTED if committed else OutcomeStatus.REJECTED,
        reason="" if committed else status_raw["error"],
        changes=tuple(_decode_change(c) for c in raw["objectChanges"]),
        events=tuple(Event(e["type"], e.get("parsedJson") or {}) for e in raw.get("events") or []),
    )
