"""
Ledger Client Interface

The custody core talks to the ledger through two protocols:

    Signer        signs an operation and submits it, returning a decoded Outcome
    LedgerClient  executes signed operations and answers read queries

``InMemoryLedger`` is the reference ``LedgerClient``. It is the authoritative
enforcer of the custody rules: every operation is validated in full before any
object is touched, so a rejected operation leaves no partial effect, and
executions are serialised so that of two operations racing for the same
single-use capability exactly one commits.

Rejections are reported the way a move-style ledger reports aborts: a failed
status with an ``"ECode: detail"`` error string.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import copy
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set, Tuple

from custody.config import ObjectTypes
from custody.observability import CustodyLayer, get_logger
from custody.operations import Operation, OperationKind, SignedOperation, SubmitOptions
from custody.outcome import Outcome, matches_type
from custody.registry import AssetFields

logger = get_logger("ledger", CustodyLayer.LEDGER)


# =============================================================================
# READ MODELS
# =============================================================================

@dataclass(frozen=True)
class ObjectRef:
    """Snapshot of one ledger object."""
    object_id: str
    object_type: str
    owner: Optional[str]
    version: int
    content: Dict[str, Any] = field(default_factory=dict)
    deleted: bool = False


@dataclass(frozen=True)
class FieldRef:
    """One dynamic field attached to a parent object."""
    parent_id: str
    name_type: str
    name: str
    value: Any


# =============================================================================
# PROTOCOLS
# =============================================================================

class Signer(Protocol):
    """Signs and submits operations on behalf of one custody domain."""

    @property
    def address(self) -> str:
        ...

    def sign(self, operation: Operation) -> SignedOperation:
        ...

    def submit(self, signed: SignedOperation, options: SubmitOptions) -> Outcome:
        """
        Submit an already signed operation.

        Raises ``LedgerFault`` when the outcome cannot be obtained.
        """
        ...

    def sign_and_submit(self, operation: Operation, options: SubmitOptions) -> Outcome:
        ...


class LedgerClient(Protocol):
    """Transport to a ledger node."""

    def execute(self, signed: SignedOperation, options: SubmitOptions) -> Dict[str, Any]:
        """
        Execute a signed operation and return the raw outcome payload.

        Executing an envelope whose digest is already known returns the
        recorded outcome without applying it again.
        """
        ...

    def query_transaction(self, digest: str) -> Optional[Dict[str, Any]]:
        """Raw outcome of a known transaction, or None if it never reached the ledger."""
        ...

    def get_object(self, object_id: str) -> Optional[ObjectRef]:
        ...

    def query_owned_objects(self, owner: str, type_filter: Optional[str] = None) -> Iterator[ObjectRef]:
        ...

    def query_dynamic_fields(self, parent_id: str) -> Iterator[FieldRef]:
        ...


# =============================================================================
# IN-MEMORY LEDGER
# =============================================================================

class _Abort(Exception):
    def __init__(self, code: str, detail: str):
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {detail}")


@dataclass
class _Object:
    object_id: str
    object_type: str
    owner: Optional[str] = None
    parent: Optional[str] = None
    shared: bool = False
    version: int = 1
    content: Dict[str, Any] = field(default_factory=dict)
    deleted: bool = False

    def raw_owner(self) -> Any:
        if self.shared:
            return {"Shared": {"initial_shared_version": 1}}
        if self.parent:
            return {"ObjectOwner": self.parent}
        if self.owner:
            return {"AddressOwner": self.owner}
        return "Immutable"

    def ref(self) -> ObjectRef:
        return ObjectRef(
            object_id=self.object_id,
            object_type=self.object_type,
            owner=self.parent or self.owner,
            version=self.version,
            content=copy.deepcopy(self.content),
            deleted=self.deleted,
        )


_Change = Dict[str, Any]
_Event = Dict[str, Any]


def _new_id() -> str:
    return "0x" + secrets.token_hex(32)


class InMemoryLedger:
    """
    Reference ledger holding every object in memory.

    Bootstrap with ``publish`` (mint capability and publisher for the issuer)
    and ``register_withdraw_policy`` before running workflows.
    """

    def __init__(self, types: ObjectTypes):
        self.types = types
        self._objects: Dict[str, _Object] = {}
        self._fields: Dict[str, Dict[Tuple[str, str], Any]] = {}
        self._transactions: Dict[str, Dict[str, Any]] = {}
        self._policies: Set[str] = set()
        self._lock = threading.Lock()
        self._handlers: Dict[OperationKind, Callable[[str, Dict[str, Any]], Tuple[List[_Change], List[_Event]]]] = {
            OperationKind.CREATE_KIOSK: self._create_kiosk,
            OperationKind.GRANT_DEPOSIT: self._grant_deposit,
            OperationKind.MINT: self._mint,
            OperationKind.DEPOSIT: self._deposit,
            OperationKind.CREATE_UNLOCK_TICKET: self._create_unlock_ticket,
            OperationKind.UNLOCK: self._unlock,
            OperationKind.UPDATE: self._update,
            OperationKind.UPDATE_STATS: self._update_stats,
            OperationKind.LOCK: self._lock_asset,
            OperationKind.TRANSFER: self._transfer,
            OperationKind.CREATE_TRANSFER_TOKEN: self._create_transfer_token,
            OperationKind.WITHDRAW: self._withdraw,
        }

    # -- bootstrap ------------------------------------------------------------

    def publish(self, issuer_address: str) -> Tuple[str, str]:
        """
        Create the mint capability and publisher object of the asset package.

        Returns (mint_cap_id, publisher_id), both owned by ``issuer_address``.
        """
        with self._lock:
            cap = self._put(_Object(
                object_id=_new_id(),
                object_type=f"{self.types.mint_cap_type}<{self.types.asset_type}>",
                owner=issuer_address,
                content={"asset_type": self.types.asset_type},
            ))
            publisher = self._put(_Object(
                object_id=_new_id(),
                object_type=self.types.publisher_type,
                owner=issuer_address,
                content={"package_id": self.types.package_id},
            ))
        logger.info("Published asset package", operation="publish",
                    mint_cap_id=cap.object_id, publisher_id=publisher.object_id)
        return cap.object_id, publisher.object_id

    def register_withdraw_policy(self, policy_id: Optional[str] = None) -> str:
        policy_id = policy_id or _new_id()
        with self._lock:
            self._policies.add(policy_id)
        return policy_id

    # -- LedgerClient ---------------------------------------------------------

    def execute(self, signed: SignedOperation, options: SubmitOptions) -> Dict[str, Any]:
        digest = signed.digest
        with self._lock:
            known = self._transactions.get(digest)
            if known is not None:
                logger.debug("Duplicate submission", operation="execute", digest=digest)
                return self._project(known, options)

            kind = signed.operation.kind
            try:
                if not signed.verify():
                    raise _Abort("ENotAuthorized", "invalid signature")
                changes, events = self._handlers[kind](signed.sender, dict(signed.operation.arguments))
                raw: Dict[str, Any] = {
                    "digest": digest,
                    "status": {"status": "success"},
                    "objectChanges": changes,
                    "events": events,
                }
            except _Abort as abort:
                raw = {
                    "digest": digest,
                    "status": {"status": "failure", "error": str(abort)},
                    "objectChanges": [],
                    "events": [],
                }
                logger.info("Operation aborted", operation=kind.value,
                            error_code=abort.code, digest=digest, detail=abort.detail)
            # An envelope with a bad signature was never authorized by its
            # sender, so it must not claim the digest.
            if raw["status"]["status"] == "success" or signed.verify():
                self._transactions[digest] = raw
            return self._project(raw, options)

    def query_transaction(self, digest: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._transactions.get(digest)
            return copy.deepcopy(raw) if raw is not None else None

    def get_object(self, object_id: str) -> Optional[ObjectRef]:
        with self._lock:
            obj = self._objects.get(object_id)
            return obj.ref() if obj is not None else None

    def query_owned_objects(self, owner: str, type_filter: Optional[str] = None) -> Iterator[ObjectRef]:
        with self._lock:
            refs = [
                o.ref() for o in self._objects.values()
                if not o.deleted and o.owner == owner and not o.parent
                and (type_filter is None or matches_type(type_filter, o.object_type))
            ]
        yield from refs

    def query_dynamic_fields(self, parent_id: str) -> Iterator[FieldRef]:
        with self._lock:
            entries = list(self._fields.get(parent_id, {}).items())
        for (name_type, name), value in entries:
            yield FieldRef(parent_id=parent_id, name_type=name_type, name=name, value=value)

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _project(raw: Dict[str, Any], options: SubmitOptions) -> Dict[str, Any]:
        out = copy.deepcopy(raw)
        if not options.include_object_deltas:
            out["objectChanges"] = []
        if not options.include_events:
            out.pop("events", None)
        return out

    def _put(self, obj: _Object) -> _Object:
        self._objects[obj.object_id] = obj
        return obj

    def _live(self, object_id: Any, what: str) -> _Object:
        obj = self._objects.get(object_id) if isinstance(object_id, str) else None
        if obj is None or obj.deleted:
            raise _Abort("EPreconditionFailed", f"unknown {what} {object_id}")
        return obj

    def _kiosk_owner(self, obj: _Object) -> Optional[str]:
        if not obj.parent:
            return None
        kiosk = self._objects.get(obj.parent)
        return kiosk.content.get("owner") if kiosk is not None else None

    def _held_by(self, obj: _Object, sender: str) -> bool:
        """Owned directly by ``sender`` or placed in a kiosk ``sender`` owns."""
        return obj.owner == sender or self._kiosk_owner(obj) == sender

    def _asset(self, asset_id: Any) -> _Object:
        obj = self._live(asset_id, "asset")
        if obj.object_type != self.types.asset_type:
            raise _Abort("EPreconditionFailed", f"object {asset_id} is not a {self.types.asset_struct}")
        return obj

    def _held_asset(self, sender: str, asset_id: Any) -> _Object:
        asset = self._asset(asset_id)
        if not self._held_by(asset, sender):
            raise _Abort("ENotOwner", f"sender does not hold asset {asset_id}")
        return asset

    def _mint_cap(self, sender: str, cap_id: Any, asset_type: str) -> _Object:
        cap = self._objects.get(cap_id) if isinstance(cap_id, str) else None
        if cap is None or cap.deleted or not matches_type(self.types.mint_cap_type, cap.object_type):
            raise _Abort("ENotAuthorized", f"unknown mint capability {cap_id}")
        if cap.owner != sender:
            raise _Abort("ENotOwner", "sender does not hold the mint capability")
        if cap.content.get("asset_type") != asset_type:
            raise _Abort("ENotAuthorized", f"mint capability does not cover {asset_type}")
        return cap

    def _event(self, name: str, **payload: Any) -> _Event:
        return {"type": f"{self.types.package_id}::custody::{name}", "parsedJson": payload}

    @staticmethod
    def _created(obj: _Object) -> _Change:
        return {"type": "created", "objectId": obj.object_id,
                "objectType": obj.object_type, "owner": obj.raw_owner()}

    @staticmethod
    def _mutated(obj: _Object) -> _Change:
        obj.version += 1
        return {"type": "mutated", "objectId": obj.object_id,
                "objectType": obj.object_type, "owner": obj.raw_owner()}

    @staticmethod
    def _deleted(obj: _Object) -> _Change:
        obj.deleted = True
        obj.version += 1
        return {"type": "deleted", "objectId": obj.object_id, "objectType": obj.object_type}

    @staticmethod
    def _checked_fields(current: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = sorted(set(changes) - set(AssetFields.names()))
        if unknown:
            raise _Abort("EPreconditionFailed", f"unknown asset fields {unknown}")
        merged = {**current, **changes}
        if merged["level"] > merged["level_cap"]:
            raise _Abort("EPreconditionFailed", "level exceeds level cap")
        return merged

    # -- operation handlers ---------------------------------------------------
    # Each handler validates everything first and mutates only afterwards.

    def _create_kiosk(self, sender: str, args: Dict[str, Any]):
        kiosk = self._put(_Object(
            object_id=_new_id(),
            object_type=self.types.kiosk_type,
            shared=True,
            content={"owner": sender, "items": [], "grants": []},
        ))
        token = self._put(_Object(
            object_id=_new_id(),
            object_type=self.types.owner_token_type,
            owner=sender,
            content={"kiosk": kiosk.object_id},
        ))
        kiosk.content["owner_token"] = token.object_id
        return (
            [self._created(kiosk), self._created(token)],
            [self._event("KioskCreated", kiosk=kiosk.object_id, owner=sender)],
        )

    def _grant_deposit(self, sender: str, args: Dict[str, Any]):
        kiosk = self._live(args.get("kiosk"), "kiosk")
        if kiosk.content["owner"] != sender:
            raise _Abort("ENotOwner", "only the kiosk owner may grant deposits")
        depositor = args.get("depositor")
        if depositor not in kiosk.content["grants"]:
            kiosk.content["grants"].append(depositor)
        return [self._mutated(kiosk)], []

    def _mint(self, sender: str, args: Dict[str, Any]):
        cap = self._mint_cap(sender, args.get("mint_cap"), self.types.asset_type)
        fields = self._checked_fields(AssetFields().to_dict(), args.get("fields") or {})
        asset = self._put(_Object(
            object_id=_new_id(),
            object_type=self.types.asset_type,
            owner=sender,
            content={"fields": fields, "updatable": False},
        ))
        dyn: Dict[Tuple[str, str], Any] = {}
        for name, value in (args.get("stats") or {}).items():
            dyn[(self.types.stat_key_type, name)] = value
        if args.get("game_asset_id"):
            dyn[(self.types.game_asset_id_key_type, "game_asset_id")] = args["game_asset_id"]
        self._fields[asset.object_id] = dyn
        return (
            [self._created(asset), self._mutated(cap)],
            [self._event("AssetMinted", asset=asset.object_id, owner=sender)],
        )

    def _deposit(self, sender: str, args: Dict[str, Any]):
        asset = self._asset(args.get("asset"))
        if asset.owner != sender or asset.parent:
            raise _Abort("ENotOwner", "sender does not own the asset outside a kiosk")
        if asset.content["updatable"]:
            raise _Abort("EAssetUnlocked", "asset must be locked before deposit")
        kiosk = self._live(args.get("kiosk"), "kiosk")
        if kiosk.content["owner"] != sender and sender not in kiosk.content["grants"]:
            raise _Abort("ENotAuthorized", "sender may not deposit into this kiosk")
        asset.owner = None
        asset.parent = kiosk.object_id
        kiosk.content["items"].append(asset.object_id)
        return (
            [self._mutated(asset), self._mutated(kiosk)],
            [self._event("AssetDeposited", asset=asset.object_id, kiosk=kiosk.object_id)],
        )

    def _create_unlock_ticket(self, sender: str, args: Dict[str, Any]):
        asset = self._asset(args.get("asset"))
        self._mint_cap(sender, args.get("mint_cap"), asset.object_type)
        recipient = args.get("recipient") or sender
        ticket = self._put(_Object(
            object_id=_new_id(),
            object_type=self.types.unlock_ticket_type,
            owner=recipient,
            content={"asset": asset.object_id},
        ))
        return [self._created(ticket)], []

    def _unlock(self, sender: str, args: Dict[str, Any]):
        ticket_id = args.get("ticket")
        ticket = self._objects.get(ticket_id) if isinstance(ticket_id, str) else None
        if ticket is None or ticket.object_type != self.types.unlock_ticket_type:
            raise _Abort("ENotAuthorized", f"unknown unlock ticket {ticket_id}")
        if ticket.deleted:
            raise _Abort("ECapabilityAlreadyConsumed", f"unlock ticket {ticket_id} already used")
        if ticket.owner != sender:
            raise _Abort("ENotOwner", "sender does not hold the unlock ticket")
        if ticket.content["asset"] != args.get("asset"):
            raise _Abort("ECapabilityMismatch", "unlock ticket is bound to another asset")
        asset = self._held_asset(sender, args.get("asset"))
        asset.content["updatable"] = True
        return (
            [self._deleted(ticket), self._mutated(asset)],
            [self._event("AssetUnlocked", asset=asset.object_id, ticket=ticket.object_id)],
        )

    def _update(self, sender: str, args: Dict[str, Any]):
        asset = self._held_asset(sender, args.get("asset"))
        if not asset.content["updatable"]:
            raise _Abort("EUpdatesLocked", "asset is locked for updates")
        asset.content["fields"] = self._checked_fields(asset.content["fields"], args.get("changes") or {})
        return [self._mutated(asset)], []

    def _update_stats(self, sender: str, args: Dict[str, Any]):
        asset = self._held_asset(sender, args.get("asset"))
        if not asset.content["updatable"]:
            raise _Abort("EUpdatesLocked", "asset is locked for updates")
        dyn = self._fields.setdefault(asset.object_id, {})
        for name, value in (args.get("stats") or {}).items():
            dyn[(self.types.stat_key_type, name)] = value
        return [self._mutated(asset)], []

    def _lock_asset(self, sender: str, args: Dict[str, Any]):
        asset = self._held_asset(sender, args.get("asset"))
        asset.content["updatable"] = False
        return (
            [self._mutated(asset)],
            [self._event("AssetLocked", asset=asset.object_id)],
        )

    def _transfer(self, sender: str, args: Dict[str, Any]):
        asset = self._asset(args.get("asset"))
        if asset.parent:
            raise _Abort("EPreconditionFailed", "asset is placed in a kiosk")
        if asset.owner != sender:
            raise _Abort("ENotOwner", "sender does not own the asset")
        if asset.content["updatable"]:
            raise _Abort("EAssetUnlocked", "asset must be locked before transfer")
        recipient = args.get("recipient")
        if not recipient:
            raise _Abort("EPreconditionFailed", "missing recipient")
        asset.owner = recipient
        return [self._mutated(asset)], []

    def _create_transfer_token(self, sender: str, args: Dict[str, Any]):
        publisher_id = args.get("publisher")
        publisher = self._objects.get(publisher_id) if isinstance(publisher_id, str) else None
        if publisher is None or publisher.deleted or publisher.object_type != self.types.publisher_type:
            raise _Abort("ENotAuthorized", f"unknown publisher {publisher_id}")
        if publisher.owner != sender:
            raise _Abort("ENotOwner", "sender does not hold the publisher")
        asset_type = args.get("asset_type") or ""
        if not asset_type.startswith(f"{publisher.content['package_id']}::"):
            raise _Abort("ENotAuthorized", f"publisher has no authority over {asset_type}")
        from_address = args.get("from_address")
        to_address = args.get("to_address")
        if not from_address or not to_address:
            raise _Abort("EPreconditionFailed", "transfer token needs both addresses")
        token = self._put(_Object(
            object_id=_new_id(),
            object_type=f"{self.types.transfer_token_type}<{asset_type}>",
            owner=from_address,
            content={"asset_type": asset_type, "from": from_address, "to": to_address},
        ))
        return [self._created(token)], []

    def _withdraw(self, sender: str, args: Dict[str, Any]):
        token_id = args.get("token")
        token = self._objects.get(token_id) if isinstance(token_id, str) else None
        if token is None or not matches_type(self.types.transfer_token_type, token.object_type):
            raise _Abort("ENotAuthorized", f"unknown transfer token {token_id}")
        if token.deleted:
            raise _Abort("ECapabilityAlreadyConsumed", f"transfer token {token_id} already used")
        if token.owner != sender:
            raise _Abort("ENotOwner", "sender does not hold the transfer token")
        kiosk = self._live(args.get("kiosk"), "kiosk")
        if kiosk.content["owner"] != sender:
            raise _Abort("ENotOwner", "only the kiosk owner may withdraw")
        asset = self._asset(args.get("asset"))
        if asset.parent != kiosk.object_id:
            raise _Abort("ENotInKiosk", "asset is not placed in this kiosk")
        if asset.content["updatable"]:
            raise _Abort("EAssetUnlocked", "asset must be locked before withdrawal")
        recipient = args.get("recipient")
        bound = token.content
        if (bound["asset_type"] != asset.object_type
                or bound["from"] != kiosk.content["owner"]
                or bound["to"] != recipient):
            raise _Abort("ECapabilityMismatch", "transfer token does not cover this withdrawal")
        if args.get("policy") not in self._policies:
            raise _Abort("EPolicyDenied", "unknown withdraw policy")

        kiosk.content["items"].remove(asset.object_id)
        asset.parent = None
        asset.owner = recipient
        return (
            [self._deleted(token), self._mutated(asset), self._mutated(kiosk)],
            [self._event("AssetWithdrawn", asset=asset.object_id,
                         kiosk=kiosk.object_id, recipient=recipient)],
        )
