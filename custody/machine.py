"""
Custody State Machine

Sequences custody transitions of assets across the issuer, the custodial
wallet, the non-custodial wallet and their kiosks.

    MINTED ──deposit──▶ IN_KIOSK ──withdraw──▶ TRANSFER_PENDING ──commit──▶ WITHDRAWN
                          ▲                          │                          │
                          └──────── rejected ────────┘                          │
                          └──────────────────────── deposit ────────────────────┘

    updatable:  false ──unlock(ticket)──▶ true ──lock──▶ false

Every transition is submitted as exactly one ledger operation. Preconditions
that can be checked locally are checked before submission; the local mirror
(registry, kiosks, capability consumption) is advanced only once the ledger
has returned a committed outcome for that operation. A rejected outcome is
mapped onto the error taxonomy after the mirror has been corrected from the
rejection code.

A timeout or a ledger fault leaves the outcome unknown, and so does a
response that cannot be decoded. The machine then reconciles: it looks the
transaction up by digest, checks whether the capability it presented still
exists, and only then resubmits the same signed envelope, at most
``max_resubmits`` times. An ``Indeterminate`` that reaches the caller is
resolved with ``refresh``, which rebuilds the asset from the ledger object.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Set

from custody.capabilities import (
    CapabilityIssuer,
    MintCapability,
    PublisherWitness,
    TransferToken,
    UnlockTicket,
)
from custody.config import CustodyConfig
from custody.errors import (
    CapabilityAlreadyConsumed,
    CapabilityMismatch,
    ConfigError,
    CustodyError,
    DecodeError,
    Indeterminate,
    LedgerFault,
    NotAuthorized,
    PolicyDenied,
    PreconditionFailed,
    error_for_rejection,
    split_rejection,
)
from custody.kiosk import Kiosk, KioskContainer
from custody.ledger import InMemoryLedger, LedgerClient, Signer
from custody.observability import AuditEventType, AuditLogger, CustodyLayer, get_logger
from custody.operations import Operation, OperationKind, SignedOperation, SubmitOptions
from custody.outcome import Outcome, decode_outcome
from custody.policy import WithdrawPolicy, WithdrawRequest
from custody.registry import (
    Asset,
    AssetFields,
    AssetRegistry,
    AssetState,
    CustodyDomain,
    TransitionRecord,
)
from custody.resilience import OperationTimeout, ReconcilePolicy, Timeout
from custody.signer import Keypair, signers_from_config

logger = get_logger("machine", CustodyLayer.MACHINE)

COMMIT_OPTIONS = SubmitOptions(
    wait_for_commit=True,
    include_effects=True,
    include_events=True,
    include_object_deltas=True,
)


class CustodyStateMachine:
    """Capability-gated custody workflow over one ledger."""

    # Placement changes only; transitions that keep the placement
    # (unlock, update, lock, transfer) are always allowed.
    VALID_TRANSITIONS: Dict[AssetState, Set[AssetState]] = {
        AssetState.MINTED: {AssetState.IN_KIOSK},
        AssetState.IN_KIOSK: {AssetState.TRANSFER_PENDING},
        AssetState.TRANSFER_PENDING: {AssetState.WITHDRAWN, AssetState.IN_KIOSK},
        AssetState.WITHDRAWN: {AssetState.IN_KIOSK},
    }

    def __init__(
        self,
        config: CustodyConfig,
        signers: Mapping[CustodyDomain, Signer],
        ledger: LedgerClient,
        registry: Optional[AssetRegistry] = None,
        kiosks: Optional[KioskContainer] = None,
        issuer: Optional[CapabilityIssuer] = None,
        audit: Optional[AuditLogger] = None,
    ):
        config.require("package_id", "kiosk_package_id", "nft_protocol_package_id")
        self.config = config
        self.types = config.types
        self.signers = dict(signers)
        self.ledger = ledger
        self.registry = registry or AssetRegistry()
        self.kiosks = kiosks or KioskContainer()
        self.audit = audit or AuditLogger()
        self.issuer = issuer or CapabilityIssuer(audit=self.audit)
        self.reconcile_policy = ReconcilePolicy.from_config(config)
        self._timeout = Timeout(self.reconcile_policy.commit_timeout_seconds, name="commit")
        self._withdrawing: Dict[str, int] = {}
        self._lock = threading.Lock()

        if config.mint_cap_id:
            self.issuer.issue_mint_capability(config.mint_cap_id, self.types.asset_type)

    # -------------------------------------------------------------------------
    # Deployment capabilities
    # -------------------------------------------------------------------------

    @property
    def mint_capability(self) -> MintCapability:
        self.config.require("mint_cap_id")
        return MintCapability(capability_id=self.config.mint_cap_id, asset_type=self.types.asset_type)

    @property
    def publisher(self) -> PublisherWitness:
        self.config.require("publisher_id")
        return PublisherWitness(publisher_id=self.config.publisher_id, package_id=self.config.package_id)

    def address(self, domain: CustodyDomain) -> str:
        return self._signer(domain).address

    def _signer(self, domain: CustodyDomain) -> Signer:
        signer = self.signers.get(domain)
        if signer is None:
            raise ConfigError(f"no signer configured for {domain.value}")
        return signer

    def asset(self, asset_id: str) -> Asset:
        return self.registry.get(asset_id)

    # -------------------------------------------------------------------------
    # Submission and reconciliation
    # -------------------------------------------------------------------------

    def _submit(
        self,
        domain: CustodyDomain,
        operation: Operation,
        transition: str,
        asset_id: Optional[str] = None,
        capability_id: Optional[str] = None,
    ) -> Outcome:
        """Submit one operation and return its committed outcome, or raise."""
        signer = self._signer(domain)
        signed = signer.sign(operation)
        start = time.monotonic()
        outcome = self._submit_signed(signer, signed, transition, asset_id, capability_id)
        duration_ms = (time.monotonic() - start) * 1000

        if outcome.committed:
            logger.operation(transition, duration_ms, success=True,
                             digest=outcome.digest, asset_id=asset_id)
            return outcome

        error = error_for_rejection(outcome.reason, asset_id, capability_id, transition)
        self._rederive(outcome.reason, asset_id, capability_id)
        self.audit.record(
            AuditEventType.TRANSITION_REJECTED,
            actor=domain.value,
            resource_type="asset",
            resource_id=asset_id or capability_id or "",
            action=transition,
            outcome="failure",
            reason=outcome.reason,
            digest=outcome.digest,
        )
        logger.operation(transition, duration_ms, success=False, error_code=error.code,
                         digest=outcome.digest, asset_id=asset_id, reason=outcome.reason)
        raise error

    def _submit_signed(
        self,
        signer: Signer,
        signed: SignedOperation,
        transition: str,
        asset_id: Optional[str],
        capability_id: Optional[str],
    ) -> Outcome:
        resubmits = 0
        while True:
            try:
                return self._timeout.execute(lambda: signer.submit(signed, COMMIT_OPTIONS))
            except (OperationTimeout, LedgerFault, DecodeError) as exc:
                indeterminate = Indeterminate(
                    f"outcome unknown: {exc}",
                    digest=signed.digest,
                    asset_id=asset_id,
                    capability_id=capability_id,
                    transition=transition,
                )
            logger.warning("Indeterminate outcome, reconciling", operation=transition,
                           digest=signed.digest, attempt=resubmits)

            outcome = self._reconcile(signed, transition, asset_id, capability_id, indeterminate)
            if outcome is not None:
                return outcome
            if resubmits >= self.reconcile_policy.max_resubmits:
                raise indeterminate
            resubmits += 1

    def _reconcile(
        self,
        signed: SignedOperation,
        transition: str,
        asset_id: Optional[str],
        capability_id: Optional[str],
        indeterminate: Indeterminate,
    ) -> Optional[Outcome]:
        """
        Decide what an indeterminate submission did.

        Returns the recorded outcome if the ledger knows the transaction,
        None if it is safe to resubmit, and raises otherwise.
        """
        try:
            raw = self.ledger.query_transaction(signed.digest)
        except LedgerFault as exc:
            raise indeterminate from exc

        if raw is not None:
            outcome = decode_outcome(raw)
            self.audit.record(
                AuditEventType.RECONCILED,
                actor="",
                resource_type="transaction",
                resource_id=signed.digest,
                action=transition,
                outcome="success" if outcome.committed else "failure",
            )
            return outcome

        if capability_id:
            try:
                consumed = self._consumed_on_ledger(capability_id)
            except LedgerFault as exc:
                raise indeterminate from exc
            if consumed:
                self._refresh_after_rejection(asset_id)
                raise CapabilityAlreadyConsumed(
                    "capability consumed by another operation",
                    asset_id=asset_id,
                    capability_id=capability_id,
                    transition=transition,
                )
        return None

    def _consumed_on_ledger(self, capability_id: str) -> bool:
        """True, and recorded locally, when the ledger no longer holds the capability."""
        ref = self.ledger.get_object(capability_id)
        if ref is None or ref.deleted:
            self.issuer.mark_consumed(capability_id)
            return True
        return False

    def _rederive(self, reason: str, asset_id: Optional[str], capability_id: Optional[str]) -> None:
        """Correct the local mirror from a ledger rejection code."""
        code, _ = split_rejection(reason)
        if asset_id and asset_id in self.registry:
            if code == "EUpdatesLocked":
                self.registry.set_updatable(asset_id, False)
            elif code == "EAssetUnlocked":
                self.registry.set_updatable(asset_id, True)
        if capability_id and code == CapabilityAlreadyConsumed.code:
            self.issuer.mark_consumed(capability_id)
            # Whatever consumed the capability may have moved or unlocked the asset.
            self._refresh_after_rejection(asset_id)

    def _refresh_after_rejection(self, asset_id: Optional[str]) -> None:
        if not asset_id or asset_id not in self.registry:
            return
        try:
            self.refresh(asset_id)
        except (LedgerFault, PreconditionFailed) as exc:
            logger.warning("Asset not re-read after rejection", asset_id=asset_id, error=str(exc))

    def refresh(self, asset_id: str) -> Asset:
        """
        Rebuild the mirror of ``asset_id`` from the ledger object.

        Use after an ``Indeterminate``: owner, kiosk placement, lock state and
        fields are taken from the ledger. An asset the ledger still shows in
        its kiosk stays TRANSFER_PENDING only while a withdraw of it is in
        flight here; one the ledger shows outside any kiosk is WITHDRAWN
        unless it never left its holder.
        """
        asset = self.registry.get(asset_id)
        ref = self.ledger.get_object(asset_id)
        if ref is None or ref.deleted:
            raise PreconditionFailed("asset not found on the ledger",
                                     asset_id=asset_id, transition="refresh")

        with self._lock:
            from_state = asset.state
            if ref.owner in self.kiosks:
                kiosk_id = ref.owner
                owner = self.kiosks.get(kiosk_id).owner
                pending = from_state is AssetState.TRANSFER_PENDING and asset_id in self._withdrawing
                state = AssetState.TRANSFER_PENDING if pending else AssetState.IN_KIOSK
            else:
                kiosk_id = None
                owner = self._domain_at(ref.owner, asset_id)
                state = from_state if from_state.is_loose() else AssetState.WITHDRAWN
            if asset.kiosk_id and asset.kiosk_id != kiosk_id:
                self.kiosks.discard(asset.kiosk_id, asset_id)
            if kiosk_id:
                self.kiosks.place(kiosk_id, asset_id)
            fields = ref.content.get("fields")
            self.registry.resync(
                asset_id,
                state=state,
                owner=owner,
                kiosk_id=kiosk_id,
                updatable=bool(ref.content.get("updatable", asset.updatable)),
                fields=AssetFields(**fields) if fields else None,
            )

        self.audit.record(
            AuditEventType.RECONCILED,
            actor="",
            resource_type="asset",
            resource_id=asset_id,
            action="refresh",
            from_state=from_state.value,
            to_state=state.value,
            owner=owner.value,
        )
        logger.info("Asset refreshed from ledger", operation="refresh", asset_id=asset_id,
                    from_state=from_state.value, to_state=state.value)
        return asset

    def _domain_at(self, address: Optional[str], asset_id: str) -> CustodyDomain:
        for domain, signer in self.signers.items():
            if signer.address == address:
                return domain
        raise PreconditionFailed(f"asset is held by unknown address {address}",
                                 asset_id=asset_id, transition="refresh")

    def _can_move(self, from_state: AssetState, to_state: AssetState) -> bool:
        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    def _move(
        self,
        asset_id: str,
        to_state: AssetState,
        transition: str,
        owner: Optional[CustodyDomain] = None,
        kiosk_id: Optional[str] = None,
    ) -> Asset:
        asset = self.registry.get(asset_id)
        if not self._can_move(asset.state, to_state):
            raise PreconditionFailed(
                f"invalid placement change {asset.state.value} -> {to_state.value}",
                asset_id=asset_id,
                transition=transition,
            )
        return self.registry.move(asset_id, to_state, owner=owner, kiosk_id=kiosk_id)

    def _commit(
        self,
        asset_id: str,
        transition: str,
        from_state: Optional[AssetState],
        outcome: Outcome,
        actor: CustodyDomain,
        **details: Any,
    ) -> None:
        """Append the committed transition to the asset history and the audit log."""
        to_state = self.registry.get(asset_id).state
        self.registry.record(asset_id, TransitionRecord(
            transition=transition,
            from_state=from_state,
            to_state=to_state,
            digest=outcome.digest,
        ))
        self.audit.record(
            AuditEventType.TRANSITION,
            actor=actor.value,
            resource_type="asset",
            resource_id=asset_id,
            action=transition,
            digest=outcome.digest,
            **details,
        )

    # -------------------------------------------------------------------------
    # Kiosks
    # -------------------------------------------------------------------------

    def create_kiosk(self, owner: CustodyDomain) -> Kiosk:
        outcome = self._submit(owner, Operation(OperationKind.CREATE_KIOSK), "create_kiosk")
        kiosk_id = outcome.single_created(self.types.kiosk_type).object_id
        token_id = outcome.single_created(self.types.owner_token_type).object_id
        kiosk = self.kiosks.add(Kiosk(kiosk_id=kiosk_id, owner=owner, owner_token_id=token_id))
        logger.info("Kiosk created", operation="create_kiosk", kiosk_id=kiosk_id, owner=owner.value)
        return kiosk

    def grant_deposit(self, kiosk_id: str, depositor: CustodyDomain) -> Kiosk:
        """Let ``depositor`` place assets into a kiosk owned by another domain."""
        kiosk = self.kiosks.get(kiosk_id)
        operation = Operation(OperationKind.GRANT_DEPOSIT, {
            "kiosk": kiosk_id,
            "depositor": self.address(depositor),
        })
        self._submit(kiosk.owner, operation, "grant_deposit")
        return self.kiosks.grant(kiosk_id, depositor)

    def kiosks_of(self, domain: CustodyDomain) -> List[str]:
        """Kiosk ids whose owner token is held by ``domain``."""
        tokens = self.ledger.query_owned_objects(self.address(domain), self.types.owner_token_type)
        return [ref.content["kiosk"] for ref in tokens if "kiosk" in ref.content]

    # -------------------------------------------------------------------------
    # Mint and deposit
    # -------------------------------------------------------------------------

    def mint(
        self,
        mint_cap: MintCapability,
        fields: Optional[Mapping[str, Any]] = None,
        stats: Optional[Mapping[str, str]] = None,
        game_asset_id: Optional[str] = None,
    ) -> Asset:
        asset_type = self.types.asset_type
        self.issuer.require_mint_capability(mint_cap, asset_type)
        try:
            initial = AssetFields().with_changes(**dict(fields or {}))
        except PreconditionFailed as exc:
            raise PreconditionFailed(exc.message, transition="mint") from exc

        operation = Operation(OperationKind.MINT, {
            "mint_cap": mint_cap.capability_id,
            "fields": initial.to_dict(),
            "stats": dict(stats or {}),
            "game_asset_id": game_asset_id,
        })
        outcome = self._submit(CustodyDomain.ISSUER, operation, "mint",
                               capability_id=mint_cap.capability_id)
        created = outcome.single_created(asset_type)
        asset = self.registry.add(Asset(
            asset_id=created.object_id,
            asset_type=asset_type,
            fields=initial,
            owner=CustodyDomain.ISSUER,
            state=AssetState.MINTED,
            updatable=False,
            stats=dict(stats or {}),
            game_asset_id=game_asset_id,
        ))
        self._commit(asset.asset_id, "mint", None, outcome, CustodyDomain.ISSUER)
        return asset

    def deposit(
        self,
        asset_id: str,
        kiosk_id: str,
        depositor: Optional[CustodyDomain] = None,
    ) -> Asset:
        asset = self.registry.get(asset_id)
        depositor = depositor or asset.owner
        if not self._can_move(asset.state, AssetState.IN_KIOSK):
            raise PreconditionFailed(
                f"asset is {asset.state.value}, not held outside a kiosk",
                asset_id=asset_id, transition="deposit",
            )
        if asset.owner != depositor:
            raise NotAuthorized(
                f"{depositor.value} does not hold the asset",
                asset_id=asset_id, transition="deposit",
            )
        if asset.updatable:
            raise PreconditionFailed("asset must be locked before deposit",
                                     asset_id=asset_id, transition="deposit")
        kiosk = self.kiosks.check_deposit(kiosk_id, asset_id, depositor)

        operation = Operation(OperationKind.DEPOSIT, {"asset": asset_id, "kiosk": kiosk_id})
        outcome = self._submit(depositor, operation, "deposit", asset_id=asset_id)

        from_state = asset.state
        self._move(asset_id, AssetState.IN_KIOSK, "deposit", owner=kiosk.owner, kiosk_id=kiosk_id)
        self.kiosks.place(kiosk_id, asset_id)
        self._commit(asset_id, "deposit", from_state, outcome, depositor, kiosk_id=kiosk_id)
        return asset

    # -------------------------------------------------------------------------
    # Unlock, update, lock
    # -------------------------------------------------------------------------

    def create_unlock_ticket(
        self,
        mint_cap: MintCapability,
        asset_id: str,
        holder: Optional[CustodyDomain] = None,
    ) -> UnlockTicket:
        """Issue a ticket for ``asset_id`` to ``holder`` (the asset's current holder by default)."""
        asset = self.registry.get(asset_id)
        holder = holder or asset.owner
        self.issuer.authorize_unlock_ticket(mint_cap, asset)

        operation = Operation(OperationKind.CREATE_UNLOCK_TICKET, {
            "mint_cap": mint_cap.capability_id,
            "asset": asset_id,
            "recipient": self.address(holder),
        })
        outcome = self._submit(CustodyDomain.ISSUER, operation, "create_unlock_ticket",
                               asset_id=asset_id, capability_id=mint_cap.capability_id)
        ticket_id = outcome.single_created(self.types.unlock_ticket_type).object_id
        return self.issuer.issue_unlock_ticket(mint_cap, asset, ticket_id, holder)

    def unlock(self, asset_id: str, ticket: UnlockTicket) -> Asset:
        self.issuer.check_unconsumed(ticket, "unlock")
        if ticket.asset_id != asset_id:
            raise CapabilityMismatch(
                f"unlock ticket is bound to asset {ticket.asset_id}",
                asset_id=asset_id, capability_id=ticket.capability_id, transition="unlock",
            )
        asset = self.registry.get(asset_id)
        if not asset.state.is_held():
            raise PreconditionFailed("asset has a transfer in flight",
                                     asset_id=asset_id, transition="unlock")

        operation = Operation(OperationKind.UNLOCK, {"asset": asset_id, "ticket": ticket.capability_id})
        outcome = self._submit(ticket.holder, operation, "unlock",
                               asset_id=asset_id, capability_id=ticket.capability_id)

        self.issuer.settle(ticket, "unlock")
        self.registry.set_updatable(asset_id, True)
        self._commit(asset_id, "unlock", asset.state, outcome, ticket.holder,
                     ticket_id=ticket.capability_id)
        return asset

    def update(self, asset_id: str, **changes: Any) -> Asset:
        asset = self.registry.require_mutable(asset_id, "update")
        try:
            asset.fields.with_changes(**changes)
        except PreconditionFailed as exc:
            raise PreconditionFailed(exc.message, asset_id=asset_id, transition="update") from exc

        operation = Operation(OperationKind.UPDATE, {"asset": asset_id, "changes": dict(changes)})
        outcome = self._submit(asset.owner, operation, "update", asset_id=asset_id)

        self.registry.apply_fields(asset_id, **changes)
        self._commit(asset_id, "update", asset.state, outcome, asset.owner, fields=sorted(changes))
        return asset

    def update_stats(self, asset_id: str, stats: Mapping[str, str]) -> Asset:
        """Update or add stats; subject to the same lock as ``update``."""
        asset = self.registry.require_mutable(asset_id, "update_stats")

        operation = Operation(OperationKind.UPDATE_STATS, {"asset": asset_id, "stats": dict(stats)})
        outcome = self._submit(asset.owner, operation, "update_stats", asset_id=asset_id)

        self.registry.apply_stats(asset_id, dict(stats))
        self._commit(asset_id, "update_stats", asset.state, outcome, asset.owner, stats=sorted(stats))
        return asset

    def lock(self, asset_id: str) -> Asset:
        asset = self.registry.get(asset_id)
        if not asset.state.is_held():
            raise PreconditionFailed("asset has a transfer in flight",
                                     asset_id=asset_id, transition="lock")

        operation = Operation(OperationKind.LOCK, {"asset": asset_id})
        outcome = self._submit(asset.owner, operation, "lock", asset_id=asset_id)

        self.registry.set_updatable(asset_id, False)
        self._commit(asset_id, "lock", asset.state, outcome, asset.owner)
        return asset

    # -------------------------------------------------------------------------
    # Transfer tokens, withdraw, transfer
    # -------------------------------------------------------------------------

    def create_transfer_token(
        self,
        witness: PublisherWitness,
        from_domain: CustodyDomain,
        to_domain: CustodyDomain,
        asset_type: Optional[str] = None,
    ) -> TransferToken:
        asset_type = asset_type or self.types.asset_type
        self.issuer.authorize_transfer_token(witness, asset_type)

        operation = Operation(OperationKind.CREATE_TRANSFER_TOKEN, {
            "publisher": witness.publisher_id,
            "asset_type": asset_type,
            "from_address": self.address(from_domain),
            "to_address": self.address(to_domain),
        })
        outcome = self._submit(CustodyDomain.ISSUER, operation, "create_transfer_token",
                               capability_id=witness.publisher_id)
        token_id = outcome.single_created(self.types.transfer_token_type).object_id
        return self.issuer.issue_transfer_token(witness, asset_type, from_domain, to_domain, token_id)

    def withdraw(
        self,
        asset_id: str,
        kiosk_id: str,
        token: TransferToken,
        policy: WithdrawPolicy,
        destination: Optional[CustodyDomain] = None,
    ) -> Asset:
        """
        Withdraw a locked asset from a kiosk, consuming ``token``.

        The asset is TRANSFER_PENDING while the operation is in flight and
        stays so if the outcome could not be determined. Retrying such a
        withdraw first rebuilds the asset from the ledger. Concurrent
        withdraws presenting the same token are all submitted; the ledger
        commits one and the others fail with ``CapabilityAlreadyConsumed``.
        """
        self.issuer.check_unconsumed(token, "withdraw")
        asset = self.registry.get(asset_id)
        kiosk = self.kiosks.get(kiosk_id)
        context = dict(asset_id=asset_id, capability_id=token.capability_id, transition="withdraw")

        with self._lock:
            left_pending = asset.state is AssetState.TRANSFER_PENDING and asset_id not in self._withdrawing
        if left_pending:
            self.refresh(asset_id)
            if self._consumed_on_ledger(token.capability_id):
                raise CapabilityAlreadyConsumed("transfer token already used", **context)

        if asset.state not in (AssetState.IN_KIOSK, AssetState.TRANSFER_PENDING) \
                or not self.kiosks.holds(kiosk_id, asset_id):
            raise PreconditionFailed(f"asset is not placed in kiosk {kiosk_id}", **context)
        if asset.updatable:
            raise PreconditionFailed("asset must be locked before withdrawal", **context)

        destination = destination or token.to_domain
        problems = token.mismatches(asset.asset_type, kiosk.owner, destination)
        if problems:
            raise CapabilityMismatch("transfer token mismatch: " + "; ".join(problems), **context)

        request = WithdrawRequest(
            asset_id=asset_id,
            asset_type=asset.asset_type,
            kiosk_id=kiosk_id,
            from_domain=kiosk.owner,
            to_domain=destination,
        )
        decision = policy.evaluate(request)
        if not decision.approved:
            raise PolicyDenied(decision.reason, **context)

        operation = Operation(OperationKind.WITHDRAW, {
            "asset": asset_id,
            "kiosk": kiosk_id,
            "token": token.capability_id,
            "policy": policy.policy_id,
            "recipient": self.address(destination),
        })

        with self._lock:
            self._withdrawing[asset_id] = self._withdrawing.get(asset_id, 0) + 1
            if asset.state is AssetState.IN_KIOSK:
                self._move(asset_id, AssetState.TRANSFER_PENDING, "withdraw", kiosk_id=kiosk_id)
        try:
            outcome = self._submit(kiosk.owner, operation, "withdraw",
                                   asset_id=asset_id, capability_id=token.capability_id)
        except Indeterminate:
            with self._lock:
                self._finish_withdraw(asset_id)
            raise
        except CustodyError:
            with self._lock:
                self._finish_withdraw(asset_id)
                if asset.state is AssetState.TRANSFER_PENDING and asset_id not in self._withdrawing:
                    self._move(asset_id, AssetState.IN_KIOSK, "withdraw", kiosk_id=kiosk_id)
            policy.release(request)
            raise

        self.issuer.settle(token, "withdraw")
        with self._lock:
            self._finish_withdraw(asset_id)
            # A racing withdraw may already have refreshed the asset from the ledger.
            if asset.state is not AssetState.WITHDRAWN:
                self._move(asset_id, AssetState.WITHDRAWN, "withdraw", owner=destination)
            self.kiosks.discard(kiosk_id, asset_id)
        self._commit(asset_id, "withdraw", AssetState.TRANSFER_PENDING, outcome, kiosk.owner,
                     kiosk_id=kiosk_id, destination=destination.value, token_id=token.capability_id)
        return asset

    def _finish_withdraw(self, asset_id: str) -> None:
        remaining = self._withdrawing.get(asset_id, 1) - 1
        if remaining > 0:
            self._withdrawing[asset_id] = remaining
        else:
            self._withdrawing.pop(asset_id, None)

    def transfer(self, asset_id: str, destination: CustodyDomain) -> Asset:
        """Hand a locked asset held outside any kiosk to another domain."""
        asset = self.registry.get(asset_id)
        if not asset.state.is_loose():
            raise PreconditionFailed(
                f"asset is {asset.state.value}, not held outside a kiosk",
                asset_id=asset_id, transition="transfer",
            )
        if asset.updatable:
            raise PreconditionFailed("asset must be locked before transfer",
                                     asset_id=asset_id, transition="transfer")
        sender = asset.owner

        operation = Operation(OperationKind.TRANSFER, {
            "asset": asset_id,
            "recipient": self.address(destination),
        })
        outcome = self._submit(sender, operation, "transfer", asset_id=asset_id)

        self.registry.move(asset_id, asset.state, owner=destination)
        self._commit(asset_id, "transfer", asset.state, outcome, sender, destination=destination.value)
        return asset


# =============================================================================
# FACTORY
# =============================================================================

def create_reference_machine(
    config: Optional[CustodyConfig] = None,
    audit: Optional[AuditLogger] = None,
) -> CustodyStateMachine:
    """
    Create a machine wired to a fresh ``InMemoryLedger``.

    Package ids and secret keys missing from ``config`` are generated; the
    mint capability, the publisher and the withdraw policy are created on
    the ledger and written back into the machine's configuration.
    """
    config = config or CustodyConfig()

    def new_id(current: str) -> str:
        return current or "0x" + secrets.token_hex(32)

    keys = {
        name: getattr(config, name) or Keypair.generate().to_encoded()
        for name in CustodyConfig.SECRETS
    }
    config = replace(
        config,
        package_id=new_id(config.package_id),
        kiosk_package_id=new_id(config.kiosk_package_id),
        nft_protocol_package_id=new_id(config.nft_protocol_package_id),
        **keys,
    )

    ledger = InMemoryLedger(config.types)
    mint_cap_id, publisher_id = ledger.publish(Keypair.from_encoded(config.issuer_private_key).address)
    policy_id = ledger.register_withdraw_policy(config.withdraw_policy_id or None)
    config = replace(
        config,
        mint_cap_id=mint_cap_id,
        publisher_id=publisher_id,
        withdraw_policy_id=policy_id,
    )
    return CustodyStateMachine(config, signers_from_config(config, ledger), ledger, audit=audit)
