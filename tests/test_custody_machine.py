"""
Custody state machine tests.

Covers the lock invariant, single-use capabilities, locked-only withdrawal
and transfer, transfer token binding, and the scripted scenarios of the
battle pass lifecycle, all against the in-memory reference ledger.

Run with: pytest tests/test_custody_machine.py -v

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest

from custody.capabilities import CapabilityIssuer, MintCapability, TransferToken
from custody.errors import (
    CapabilityAlreadyConsumed,
    CapabilityMismatch,
    ConfigError,
    NotAuthorized,
    PolicyDenied,
    PreconditionFailed,
)
from custody.machine import CustodyStateMachine
from custody.observability import AuditEventType
from custody.operations import OperationKind
from custody.policy import AllowAllPolicy, AllowListPolicy, RateLimitPolicy, WithdrawRequest
from custody.registry import AssetState, CustodyDomain


class CountingClient:
    """Ledger client wrapper counting executed operations by kind."""

    def __init__(self, inner):
        self.inner = inner
        self.executed = []

    def execute(self, signed, options):
        self.executed.append(signed.operation.kind)
        return self.inner.execute(signed, options)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class BarrierClient:
    """Holds every operation of one kind until ``parties`` of them have arrived."""

    def __init__(self, inner, kind, parties=2):
        self.inner = inner
        self.kind = kind
        self.barrier = threading.Barrier(parties)

    def execute(self, signed, options):
        if signed.operation.kind == self.kind:
            self.barrier.wait(timeout=5)
        return self.inner.execute(signed, options)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def route_through(machine, client):
    for signer in machine.signers.values():
        signer.client = client
    return client


def unlocked_asset(machine, holder=CustodyDomain.CUSTODIAL_WALLET):
    asset = machine.mint(machine.mint_capability)
    machine.transfer(asset.asset_id, holder)
    ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
    machine.unlock(asset.asset_id, ticket)
    return asset


def race(*calls):
    """Run the calls concurrently; return (results, errors)."""
    results, errors = [], []
    lock = threading.Lock()

    def run(call):
        try:
            value = call()
        except Exception as exc:  # collected for assertions
            with lock:
                errors.append(exc)
        else:
            with lock:
                results.append(value)

    threads = [threading.Thread(target=run, args=(c,)) for c in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results, errors


# =============================================================================
# MINT
# =============================================================================

class TestMint:
    """Minting under a mint capability."""

    def test_mint_creates_locked_asset_held_by_issuer(self, machine, types):
        asset = machine.mint(machine.mint_capability, fields={"name": "Season 1 Pass"})

        assert asset.state == AssetState.MINTED
        assert asset.owner == CustodyDomain.ISSUER
        assert asset.updatable is False
        assert asset.fields.name == "Season 1 Pass"
        assert asset.fields.level == 1
        assert asset.asset_type == types.asset_type

        on_ledger = machine.ledger.get_object(asset.asset_id)
        assert on_ledger.owner == machine.address(CustodyDomain.ISSUER)
        assert on_ledger.content["updatable"] is False
        assert [h.transition for h in asset.history] == ["mint"]

    def test_unknown_mint_capability_is_not_authorized(self, machine, types):
        forged = MintCapability(capability_id="0x" + "ab" * 32, asset_type=types.asset_type)

        with pytest.raises(NotAuthorized):
            machine.mint(forged)
        assert len(machine.registry) == 0

    def test_mint_capability_for_another_type_is_not_authorized(self, machine, types):
        other = MintCapability(
            capability_id=machine.config.mint_cap_id,
            asset_type=f"{types.package_id}::cosmetic_skin::CosmeticSkin",
        )
        with pytest.raises(NotAuthorized):
            machine.mint(other)

    def test_level_above_cap_is_rejected_before_submission(self, machine):
        counting = route_through(machine, CountingClient(machine.ledger))

        with pytest.raises(PreconditionFailed):
            machine.mint(machine.mint_capability, fields={"level": 71})
        assert counting.executed == []

    def test_missing_signer_is_a_config_error(self, machine):
        bare = CustodyStateMachine(machine.config, {}, machine.ledger)
        with pytest.raises(ConfigError):
            bare.mint(bare.mint_capability)


# =============================================================================
# LOCK INVARIANT
# =============================================================================

class TestLockInvariant:
    """Fields change only while the asset is updatable."""

    def test_update_before_unlock_fails_without_submission(self, machine):
        asset = machine.mint(machine.mint_capability)
        counting = route_through(machine, CountingClient(machine.ledger))

        with pytest.raises(PreconditionFailed) as exc_info:
            machine.update(asset.asset_id, level=2)

        assert exc_info.value.asset_id == asset.asset_id
        assert exc_info.value.transition == "update"
        assert counting.executed == []
        assert machine.ledger.get_object(asset.asset_id).content["fields"]["level"] == 1

    @pytest.mark.parametrize("updatable", [False, True])
    def test_update_succeeds_iff_updatable(self, machine, updatable):
        if updatable:
            asset = unlocked_asset(machine)
        else:
            asset = machine.mint(machine.mint_capability)

        if updatable:
            machine.update(asset.asset_id, level=5, xp=250)
            assert asset.fields.level == 5
            assert machine.ledger.get_object(asset.asset_id).content["fields"]["xp"] == 250
        else:
            with pytest.raises(PreconditionFailed):
                machine.update(asset.asset_id, level=5)
            assert asset.fields.level == 1

    def test_update_after_lock_fails(self, machine):
        asset = unlocked_asset(machine)
        machine.update(asset.asset_id, level=2)
        machine.lock(asset.asset_id)

        assert asset.updatable is False
        with pytest.raises(PreconditionFailed):
            machine.update(asset.asset_id, level=3)

    def test_stale_unlocked_mirror_is_corrected_by_ledger(self, machine):
        asset = machine.mint(machine.mint_capability)
        # Local view believes the asset is updatable; the ledger does not.
        machine.registry.set_updatable(asset.asset_id, True)

        with pytest.raises(PreconditionFailed):
            machine.update(asset.asset_id, level=2)

        assert asset.updatable is False
        rejected = machine.audit.events(resource_id=asset.asset_id,
                                        event_type=AuditEventType.TRANSITION_REJECTED)
        assert rejected and "EUpdatesLocked" in rejected[0].details["reason"]

    def test_unknown_field_is_rejected(self, machine):
        asset = unlocked_asset(machine)
        with pytest.raises(PreconditionFailed):
            machine.update(asset.asset_id, rarity="legendary")

    def test_update_stats_requires_updatable(self, machine):
        asset = machine.mint(machine.mint_capability, stats={"kills": "0"})
        with pytest.raises(PreconditionFailed):
            machine.update_stats(asset.asset_id, {"kills": "1"})

    def test_committed_update_survives_a_racing_lock(self, machine):
        asset = unlocked_asset(machine)
        ledger = machine.ledger

        class LockLandsAfterCommit:
            def execute(self, signed, options):
                raw = ledger.execute(signed, options)
                if signed.operation.kind in (OperationKind.UPDATE, OperationKind.UPDATE_STATS):
                    machine.registry.set_updatable(asset.asset_id, False)
                return raw

        route_through(machine, LockLandsAfterCommit())
        machine.update(asset.asset_id, level=3)
        machine.registry.set_updatable(asset.asset_id, True)
        machine.update_stats(asset.asset_id, {"kills": "4"})

        assert asset.fields.level == 3
        assert asset.stats == {"kills": "4"}
        assert [h.transition for h in asset.history][-2:] == ["update", "update_stats"]


# =============================================================================
# UNLOCK TICKETS
# =============================================================================

class TestUnlockTickets:
    """Unlock tickets are bound to one asset and consumed at most once."""

    def test_unlock_consumes_ticket_and_sets_updatable(self, machine, types):
        asset = machine.mint(machine.mint_capability)
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)

        machine.unlock(asset.asset_id, ticket)

        assert asset.updatable is True
        assert machine.issuer.is_consumed(ticket)
        assert machine.ledger.get_object(ticket.capability_id).deleted is True

    def test_second_unlock_with_same_ticket_fails(self, machine):
        asset = machine.mint(machine.mint_capability)
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        machine.unlock(asset.asset_id, ticket)
        machine.lock(asset.asset_id)

        with pytest.raises(CapabilityAlreadyConsumed) as exc_info:
            machine.unlock(asset.asset_id, ticket)

        assert exc_info.value.capability_id == ticket.capability_id
        assert asset.updatable is False

    def test_replay_unknown_to_local_issuer_is_caught_by_ledger(self, machine):
        asset = machine.mint(machine.mint_capability)
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        machine.unlock(asset.asset_id, ticket)
        machine.lock(asset.asset_id)

        # A second workflow sharing the registry but not the consumption ledger.
        other = CustodyStateMachine(
            machine.config, machine.signers, machine.ledger,
            registry=machine.registry, issuer=CapabilityIssuer(),
        )
        with pytest.raises(CapabilityAlreadyConsumed):
            other.unlock(asset.asset_id, ticket)

        assert other.issuer.is_consumed(ticket)
        assert asset.updatable is False

    def test_ticket_bound_to_other_asset_is_a_mismatch(self, machine):
        first = machine.mint(machine.mint_capability)
        second = machine.mint(machine.mint_capability)
        ticket = machine.create_unlock_ticket(machine.mint_capability, first.asset_id)

        with pytest.raises(CapabilityMismatch):
            machine.unlock(second.asset_id, ticket)
        assert not machine.issuer.is_consumed(ticket)

    def test_ticket_requires_matching_mint_capability(self, machine):
        asset = machine.mint(machine.mint_capability)
        other = MintCapability(capability_id="0x" + "cd" * 32, asset_type=asset.asset_type)

        with pytest.raises(NotAuthorized):
            machine.create_unlock_ticket(other, asset.asset_id)

    def test_concurrent_unlocks_commit_exactly_once(self, machine):
        asset = machine.mint(machine.mint_capability)
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        route_through(machine, BarrierClient(machine.ledger, OperationKind.UNLOCK))

        results, errors = race(
            lambda: machine.unlock(asset.asset_id, ticket),
            lambda: machine.unlock(asset.asset_id, ticket),
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CapabilityAlreadyConsumed)
        assert asset.updatable is True

    @pytest.mark.slow
    @pytest.mark.parametrize("round_", range(20))
    def test_many_racing_unlocks_commit_exactly_once(self, machine, round_):
        asset = machine.mint(machine.mint_capability)
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        route_through(machine, BarrierClient(machine.ledger, OperationKind.UNLOCK, parties=6))

        results, errors = race(*[lambda: machine.unlock(asset.asset_id, ticket)] * 6)

        assert len(results) == 1
        assert len(errors) == 5
        assert all(isinstance(e, CapabilityAlreadyConsumed) for e in errors)

    def test_lock_needs_no_capability(self, machine):
        asset = unlocked_asset(machine)
        machine.lock(asset.asset_id)
        assert asset.updatable is False
        assert machine.ledger.get_object(asset.asset_id).content["updatable"] is False


# =============================================================================
# DEPOSIT
# =============================================================================

class TestDeposit:
    """Deposits into kiosks."""

    def test_deposit_places_asset_with_kiosk_owner(self, machine, kiosk_asset):
        asset, kiosk = kiosk_asset

        assert asset.state == AssetState.IN_KIOSK
        assert asset.owner == CustodyDomain.CUSTODIAL_WALLET
        assert asset.kiosk_id == kiosk.kiosk_id
        assert machine.kiosks.holds(kiosk.kiosk_id, asset.asset_id)
        assert machine.ledger.get_object(asset.asset_id).owner == kiosk.kiosk_id

    def test_deposit_without_grant_is_not_authorized(self, machine):
        kiosk = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
        asset = machine.mint(machine.mint_capability)

        with pytest.raises(NotAuthorized):
            machine.deposit(asset.asset_id, kiosk.kiosk_id)
        assert asset.state == AssetState.MINTED

    def test_grant_is_enforced_by_ledger(self, machine):
        kiosk = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
        asset = machine.mint(machine.mint_capability)
        # Grant recorded locally only.
        machine.kiosks.grant(kiosk.kiosk_id, CustodyDomain.ISSUER)

        with pytest.raises(NotAuthorized):
            machine.deposit(asset.asset_id, kiosk.kiosk_id)
        assert asset.state == AssetState.MINTED
        assert not machine.kiosks.holds(kiosk.kiosk_id, asset.asset_id)

    def test_unlocked_asset_cannot_be_deposited(self, machine):
        asset = unlocked_asset(machine)
        kiosk = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)

        with pytest.raises(PreconditionFailed):
            machine.deposit(asset.asset_id, kiosk.kiosk_id)

    def test_asset_in_kiosk_cannot_be_deposited_again(self, machine, kiosk_asset):
        asset, kiosk = kiosk_asset
        with pytest.raises(PreconditionFailed):
            machine.deposit(asset.asset_id, kiosk.kiosk_id)

    def test_kiosks_of_lists_owner_token_kiosks(self, machine):
        first = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
        second = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
        machine.create_kiosk(CustodyDomain.NON_CUSTODIAL_WALLET)

        owned = machine.kiosks_of(CustodyDomain.CUSTODIAL_WALLET)
        assert sorted(owned) == sorted([first.kiosk_id, second.kiosk_id])


# =============================================================================
# WITHDRAW
# =============================================================================

class TestWithdraw:
    """Withdrawals with transfer tokens under a withdraw policy."""

    def _token(self, machine, from_domain=CustodyDomain.CUSTODIAL_WALLET,
               to_domain=CustodyDomain.NON_CUSTODIAL_WALLET):
        return machine.create_transfer_token(machine.publisher, from_domain, to_domain)

    def test_withdraw_moves_asset_to_destination(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        token = self._token(machine)

        machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)

        assert asset.state == AssetState.WITHDRAWN
        assert asset.owner == CustodyDomain.NON_CUSTODIAL_WALLET
        assert asset.kiosk_id is None
        assert not machine.kiosks.holds(kiosk.kiosk_id, asset.asset_id)
        assert machine.issuer.is_consumed(token)
        assert machine.ledger.get_object(asset.asset_id).owner == \
            machine.address(CustodyDomain.NON_CUSTODIAL_WALLET)
        assert [h.to_state for h in asset.history][-1] == AssetState.WITHDRAWN

    def test_wrong_destination_is_a_mismatch(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        token = self._token(machine, to_domain=CustodyDomain.ISSUER)

        with pytest.raises(CapabilityMismatch):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all,
                             destination=CustodyDomain.NON_CUSTODIAL_WALLET)
        assert asset.state == AssetState.IN_KIOSK
        assert not machine.issuer.is_consumed(token)

    def test_wrong_source_domain_is_a_mismatch(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        token = self._token(machine, from_domain=CustodyDomain.ISSUER)

        with pytest.raises(CapabilityMismatch):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)
        assert asset.state == AssetState.IN_KIOSK

    def test_wrong_type_is_a_mismatch(self, machine, kiosk_asset, allow_all, types):
        asset, kiosk = kiosk_asset
        token = machine.create_transfer_token(
            machine.publisher,
            CustodyDomain.CUSTODIAL_WALLET,
            CustodyDomain.NON_CUSTODIAL_WALLET,
            asset_type=f"{types.package_id}::cosmetic_skin::CosmeticSkin",
        )
        with pytest.raises(CapabilityMismatch):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)

    def test_binding_is_enforced_by_ledger(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        real = self._token(machine, to_domain=CustodyDomain.ISSUER)
        # Local record claims a different destination than the ledger object.
        forged = TransferToken(
            capability_id=real.capability_id,
            asset_type=real.asset_type,
            from_domain=CustodyDomain.CUSTODIAL_WALLET,
            to_domain=CustodyDomain.NON_CUSTODIAL_WALLET,
        )
        with pytest.raises(CapabilityMismatch):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, forged, allow_all)
        assert asset.state == AssetState.IN_KIOSK
        assert machine.ledger.get_object(real.capability_id).deleted is False

    def test_unlocked_asset_cannot_be_withdrawn(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        machine.unlock(asset.asset_id, ticket)
        token = self._token(machine)

        with pytest.raises(PreconditionFailed):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)
        assert asset.state == AssetState.IN_KIOSK
        assert not machine.issuer.is_consumed(token)

    def test_stale_locked_mirror_is_corrected_by_ledger(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        machine.unlock(asset.asset_id, ticket)
        machine.registry.set_updatable(asset.asset_id, False)
        token = self._token(machine)

        with pytest.raises(PreconditionFailed):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)

        assert asset.updatable is True
        assert asset.state == AssetState.IN_KIOSK

    def test_policy_denial_carries_reason(self, machine, kiosk_asset):
        asset, kiosk = kiosk_asset
        token = self._token(machine)
        policy = AllowListPolicy(machine.config.withdraw_policy_id, [CustodyDomain.ISSUER])

        with pytest.raises(PolicyDenied) as exc_info:
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, policy)

        assert "not allow-listed" in exc_info.value.reason
        assert asset.state == AssetState.IN_KIOSK
        assert not machine.issuer.is_consumed(token)

    def test_unregistered_policy_is_denied_by_ledger(self, machine, kiosk_asset):
        asset, kiosk = kiosk_asset
        token = self._token(machine)

        with pytest.raises(PolicyDenied) as exc_info:
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, AllowAllPolicy("0x" + "ee" * 32))

        assert "unknown withdraw policy" in exc_info.value.reason
        assert asset.state == AssetState.IN_KIOSK

    def test_rejected_withdraw_hands_back_rate_limit_token(self, machine, kiosk_asset):
        asset, kiosk = kiosk_asset
        token = self._token(machine)
        policy = RateLimitPolicy("0x" + "ee" * 32, per_minute=0.0, burst_size=1)

        with pytest.raises(PolicyDenied):
            machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, policy)

        request = WithdrawRequest(
            asset_id=asset.asset_id,
            asset_type=asset.asset_type,
            kiosk_id=kiosk.kiosk_id,
            from_domain=CustodyDomain.CUSTODIAL_WALLET,
            to_domain=CustodyDomain.NON_CUSTODIAL_WALLET,
        )
        assert policy.evaluate(request).approved

    def test_token_cannot_be_used_twice(self, machine, allow_all):
        kiosk = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
        machine.grant_deposit(kiosk.kiosk_id, CustodyDomain.ISSUER)
        first = machine.mint(machine.mint_capability)
        second = machine.mint(machine.mint_capability)
        machine.deposit(first.asset_id, kiosk.kiosk_id, CustodyDomain.ISSUER)
        machine.deposit(second.asset_id, kiosk.kiosk_id, CustodyDomain.ISSUER)
        token = self._token(machine)

        machine.withdraw(first.asset_id, kiosk.kiosk_id, token, allow_all)
        with pytest.raises(CapabilityAlreadyConsumed):
            machine.withdraw(second.asset_id, kiosk.kiosk_id, token, allow_all)
        assert second.state == AssetState.IN_KIOSK

    def test_concurrent_withdraws_commit_exactly_once(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        token = self._token(machine)
        route_through(machine, BarrierClient(machine.ledger, OperationKind.WITHDRAW))

        results, errors = race(
            lambda: machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all),
            lambda: machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all),
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CapabilityAlreadyConsumed)
        assert asset.state == AssetState.WITHDRAWN
        assert asset.owner == CustodyDomain.NON_CUSTODIAL_WALLET
        assert machine.issuer.is_consumed(token)


# =============================================================================
# DIRECT TRANSFER
# =============================================================================

class TestTransfer:
    """Direct hand-over of assets held outside kiosks."""

    def test_transfer_changes_owner(self, machine):
        asset = machine.mint(machine.mint_capability)
        machine.transfer(asset.asset_id, CustodyDomain.CUSTODIAL_WALLET)

        assert asset.owner == CustodyDomain.CUSTODIAL_WALLET
        assert asset.state == AssetState.MINTED
        assert machine.ledger.get_object(asset.asset_id).owner == \
            machine.address(CustodyDomain.CUSTODIAL_WALLET)

    def test_unlocked_asset_cannot_be_transferred(self, machine):
        asset = unlocked_asset(machine)
        with pytest.raises(PreconditionFailed):
            machine.transfer(asset.asset_id, CustodyDomain.NON_CUSTODIAL_WALLET)
        assert asset.owner == CustodyDomain.CUSTODIAL_WALLET

    def test_asset_in_kiosk_cannot_be_transferred(self, machine, kiosk_asset):
        asset, _ = kiosk_asset
        with pytest.raises(PreconditionFailed):
            machine.transfer(asset.asset_id, CustodyDomain.NON_CUSTODIAL_WALLET)


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:
    """End-to-end flows."""

    def test_full_round_trip(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset

        ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
        machine.unlock(asset.asset_id, ticket)
        machine.update(asset.asset_id, level=2, xp=100)
        machine.lock(asset.asset_id)
        token = machine.create_transfer_token(
            machine.publisher, CustodyDomain.CUSTODIAL_WALLET, CustodyDomain.NON_CUSTODIAL_WALLET,
        )
        machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)

        assert asset.state == AssetState.WITHDRAWN
        assert asset.owner == CustodyDomain.NON_CUSTODIAL_WALLET
        assert asset.updatable is False
        assert asset.fields.level == 2
        assert machine.ledger.get_object(asset.asset_id).content["fields"]["xp"] == 100
        assert [h.transition for h in asset.history] == [
            "mint", "deposit", "unlock", "update", "lock", "withdraw",
        ]

    def test_withdrawn_asset_can_be_deposited_again(self, machine, kiosk_asset, allow_all):
        asset, kiosk = kiosk_asset
        token = machine.create_transfer_token(
            machine.publisher, CustodyDomain.CUSTODIAL_WALLET, CustodyDomain.NON_CUSTODIAL_WALLET,
        )
        machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, allow_all)

        own_kiosk = machine.create_kiosk(CustodyDomain.NON_CUSTODIAL_WALLET)
        machine.deposit(asset.asset_id, own_kiosk.kiosk_id)

        assert asset.state == AssetState.IN_KIOSK
        assert asset.kiosk_id == own_kiosk.kiosk_id

    def test_audit_chain_covers_every_transition(self, machine, kiosk_asset):
        asset, _ = kiosk_asset

        transitions = machine.audit.events(resource_id=asset.asset_id,
                                           event_type=AuditEventType.TRANSITION)
        assert [e.action for e in transitions] == ["mint", "deposit"]
        valid, first_invalid = machine.audit.verify_chain()
        assert valid is True
        assert first_invalid is None
