"""
Kiosk Custody

Capability-gated custody of mutable, non-fungible assets across an issuer,
a custodial wallet, a non-custodial wallet and shared kiosks.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        CUSTODY STATE MACHINE                             │
    │                                                                          │
    │  WORKFLOW                                                                │
    │    machine.py       mint, deposit, unlock, update, lock, withdraw       │
    │    cli.py           scripted flows against the reference ledger         │
    │                                                                          │
    │  LOCAL MIRROR                                                            │
    │    registry.py      assets, placement states, transition history        │
    │    kiosk.py         kiosks and deposit grants                           │
    │    capabilities.py  mint caps, unlock tickets, transfer tokens          │
    │    policy.py        withdraw policies                                    │
    │                                                                          │
    │  LEDGER BOUNDARY                                                         │
    │    operations.py    operations and signed envelopes                     │
    │    signer.py        Ed25519 keys, submission policy                     │
    │    ledger.py        client protocols, in-memory reference ledger        │
    │    outcome.py       typed outcome decoder                               │
    │    resilience.py    bounded waits                                        │
    │    stats.py         dynamic-field stats                                  │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Invariants
──────────

    I1  An asset's fields change only while it is updatable.
    I2  Locked to updatable only by consuming a matching unlock ticket;
        updatable to locked only by lock.
    I3  Unlock tickets and transfer tokens are consumed at most once.
    I4  An asset leaves a kiosk, or changes hands directly, only while locked.
    I5  A transfer token is honoured only for its exact type and domain pair.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import custody modules on first access."""

    if name in ("CustodyStateMachine", "create_reference_machine"):
        from custody import machine
        return getattr(machine, name)

    if name in ("Asset", "AssetFields", "AssetRegistry", "AssetState",
                "CustodyDomain", "TransitionRecord"):
        from custody import registry
        return getattr(registry, name)

    if name in ("Kiosk", "KioskContainer"):
        from custody import kiosk
        return getattr(kiosk, name)

    if name in ("CapabilityIssuer", "ConsumptionLedger", "MintCapability",
                "PublisherWitness", "TransferToken", "UnlockTicket"):
        from custody import capabilities
        return getattr(capabilities, name)

    if name in ("AllowAllPolicy", "AllowListPolicy", "CompositePolicy",
                "RateLimitPolicy", "WithdrawRequest"):
        from custody import policy
        return getattr(policy, name)

    if name in ("CustodyError", "NotAuthorized", "CapabilityAlreadyConsumed",
                "CapabilityMismatch", "PreconditionFailed", "PolicyDenied",
                "Indeterminate", "DecodeError", "LedgerFault", "ConfigError"):
        from custody import errors
        return getattr(errors, name)

    if name in ("Outcome", "Created", "Mutated", "Deleted", "decode_outcome"):
        from custody import outcome
        return getattr(outcome, name)

    if name in ("InMemoryLedger", "LedgerClient", "Signer", "ObjectRef", "FieldRef"):
        from custody import ledger
        return getattr(ledger, name)

    if name in ("Keypair", "KeypairSigner", "SubmissionPolicy", "signers_from_config"):
        from custody import signer
        return getattr(signer, name)

    if name in ("ConfigManager", "CustodyConfig", "ObjectTypes"):
        from custody import config
        return getattr(config, name)

    if name in ("StatSheet", "read_stats"):
        from custody import stats
        return getattr(stats, name)

    raise AttributeError(f"module 'custody' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Machine
    "CustodyStateMachine",
    "create_reference_machine",
    # Registry
    "Asset",
    "AssetFields",
    "AssetRegistry",
    "AssetState",
    "CustodyDomain",
    # Capabilities
    "CapabilityIssuer",
    "MintCapability",
    "PublisherWitness",
    "TransferToken",
    "UnlockTicket",
    # Errors
    "CustodyError",
    "NotAuthorized",
    "CapabilityAlreadyConsumed",
    "CapabilityMismatch",
    "PreconditionFailed",
    "PolicyDenied",
    "Indeterminate",
    "DecodeError",
    # Ledger
    "InMemoryLedger",
    "Outcome",
    "decode_outcome",
    # Config
    "ConfigManager",
    "CustodyConfig",
]
