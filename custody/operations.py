"""
Ledger operations and their signed envelopes.

An ``Operation`` is what the state machine wants to happen; a
``SignedOperation`` is the operation bound to a sender, a gas budget and an
Ed25519 signature. The transaction digest is computed over the signed
envelope, so resubmitting the same envelope is recognisable by the ledger.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

# Signature scheme flag prepended to public keys and exported secret keys.
ED25519_FLAG = 0x00


class OperationKind(Enum):
    CREATE_KIOSK = "create_kiosk"
    GRANT_DEPOSIT = "grant_deposit"
    MINT = "mint"
    DEPOSIT = "deposit"
    CREATE_UNLOCK_TICKET = "create_unlock_ticket"
    UNLOCK = "unlock"
    UPDATE = "update"
    UPDATE_STATS = "update_stats"
    LOCK = "lock"
    TRANSFER = "transfer"
    CREATE_TRANSFER_TOKEN = "create_transfer_token"
    WITHDRAW = "withdraw"


def canonical_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def address_from_public_key(public_key: bytes) -> str:
    """Address of an Ed25519 public key: blake2b-256(flag || key), hex encoded."""
    return "0x" + blake2b_256(bytes([ED25519_FLAG]) + public_key).hex()


@dataclass(frozen=True)
class Operation:
    """One unit of work submitted to the ledger."""
    kind: OperationKind
    arguments: Dict[str, Any] = field(default_factory=dict)
    nonce: str = field(default_factory=lambda: secrets.token_hex(8))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "arguments": self.arguments, "nonce": self.nonce}


@dataclass(frozen=True)
class SubmitOptions:
    """What the caller wants back from a submission."""
    wait_for_commit: bool = True
    include_effects: bool = True
    include_events: bool = True
    include_object_deltas: bool = True


@dataclass(frozen=True)
class SignedOperation:
    operation: Operation
    sender: str
    public_key: bytes
    gas_budget: int
    gas_owner: str
    signature: bytes = b""

    def signing_payload(self) -> bytes:
        return canonical_bytes({
            "operation": self.operation.to_dict(),
            "sender": self.sender,
            "gas_budget": self.gas_budget,
            "gas_owner": self.gas_owner,
        })

    @property
    def digest(self) -> str:
        return blake2b_256(self.signing_payload()).hex()

    @property
    def sponsored(self) -> bool:
        return self.gas_owner != self.sender

    def with_signature(self, signature: bytes) -> "SignedOperation":
        return replace(self, signature=signature)

    def verify(self) -> bool:
        """Check the signature and that the sender address matches the signing key."""
        if address_from_public_key(self.public_key) != self.sender:
            return False
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key).verify(
                self.signature, self.signing_payload()
            )
        except (InvalidSignature, ValueError):
            return False
        return True
