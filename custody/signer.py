"""
Signer

Ed25519 key handling and the ``KeypairSigner`` collaborator that signs
operations and submits them to a ledger client under an injected
``SubmissionPolicy`` (gas budget and sponsorship).

Exported secret keys use the wallet format: base64 of a one-byte scheme flag
followed by the 32-byte Ed25519 seed.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from custody.config import CustodyConfig
from custody.errors import ConfigError
from custody.ledger import LedgerClient
from custody.observability import CustodyLayer, get_logger
from custody.operations import (
    ED25519_FLAG,
    Operation,
    SignedOperation,
    SubmitOptions,
    address_from_public_key,
)
from custody.outcome import Outcome, decode_outcome
from custody.registry import CustodyDomain

logger = get_logger("signer", CustodyLayer.SIGNER)


class Keypair:
    """An Ed25519 key pair and the address derived from it."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key: bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.address = address_from_public_key(self.public_key)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_encoded(cls, encoded: str) -> "Keypair":
        """Load a flag-prefixed base64 secret key."""
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigError("secret key is not valid base64") from e
        if len(raw) != 33:
            raise ConfigError(f"secret key must be 33 bytes (flag + seed), got {len(raw)}")
        if raw[0] != ED25519_FLAG:
            raise ConfigError(f"unsupported key scheme flag {raw[0]:#04x}")
        return cls(Ed25519PrivateKey.from_private_bytes(raw[1:]))

    def to_encoded(self) -> str:
        seed = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return base64.b64encode(bytes([ED25519_FLAG]) + seed).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)


@dataclass(frozen=True)
class SubmissionPolicy:
    """Fee budget and sponsorship applied to every submission of a signer."""
    gas_budget: int = 100_000_000
    sponsor_address: Optional[str] = None

    def gas_owner(self, sender: str) -> str:
        return self.sponsor_address or sender


class KeypairSigner:
    """Signs operations with one key pair and submits them to a ledger client."""

    def __init__(
        self,
        keypair: Keypair,
        client: LedgerClient,
        policy: Optional[SubmissionPolicy] = None,
    ):
        self.keypair = keypair
        self.client = client
        self.policy = policy or SubmissionPolicy()

    @property
    def address(self) -> str:
        return self.keypair.address

    def sign(self, operation: Operation) -> SignedOperation:
        unsigned = SignedOperation(
            operation=operation,
            sender=self.keypair.address,
            public_key=self.keypair.public_key,
            gas_budget=self.policy.gas_budget,
            gas_owner=self.policy.gas_owner(self.keypair.address),
        )
        return unsigned.with_signature(self.keypair.sign(unsigned.signing_payload()))

    def submit(self, signed: SignedOperation, options: SubmitOptions) -> Outcome:
        logger.debug(
            "Submitting operation",
            operation=signed.operation.kind.value,
            digest=signed.digest,
            sponsored=signed.sponsored,
        )
        return decode_outcome(self.client.execute(signed, options))

    def sign_and_submit(self, operation: Operation, options: SubmitOptions) -> Outcome:
        return self.submit(self.sign(operation), options)


def signers_from_config(config: CustodyConfig, client: LedgerClient) -> Dict[CustodyDomain, KeypairSigner]:
    """Build one signer per custody domain whose secret key is configured."""
    policy = SubmissionPolicy(
        gas_budget=config.gas_budget,
        sponsor_address=config.sponsor_address or None,
    )
    keys = {
        CustodyDomain.ISSUER: config.issuer_private_key,
        CustodyDomain.CUSTODIAL_WALLET: config.custodial_wallet_private_key,
        CustodyDomain.NON_CUSTODIAL_WALLET: config.non_custodial_wallet_private_key,
    }
    return {
        domain: KeypairSigner(Keypair.from_encoded(encoded), client, policy)
        for domain, encoded in keys.items()
        if encoded
    }
