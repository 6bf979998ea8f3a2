"""
Tests for key handling, signing and submission policy.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import base64

import pytest

from custody.config import CustodyConfig
from custody.errors import ConfigError
from custody.machine import COMMIT_OPTIONS
from custody.operations import Operation, OperationKind, address_from_public_key
from custody.registry import CustodyDomain
from custody.signer import Keypair, KeypairSigner, SubmissionPolicy, signers_from_config


class RecordingClient:
    def __init__(self):
        self.submitted = []

    def execute(self, signed, options):
        self.submitted.append(signed)
        return {"digest": signed.digest, "status": {"status": "success"}, "objectChanges": []}


class TestKeypair:

    def test_encoded_key_round_trips_to_same_address(self):
        keypair = Keypair.generate()
        encoded = keypair.to_encoded()

        assert base64.b64decode(encoded)[0] == 0x00
        assert len(base64.b64decode(encoded)) == 33
        assert Keypair.from_encoded(encoded).address == keypair.address

    def test_address_is_derived_from_public_key(self):
        keypair = Keypair.generate()
        assert keypair.address == address_from_public_key(keypair.public_key)
        assert keypair.address.startswith("0x")
        assert len(keypair.address) == 66

    @pytest.mark.parametrize("encoded", [
        "not base64!",
        base64.b64encode(bytes(32)).decode(),
        base64.b64encode(bytes([0x01]) + bytes(32)).decode(),
    ])
    def test_bad_keys_are_config_errors(self, encoded):
        with pytest.raises(ConfigError):
            Keypair.from_encoded(encoded)


class TestSigning:

    def test_signature_verifies(self):
        signer = KeypairSigner(Keypair.generate(), RecordingClient())
        signed = signer.sign(Operation(OperationKind.LOCK, {"asset": "0xa"}))

        assert signed.sender == signer.address
        assert signed.verify()

    def test_tampered_operation_fails_verification(self):
        signer = KeypairSigner(Keypair.generate(), RecordingClient())
        signed = signer.sign(Operation(OperationKind.LOCK, {"asset": "0xa"}))
        tampered = signer.sign(Operation(OperationKind.LOCK, {"asset": "0xb"}))

        assert not tampered.with_signature(signed.signature).verify()

    def test_each_operation_has_its_own_digest(self):
        signer = KeypairSigner(Keypair.generate(), RecordingClient())
        first = signer.sign(Operation(OperationKind.LOCK, {"asset": "0xa"}))
        second = signer.sign(Operation(OperationKind.LOCK, {"asset": "0xa"}))

        assert first.digest != second.digest
        assert first.digest == first.with_signature(b"").digest

    def test_submit_decodes_outcome(self):
        client = RecordingClient()
        signer = KeypairSigner(Keypair.generate(), client)

        outcome = signer.sign_and_submit(Operation(OperationKind.CREATE_KIOSK), COMMIT_OPTIONS)

        assert outcome.committed
        assert outcome.digest == client.submitted[0].digest


class TestSubmissionPolicy:

    def test_sender_pays_by_default(self):
        signer = KeypairSigner(Keypair.generate(), RecordingClient())
        signed = signer.sign(Operation(OperationKind.CREATE_KIOSK))

        assert signed.gas_owner == signer.address
        assert not signed.sponsored
        assert signed.gas_budget == SubmissionPolicy().gas_budget

    def test_sponsored_submission(self):
        sponsor = Keypair.generate().address
        policy = SubmissionPolicy(gas_budget=5_000, sponsor_address=sponsor)
        signer = KeypairSigner(Keypair.generate(), RecordingClient(), policy)

        signed = signer.sign(Operation(OperationKind.CREATE_KIOSK))

        assert signed.sponsored
        assert signed.gas_owner == sponsor
        assert signed.gas_budget == 5_000
        assert signed.verify()

    def test_signers_from_config(self):
        issuer = Keypair.generate()
        config = CustodyConfig(
            issuer_private_key=issuer.to_encoded(),
            custodial_wallet_private_key=Keypair.generate().to_encoded(),
            gas_budget=7_000,
        )

        signers = signers_from_config(config, RecordingClient())

        assert set(signers) == {CustodyDomain.ISSUER, CustodyDomain.CUSTODIAL_WALLET}
        assert signers[CustodyDomain.ISSUER].address == issuer.address
        assert signers[CustodyDomain.ISSUER].policy.gas_budget == 7_000
        assert signers[CustodyDomain.ISSUER].policy.sponsor_address is None
