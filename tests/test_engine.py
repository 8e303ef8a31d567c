"""Reference engine tests: attestation, operand grants, decryption, atomicity."""

import pytest
from cryptography.hazmat.primitives import serialization

from encmatch.client import Account
from encmatch.crypto import attestation_digest
from encmatch.engine import Ciphertext, EncryptionEngine, FheType, GrantLedger
from encmatch.errors import (
    AttestationInvalid,
    DecryptionNotAllowed,
    OperandNotAllowed,
)

SERVICE = "0x" + "5e" * 20
OTHER_SERVICE = "0x" + "07" * 20


@pytest.fixture
def user() -> Account:
    return Account.create(label="user")


def encrypt_batch(engine, user, contract=SERVICE):
    return engine.create_encrypted_input(contract, user.address).add8(25).add16(0b0101).encrypt()


# ============================================================================
# Attested ingestion
# ============================================================================

class TestFromExternal:

    def test_valid_attestation(self, engine, user):
        batch = encrypt_batch(engine, user)
        with engine.execution(SERVICE) as ctx:
            age = ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)
            interests = ctx.from_external(batch.handles[1], batch.input_proof, user.address, FheType.EUINT16)
            assert age.fhe_type == FheType.EUINT8
            assert interests.fhe_type == FheType.EUINT16

    def test_hex_handle_accepted(self, engine, user):
        batch = encrypt_batch(engine, user)
        with engine.execution(SERVICE) as ctx:
            ct = ctx.from_external("0x" + batch.handles[0].hex(), batch.input_proof,
                                   user.address, FheType.EUINT8)
            assert ct.handle == batch.handles[0]

    def test_other_user_cannot_replay(self, engine, user):
        batch = encrypt_batch(engine, user)
        other = Account.create()
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(batch.handles[0], batch.input_proof, other.address, FheType.EUINT8)

    def test_other_contract_cannot_ingest(self, engine, user):
        batch = encrypt_batch(engine, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(OTHER_SERVICE) as ctx:
                ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)

    def test_tampered_signature(self, engine, user):
        batch = encrypt_batch(engine, user)
        tampered = batch.input_proof[:-1] + bytes([batch.input_proof[-1] ^ 0x01])
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(batch.handles[0], tampered, user.address, FheType.EUINT8)

    def test_handle_outside_proof(self, engine, user):
        batch = encrypt_batch(engine, user)
        unrelated = encrypt_batch(engine, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(unrelated.handles[0], batch.input_proof, user.address, FheType.EUINT8)

    def test_declared_type_must_match(self, engine, user):
        batch = encrypt_batch(engine, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT16)

    @pytest.mark.parametrize("proof", [b"", b"\x00", b"\x01" + b"\x00" * 10])
    def test_malformed_proof(self, engine, user, proof):
        batch = encrypt_batch(engine, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(batch.handles[0], proof, user.address, FheType.EUINT8)

    def test_foreign_engine_proof(self, engine, user):
        foreign = EncryptionEngine()
        batch = encrypt_batch(foreign, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)

    @pytest.mark.parametrize("handle", [12345, None, b"short"])
    def test_handle_of_wrong_kind(self, engine, user, handle):
        batch = encrypt_batch(engine, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(handle, batch.input_proof, user.address, FheType.EUINT8)

    def test_proof_verifies_under_exported_key(self, engine, user):
        batch = encrypt_batch(engine, user)
        verifier = serialization.load_pem_public_key(engine.get_input_verifier_key_pem())
        count = batch.input_proof[0]
        signature = batch.input_proof[1 + count * 32:]
        verifier.verify(signature, attestation_digest(batch.handles, user.address, SERVICE))

    def test_out_of_range_input(self, engine, user):
        builder = engine.create_encrypted_input(SERVICE, user.address)
        with pytest.raises(ValueError):
            builder.add8(256)
        with pytest.raises(ValueError):
            builder.add16(-1)


# ============================================================================
# Operand grants and atomicity
# ============================================================================

class TestOperandGrants:

    def test_ungranted_operand_rejected_in_later_call(self, engine, user):
        batch = encrypt_batch(engine, user)
        with engine.execution(SERVICE) as ctx:
            age = ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)

        # transient allowance ended with the first context
        with pytest.raises(OperandNotAllowed):
            with engine.execution(SERVICE) as ctx:
                ctx.ge(age, ctx.as_encrypted(18, FheType.EUINT8))

    def test_granted_operand_usable_in_later_call(self, engine, user):
        batch = encrypt_batch(engine, user)
        with engine.execution(SERVICE) as ctx:
            age = ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)
            ctx.allow_this(age)

        with engine.execution(SERVICE) as ctx:
            adult = ctx.ge(age, ctx.as_encrypted(18, FheType.EUINT8))
            assert engine._unseal(adult) == 1

    def test_grant_requires_executor_access(self, engine):
        with engine.execution(SERVICE) as ctx:
            secret = ctx.as_encrypted(5, FheType.EUINT8)
            ctx.allow_this(secret)

        with pytest.raises(OperandNotAllowed):
            with engine.execution(OTHER_SERVICE) as ctx:
                ctx.allow(secret, OTHER_SERVICE)

    def test_rollback_discards_grants_and_ciphertexts(self, engine, user):
        before = len(engine)
        with pytest.raises(RuntimeError):
            with engine.execution(SERVICE) as ctx:
                kept = ctx.as_encrypted(1, FheType.EUINT8)
                ctx.allow(kept, user.address)
                raise RuntimeError("abort")
        assert len(engine) == before
        assert len(engine.grants) == 0
        assert not engine.exists(kept)

    def test_commit_drops_ungranted_intermediates(self, engine, user):
        with engine.execution(SERVICE) as ctx:
            a = ctx.as_encrypted(3, FheType.EUINT8)
            b = ctx.as_encrypted(4, FheType.EUINT8)
            result = ctx.le(a, b)
            ctx.allow(result, user.address)
        assert engine.exists(result)
        assert not engine.exists(a)
        assert not engine.exists(b)

    def test_rejected_ingestion_drops_inputs(self, engine, user):
        batch = encrypt_batch(engine, user)
        with pytest.raises(AttestationInvalid):
            with engine.execution(SERVICE) as ctx:
                ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)
                ctx.from_external(batch.handles[1], batch.input_proof, user.address, FheType.EUINT8)
        assert not engine.exists(Ciphertext(batch.handles[0]))

    def test_granted_inputs_survive_commit(self, engine, user):
        batch = encrypt_batch(engine, user)
        with engine.execution(SERVICE) as ctx:
            age = ctx.from_external(batch.handles[0], batch.input_proof, user.address, FheType.EUINT8)
            ctx.from_external(batch.handles[1], batch.input_proof, user.address, FheType.EUINT16)
            ctx.allow(age, user.address)
        assert engine.exists(age)
        assert not engine.exists(Ciphertext(batch.handles[1]))
        assert engine.user_decrypt(age, user.decryption_request(age)) == 25

    def test_mixed_types_rejected(self, engine):
        with engine.execution(SERVICE) as ctx:
            a = ctx.as_encrypted(3, FheType.EUINT8)
            b = ctx.as_encrypted(3, FheType.EUINT16)
            with pytest.raises(TypeError):
                ctx.eq(a, b)
            with pytest.raises(TypeError):
                ctx.and_(a, a)

    @pytest.mark.parametrize("condition,expected", [(1, 7), (0, 9)])
    def test_select(self, engine, condition, expected):
        with engine.execution(SERVICE) as ctx:
            cond = ctx.as_encrypted(condition, FheType.EBOOL)
            picked = ctx.select(cond, ctx.as_encrypted(7, FheType.EUINT8), ctx.as_encrypted(9, FheType.EUINT8))
            assert engine._unseal(picked) == expected


# ============================================================================
# Decryption
# ============================================================================

class TestDecryption:

    def _granted(self, engine, identity, value=1):
        with engine.execution(SERVICE) as ctx:
            ct = ctx.as_encrypted(value, FheType.EUINT8)
            ctx.allow(ct, identity)
        return ct

    def test_user_decrypt_with_grant(self, engine, user):
        ct = self._granted(engine, user.address, value=42)
        assert engine.user_decrypt(ct, user.decryption_request(ct)) == 42

    def test_user_decrypt_without_grant(self, engine, user):
        ct = self._granted(engine, SERVICE)
        with pytest.raises(DecryptionNotAllowed):
            engine.user_decrypt(ct, user.decryption_request(ct))

    def test_forged_request_rejected(self, engine, user):
        ct = self._granted(engine, user.address)
        impostor = Account.create()
        request = impostor.decryption_request(ct)
        request.identity = user.address
        with pytest.raises(DecryptionNotAllowed):
            engine.user_decrypt(ct, request)

    def test_request_bound_to_handle(self, engine, user):
        first = self._granted(engine, user.address)
        second = self._granted(engine, user.address)
        with pytest.raises(DecryptionNotAllowed):
            engine.user_decrypt(second, user.decryption_request(first))

    def test_public_decrypt_requires_mark(self, engine, user):
        ct = self._granted(engine, user.address, value=1)
        assert engine.user_decrypt(ct, user.decryption_request(ct)) == 1
        with pytest.raises(DecryptionNotAllowed):
            engine.public_decrypt(ct)

    def test_public_mark_opens_to_everyone(self, engine, user):
        with engine.execution(SERVICE) as ctx:
            ct = ctx.as_encrypted(1, FheType.EUINT8)
            ctx.make_publicly_decryptable(ct)
        stranger = Account.create()
        assert engine.public_decrypt(ct) == 1
        assert engine.user_decrypt(ct, stranger.decryption_request(ct)) == 1


# ============================================================================
# Handles and ledger
# ============================================================================

class TestHandles:

    def test_export_is_256_bit_hex(self, engine):
        with engine.execution(SERVICE) as ctx:
            ct = ctx.as_encrypted(1, FheType.EUINT8)
            ctx.allow_this(ct)
        exported = engine.to_handle(ct)
        assert exported.startswith("0x")
        assert len(exported) == 2 + 64
        assert engine.from_handle(exported) == ct

    def test_same_value_gives_different_handles(self, engine):
        with engine.execution(SERVICE) as ctx:
            a = ctx.as_encrypted(1, FheType.EUINT8)
            b = ctx.as_encrypted(1, FheType.EUINT8)
            assert a.handle != b.handle

    def test_ledger_has_no_revocation(self):
        ledger = GrantLedger()
        assert not hasattr(ledger, "remove")
        assert not hasattr(ledger, "revoke")
        ledger.add("0x" + "01" * 20, b"h" * 32)
        ledger.add("0x" + "01" * 20, b"h" * 32)
        assert len(ledger) == 1
        assert ledger.grantees(b"h" * 32) == frozenset({"0x" + "01" * 20})
