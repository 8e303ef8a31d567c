"""
reference encryption engine

the matching core only ever talks to this module through opaque ciphertext
handles. the engine here is a simulation of a homomorphic coprocessor:
- every value is sealed at rest with aes-gcm under an engine-held key,
  bound to its 256-bit handle as associated data
- values are only unsealed inside primitive evaluation or an authorized
  decryption, never handed back to the caller of a primitive
- externally supplied ciphertexts must carry an ed25519 attestation issued
  by the engine's input verifier for (handles, user, contract)
- grant bookkeeping is an add-only set of (identity, handle) edges plus a
  one-way public flag

note: this is not a real fhe scheme. it reproduces the interface and the
access-control behaviour a real engine exposes so that the core can be
exercised end to end.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Set, Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from encmatch.crypto import (
    HANDLE_SIZE,
    attestation_digest,
    decryption_request_digest,
    derive_identity,
    handle_from_hex,
    handle_to_hex,
    new_handle,
    normalize_identity,
)
from encmatch.errors import (
    AttestationInvalid,
    DecryptionNotAllowed,
    OperandNotAllowed,
)

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
SIGNATURE_SIZE = 64


class FheType(IntEnum):
    """ciphertext types; the value is the type code stored in the handle's last byte"""
    EBOOL = 0
    EUINT8 = 2
    EUINT16 = 3
    EUINT32 = 4

    @property
    def bits(self) -> int:
        return _TYPE_BITS[self]

    @property
    def max_value(self) -> int:
        return (1 << self.bits) - 1


_TYPE_BITS = {
    FheType.EBOOL: 1,
    FheType.EUINT8: 8,
    FheType.EUINT16: 16,
    FheType.EUINT32: 32,
}


@dataclass(frozen=True)
class Ciphertext:
    """reference to an encrypted value held by the engine"""
    handle: bytes

    @property
    def fhe_type(self) -> FheType:
        return FheType(self.handle[-1])

    def __repr__(self) -> str:
        return f"Ciphertext({self.fhe_type.name}, {self.handle.hex()[:12]}...)"


@dataclass
class EncryptedInput:
    """attested batch of freshly encrypted inputs, as sent to the service"""
    handles: List[bytes]
    input_proof: bytes


@dataclass
class DecryptionRequest:
    """signed request by an identity to decrypt a single handle"""
    identity: str
    public_key: bytes   # raw ed25519 public key
    handle: bytes
    signature: bytes


class GrantLedger:
    """
    Append-only capability edges.

    An edge (identity, handle) authorizes identity to decrypt handle and to
    use it as an operand. The public flag widens a handle to every identity.
    Neither can be removed.
    """

    def __init__(self):
        self._edges: Set[Tuple[str, bytes]] = set()
        self._granted: Set[bytes] = set()
        self._public: Set[bytes] = set()

    def add(self, identity: str, handle: bytes) -> None:
        self._edges.add((normalize_identity(identity), handle))
        self._granted.add(handle)

    def mark_public(self, handle: bytes) -> None:
        self._public.add(handle)

    def has_grant(self, identity: str, handle: bytes) -> bool:
        return (normalize_identity(identity), handle) in self._edges

    def is_public(self, handle: bytes) -> bool:
        return handle in self._public

    def allows(self, identity: str, handle: bytes) -> bool:
        return self.is_public(handle) or self.has_grant(identity, handle)

    def is_referenced(self, handle: bytes) -> bool:
        """true once any identity holds an edge on handle, or it is public"""
        return handle in self._granted or handle in self._public

    def grantees(self, handle: bytes) -> frozenset:
        """identities holding an explicit edge on handle"""
        return frozenset(identity for identity, h in self._edges if h == handle)

    def __len__(self) -> int:
        return len(self._edges)


class EncryptedInputBuilder:
    """
    Client-side accumulation of values to encrypt for one (contract, user) pair.

    Usage:
        enc = engine.create_encrypted_input(service.address, alice.address)
        enc.add8(25).add8(2).add16(0b0101).add16(7)
        batch = enc.encrypt()
    """

    def __init__(self, engine: "EncryptionEngine", contract: str, user: str):
        self._engine = engine
        self.contract = normalize_identity(contract)
        self.user = normalize_identity(user)
        self._values: List[Tuple[FheType, int]] = []

    def _add(self, fhe_type: FheType, value) -> "EncryptedInputBuilder":
        value = int(value)
        if value < 0 or value > fhe_type.max_value:
            raise ValueError(f"value out of range for {fhe_type.name}")
        self._values.append((fhe_type, value))
        return self

    def add_bool(self, value: bool) -> "EncryptedInputBuilder":
        return self._add(FheType.EBOOL, 1 if value else 0)

    def add8(self, value: int) -> "EncryptedInputBuilder":
        return self._add(FheType.EUINT8, value)

    def add16(self, value: int) -> "EncryptedInputBuilder":
        return self._add(FheType.EUINT16, value)

    def add32(self, value: int) -> "EncryptedInputBuilder":
        return self._add(FheType.EUINT32, value)

    def encrypt(self) -> EncryptedInput:
        if not self._values:
            raise ValueError("no values to encrypt")
        handles = [self._engine._seal(t, v).handle for t, v in self._values]
        proof = self._engine._attest(handles, self.user, self.contract)
        return EncryptedInput(handles=handles, input_proof=proof)


class EncryptionEngine:
    """
    Ciphertext table, primitive evaluation and grant bookkeeping.

    Computations run inside `execution(executor)`, which yields an FheContext.
    Grants and public marks requested in a context are applied only when the
    context exits cleanly; on error they are discarded together with every
    ciphertext the context created.
    """

    def __init__(self, input_signing_key: Optional[ed25519.Ed25519PrivateKey] = None):
        self._aead = AESGCM(AESGCM.generate_key(bit_length=256))
        self._table: Dict[bytes, bytes] = {}
        self.grants = GrantLedger()
        self._input_signer = input_signing_key or ed25519.Ed25519PrivateKey.generate()
        self.input_verifier_key = self._input_signer.public_key()

    # ---------- sealed storage ----------
    def _seal(self, fhe_type: FheType, value: int) -> Ciphertext:
        handle = new_handle(int(fhe_type))
        nonce = secrets.token_bytes(NONCE_SIZE)
        payload = (value & fhe_type.max_value).to_bytes(4, "big")
        self._table[handle] = nonce + self._aead.encrypt(nonce, payload, handle)
        return Ciphertext(handle)

    def _unseal(self, ciphertext: Ciphertext) -> int:
        blob = self._table.get(ciphertext.handle)
        if blob is None:
            raise ValueError(f"unknown ciphertext {ciphertext!r}")
        try:
            payload = self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], ciphertext.handle)
        except InvalidTag as e:
            raise ValueError(f"corrupted ciphertext {ciphertext!r}") from e
        return int.from_bytes(payload, "big")

    def _discard(self, handles: List[bytes]) -> None:
        for handle in handles:
            self._table.pop(handle, None)

    def exists(self, ciphertext: Ciphertext) -> bool:
        return ciphertext.handle in self._table

    def __len__(self) -> int:
        return len(self._table)

    # ---------- input attestation ----------
    def create_encrypted_input(self, contract: str, user: str) -> EncryptedInputBuilder:
        return EncryptedInputBuilder(self, contract, user)

    def get_input_verifier_key_pem(self) -> bytes:
        """export input verifier public key as pem"""
        return self.input_verifier_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def _attest(self, handles: List[bytes], user: str, contract: str) -> bytes:
        signature = self._input_signer.sign(attestation_digest(handles, user, contract))
        return len(handles).to_bytes(1, "big") + b"".join(handles) + signature

    def verify_attestation(self, handle: bytes, input_proof: bytes, user: str, contract: str) -> None:
        """
        Check that handle is covered by a valid attestation for (user, contract).

        Raises:
            AttestationInvalid: malformed proof, foreign handle, unknown
                ciphertext or bad signature
        """
        if not input_proof:
            raise AttestationInvalid("empty input proof")
        count = input_proof[0]
        expected_len = 1 + count * HANDLE_SIZE + SIGNATURE_SIZE
        if count == 0 or len(input_proof) != expected_len:
            raise AttestationInvalid("malformed input proof")

        handles = [
            input_proof[1 + i * HANDLE_SIZE: 1 + (i + 1) * HANDLE_SIZE]
            for i in range(count)
        ]
        signature = input_proof[1 + count * HANDLE_SIZE:]

        if handle not in handles:
            raise AttestationInvalid("handle not covered by input proof")
        if handle not in self._table:
            raise AttestationInvalid("handle does not reference an engine ciphertext")

        try:
            self.input_verifier_key.verify(signature, attestation_digest(handles, user, contract))
        except InvalidSignature as e:
            raise AttestationInvalid("input proof signature does not verify") from e

    # ---------- computation ----------
    @contextmanager
    def execution(self, executor: str) -> Iterator["FheContext"]:
        """run computations on behalf of executor; commit grants on clean exit"""
        ctx = FheContext(self, executor)
        try:
            yield ctx
        except Exception:
            ctx.rollback()
            raise
        else:
            ctx.commit()

    def is_allowed(self, ciphertext: Ciphertext, identity: str) -> bool:
        return self.grants.allows(identity, ciphertext.handle)

    def is_publicly_decryptable(self, ciphertext: Ciphertext) -> bool:
        return self.grants.is_public(ciphertext.handle)

    # ---------- export ----------
    def to_handle(self, ciphertext: Ciphertext) -> str:
        """export a ciphertext as an opaque 0x-prefixed 256-bit handle"""
        return handle_to_hex(ciphertext.handle)

    def from_handle(self, value) -> Ciphertext:
        return Ciphertext(handle_from_hex(value))

    # ---------- decryption ----------
    def user_decrypt(self, ciphertext: Ciphertext, request: DecryptionRequest) -> int:
        """
        Decrypt for a single identity holding a grant.

        Raises:
            DecryptionNotAllowed: bad signature, key/identity mismatch, or no
                grant for the identity on this handle
        """
        if request.handle != ciphertext.handle:
            raise DecryptionNotAllowed("request was signed for a different handle")
        if derive_identity(request.public_key) != normalize_identity(request.identity):
            raise DecryptionNotAllowed("public key does not belong to identity")
        try:
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(request.public_key)
            public_key.verify(
                request.signature,
                decryption_request_digest(ciphertext.handle, request.identity),
            )
        except (InvalidSignature, ValueError) as e:
            raise DecryptionNotAllowed("decryption request signature does not verify") from e

        if not self.grants.allows(request.identity, ciphertext.handle):
            raise DecryptionNotAllowed(
                f"{normalize_identity(request.identity)} holds no grant on {ciphertext!r}"
            )
        return self._unseal(ciphertext)

    def public_decrypt(self, ciphertext: Ciphertext) -> int:
        if not self.grants.is_public(ciphertext.handle):
            raise DecryptionNotAllowed(f"{ciphertext!r} is not publicly decryptable")
        return self._unseal(ciphertext)


class FheContext:
    """
    Encrypted primitives evaluated on behalf of one executor identity.

    Operands must be allowed for the executor, either through a persistent
    grant or transiently because they were ingested or produced in this
    context. Results are transiently allowed until the context ends.
    """

    def __init__(self, engine: EncryptionEngine, executor: str):
        self.engine = engine
        self.executor = normalize_identity(executor)
        self._transient: Set[bytes] = set()
        self._created: List[bytes] = []
        self._ingested: List[bytes] = []
        self._pending_grants: List[Tuple[str, bytes]] = []
        self._pending_public: List[bytes] = []

    def _new(self, fhe_type: FheType, value: int) -> Ciphertext:
        ciphertext = self.engine._seal(fhe_type, value)
        self._created.append(ciphertext.handle)
        self._transient.add(ciphertext.handle)
        return ciphertext

    def is_allowed(self, ciphertext: Ciphertext, identity: Optional[str] = None) -> bool:
        identity = self.executor if identity is None else normalize_identity(identity)
        if identity == self.executor and ciphertext.handle in self._transient:
            return True
        if (identity, ciphertext.handle) in self._pending_grants:
            return True
        return self.engine.grants.allows(identity, ciphertext.handle)

    def _operand(self, ciphertext: Ciphertext) -> int:
        if not self.is_allowed(ciphertext):
            raise OperandNotAllowed(f"{self.executor} may not compute on {ciphertext!r}")
        return self.engine._unseal(ciphertext)

    @staticmethod
    def _same_type(a: Ciphertext, b: Ciphertext) -> FheType:
        if a.fhe_type != b.fhe_type:
            raise TypeError(f"operand types differ: {a.fhe_type.name} vs {b.fhe_type.name}")
        return a.fhe_type

    @staticmethod
    def _require_bool(*operands: Ciphertext) -> None:
        for operand in operands:
            if operand.fhe_type != FheType.EBOOL:
                raise TypeError(f"expected EBOOL operand, got {operand.fhe_type.name}")

    # ---------- ingestion ----------
    def from_external(self, handle, input_proof: bytes, user: str, expected_type: FheType) -> Ciphertext:
        """
        Ingest an externally supplied ciphertext after verifying its attestation.

        Args:
            handle: external handle (bytes or 0x hex)
            input_proof: attestation issued by the input verifier
            user: identity that encrypted the input (the caller)
            expected_type: declared type of the input

        Returns:
            Ciphertext transiently allowed to the executor

        Raises:
            AttestationInvalid: on any verification failure or type mismatch
        """
        try:
            raw = handle_from_hex(handle)
        except ValueError as e:
            raise AttestationInvalid(str(e)) from e
        self.engine.verify_attestation(raw, input_proof, user, self.executor)
        ciphertext = Ciphertext(raw)
        if ciphertext.fhe_type != expected_type:
            raise AttestationInvalid(
                f"expected {expected_type.name} input, got {ciphertext.fhe_type.name}"
            )
        self._transient.add(raw)
        self._ingested.append(raw)
        return ciphertext

    def as_encrypted(self, value: int, fhe_type: FheType) -> Ciphertext:
        """trivial encryption of a plaintext constant"""
        if value < 0 or value > fhe_type.max_value:
            raise ValueError(f"constant out of range for {fhe_type.name}")
        return self._new(fhe_type, value)

    # ---------- comparisons ----------
    def ge(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        self._same_type(a, b)
        return self._new(FheType.EBOOL, int(self._operand(a) >= self._operand(b)))

    def le(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        self._same_type(a, b)
        return self._new(FheType.EBOOL, int(self._operand(a) <= self._operand(b)))

    def eq(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        self._same_type(a, b)
        return self._new(FheType.EBOOL, int(self._operand(a) == self._operand(b)))

    def ne(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        self._same_type(a, b)
        return self._new(FheType.EBOOL, int(self._operand(a) != self._operand(b)))

    # ---------- boolean / bitwise ----------
    def and_(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        self._require_bool(a, b)
        return self._new(FheType.EBOOL, self._operand(a) & self._operand(b))

    def or_(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        self._require_bool(a, b)
        return self._new(FheType.EBOOL, self._operand(a) | self._operand(b))

    def bitand(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        fhe_type = self._same_type(a, b)
        return self._new(fhe_type, self._operand(a) & self._operand(b))

    def select(self, condition: Ciphertext, if_true: Ciphertext, if_false: Ciphertext) -> Ciphertext:
        """oblivious select: both arms are read, the condition only weights them"""
        self._require_bool(condition)
        fhe_type = self._same_type(if_true, if_false)
        c = self._operand(condition)
        t = self._operand(if_true)
        f = self._operand(if_false)
        return self._new(fhe_type, c * t + (1 - c) * f)

    # ---------- grants ----------
    def allow(self, ciphertext: Ciphertext, identity: str) -> None:
        """persistently authorize identity on ciphertext (applied on commit)"""
        if not self.is_allowed(ciphertext):
            raise OperandNotAllowed(f"{self.executor} may not grant access to {ciphertext!r}")
        self._pending_grants.append((normalize_identity(identity), ciphertext.handle))

    def allow_this(self, ciphertext: Ciphertext) -> None:
        self.allow(ciphertext, self.executor)

    def make_publicly_decryptable(self, ciphertext: Ciphertext) -> None:
        if not self.is_allowed(ciphertext):
            raise OperandNotAllowed(f"{self.executor} may not publish {ciphertext!r}")
        self._pending_public.append(ciphertext.handle)

    # ---------- lifecycle ----------
    def _unclaimed_inputs(self) -> List[bytes]:
        """ingested inputs nobody holds a grant on (an input is consumed by one call)"""
        return [handle for handle in self._ingested if not self.engine.grants.is_referenced(handle)]

    def _reset(self) -> None:
        self._created.clear()
        self._ingested.clear()
        self._pending_grants.clear()
        self._pending_public.clear()
        self._transient.clear()

    def commit(self) -> None:
        for identity, handle in self._pending_grants:
            self.engine.grants.add(identity, handle)
        for handle in self._pending_public:
            self.engine.grants.mark_public(handle)

        # intermediates nobody was granted are unreachable once the context ends
        kept = {handle for _, handle in self._pending_grants} | set(self._pending_public)
        dropped = [handle for handle in self._created if handle not in kept]
        unclaimed = self._unclaimed_inputs()
        self.engine._discard(dropped + unclaimed)

        logger.debug(
            "execution for %s committed: kept %d of %d new ciphertexts, %d grants, %d public, "
            "%d unclaimed inputs dropped",
            self.executor, len(self._created) - len(dropped), len(self._created),
            len(self._pending_grants), len(self._pending_public), len(unclaimed),
        )
        self._reset()

    def rollback(self) -> None:
        unclaimed = self._unclaimed_inputs()
        self.engine._discard(self._created + unclaimed)
        logger.debug(
            "execution for %s rolled back: discarded %d ciphertexts and %d inputs, %d pending grants",
            self.executor, len(self._created), len(unclaimed), len(self._pending_grants),
        )
        self._reset()
