"""
client-side helpers

the client holds the plaintext: it validates attributes, encrypts them into
an attested input batch, submits them to the service and later decrypts
the results it has been granted. the service and the operator only ever see
handles.
"""

from dataclasses import dataclass, field
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from encmatch.crypto import decryption_request_digest, derive_identity
from encmatch.engine import Ciphertext, DecryptionRequest, EncryptionEngine
from encmatch.models import PreferenceAttributes, ProfileAttributes
from encmatch.predicate import MATCH
from encmatch.service import MatchService


@dataclass
class Account:
    """ed25519 keypair; the identity is derived from the public key"""
    private_key: ed25519.Ed25519PrivateKey = field(repr=False)
    label: str = ""

    @classmethod
    def create(cls, label: str = "") -> "Account":
        return cls(private_key=ed25519.Ed25519PrivateKey.generate(), label=label)

    @property
    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def address(self) -> str:
        return derive_identity(self.public_key_bytes)

    def decryption_request(self, ciphertext: Ciphertext) -> DecryptionRequest:
        """sign a request to decrypt one handle"""
        signature = self.private_key.sign(decryption_request_digest(ciphertext.handle, self.address))
        return DecryptionRequest(
            identity=self.address,
            public_key=self.public_key_bytes,
            handle=ciphertext.handle,
            signature=signature,
        )


class MatchClient:
    """
    One party's view of the matching service.

    Args:
        service: matching service
        engine: encryption engine shared with the service
        account: the party's identity
    """

    def __init__(self, service: MatchService, engine: EncryptionEngine, account: Account):
        self.service = service
        self.engine = engine
        self.account = account

    @property
    def address(self) -> str:
        return self.account.address

    def publish_profile(self, attributes: ProfileAttributes) -> int:
        batch = (
            self.engine.create_encrypted_input(self.service.address, self.address)
            .add8(attributes.age)
            .add8(int(attributes.gender))
            .add16(attributes.interests)
            .add16(attributes.region)
            .encrypt()
        )
        return self.service.publish_profile(self.address, *batch.handles, batch.input_proof)

    def submit_preference(self, attributes: PreferenceAttributes) -> int:
        batch = (
            self.engine.create_encrypted_input(self.service.address, self.address)
            .add8(attributes.min_age)
            .add8(attributes.max_age)
            .add8(attributes.desired_gender_code)
            .add16(attributes.interests_mask)
            .add16(attributes.region_code)
            .encrypt()
        )
        return self.service.submit_preference(self.address, *batch.handles, batch.input_proof)

    def compute_match(self, profile_id: int, pref_id: int) -> str:
        return self.service.compute_match_handle(self.address, profile_id, pref_id)

    def make_public(self, profile_id: int, pref_id: int) -> str:
        return self.service.make_match_public(self.address, profile_id, pref_id)

    def decrypt(self, handle) -> int:
        """user-decrypt any handle this account holds a grant on"""
        ciphertext = self.engine.from_handle(handle)
        return self.engine.user_decrypt(ciphertext, self.account.decryption_request(ciphertext))

    def decrypt_match(self, handle) -> bool:
        return self.decrypt(handle) == MATCH

    def public_match(self, handle) -> bool:
        """read a result that one of the parties made public"""
        return self.engine.public_decrypt(self.engine.from_handle(handle)) == MATCH

    def decrypt_profile(self, profile_id: int) -> Optional[ProfileAttributes]:
        """decrypt the account's own published profile"""
        profile = self.service.store.get_profile(profile_id)
        if not profile.published:
            return None
        return ProfileAttributes(
            age=self.decrypt(profile.age.handle),
            gender=self.decrypt(profile.gender.handle),
            interests=self.decrypt(profile.interests.handle),
            region=self.decrypt(profile.region.handle),
        )
