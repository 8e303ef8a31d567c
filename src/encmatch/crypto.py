from hashlib import blake2b
import secrets

HANDLE_SIZE = 32
IDENTITY_SIZE = 20


def new_handle(type_code: int) -> bytes:
    """Fresh opaque handle: 31 random bytes followed by the ciphertext type code.

    The handle carries no information about the value it references.
    """
    return secrets.token_bytes(HANDLE_SIZE - 1) + bytes([type_code])


def handle_to_hex(handle: bytes) -> str:
    """Export a handle as a 0x-prefixed 256-bit hex string."""
    return "0x" + handle.hex().zfill(HANDLE_SIZE * 2)


def handle_from_hex(value) -> bytes:
    """Parse a 0x-prefixed (or bare) hex handle; bytes pass through."""
    if isinstance(value, bytes):
        raw = value
    elif not isinstance(value, str):
        raise ValueError(f"handle must be bytes or a hex string, got {type(value).__name__}")
    else:
        stripped = value.lower().strip()
        if stripped.startswith("0x"):
            stripped = stripped[2:]
        raw = bytes.fromhex(stripped)
    if len(raw) != HANDLE_SIZE:
        raise ValueError(f"handle must be {HANDLE_SIZE} bytes, got {len(raw)}")
    return raw


def derive_identity(public_key_bytes: bytes) -> str:
    """Identity (address) of a key holder: truncated hash of the raw public key."""
    hasher = blake2b(digest_size=IDENTITY_SIZE)
    hasher.update(b"identity_v1")
    hasher.update(public_key_bytes)
    return "0x" + hasher.hexdigest()


def normalize_identity(identity: str) -> str:
    """return lowercase identity with 0x prefix."""
    stripped = identity.lower().strip()
    if stripped.startswith("0x"):
        stripped = stripped[2:]
    return "0x" + stripped.zfill(IDENTITY_SIZE * 2)


def attestation_digest(handles, user: str, contract: str) -> bytes:
    """Message signed by the input verifier for a batch of ingested handles.

    Binds the handles to the identity that encrypted them and to the
    contract (service identity) allowed to ingest them, so an attestation
    cannot be replayed by another user or against another service.
    """
    hasher = blake2b(digest_size=32)
    hasher.update(b"input_attestation_v1")
    hasher.update(len(handles).to_bytes(4, "big"))
    for handle in handles:
        hasher.update(handle)
    hasher.update(normalize_identity(user).encode("utf-8"))
    hasher.update(normalize_identity(contract).encode("utf-8"))
    return hasher.digest()


def decryption_request_digest(handle: bytes, identity: str) -> bytes:
    """Message an identity signs to request decryption of one handle."""
    hasher = blake2b(digest_size=32)
    hasher.update(b"decryption_request_v1")
    hasher.update(handle)
    hasher.update(normalize_identity(identity).encode("utf-8"))
    return hasher.digest()
