"""confidential profile/preference matching over encrypted attributes"""

__version__ = "0.1.0"

from encmatch.engine import Ciphertext, EncryptionEngine, FheType  # noqa: E402
from encmatch.errors import (  # noqa: E402
    AttestationInvalid,
    DecryptionNotAllowed,
    MatchError,
    NotRegistered,
    OperandNotAllowed,
    PermissionDenied,
)
from encmatch.predicate import WILDCARD_GENDER, WILDCARD_REGION  # noqa: E402
from encmatch.service import MatchService  # noqa: E402
from encmatch.store import ConfidentialAttributeStore  # noqa: E402

__all__ = [
    "AttestationInvalid",
    "Ciphertext",
    "ConfidentialAttributeStore",
    "DecryptionNotAllowed",
    "EncryptionEngine",
    "FheType",
    "MatchError",
    "MatchService",
    "NotRegistered",
    "OperandNotAllowed",
    "PermissionDenied",
    "WILDCARD_GENDER",
    "WILDCARD_REGION",
]
