"""
error taxonomy for the matching service.

every failure aborts the whole call it happens in; nothing here is retried.
"""


class MatchError(Exception):
    """base class for all matching errors"""


class AttestationInvalid(MatchError):
    """externally supplied ciphertext failed proof verification"""


class NotRegistered(MatchError):
    """referenced profile or preference has no published/submitted record"""


class PermissionDenied(MatchError):
    """caller is not allowed to perform a privileged state change"""


class OperandNotAllowed(MatchError):
    """a ciphertext was used in a computation without a computation grant"""


class DecryptionNotAllowed(MatchError):
    """decryption requested by an identity holding no grant for the ciphertext"""
