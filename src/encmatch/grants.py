"""
access grant coordinator

decides, for every ciphertext the service ingests or derives, which
identities may request its decryption. grants only ever widen:
- ingested attributes: owner (self access) and the service (computation)
- match results: the profile owner, the preference requester and the
  service, nobody else
- make_public: one-way elevation to every identity, only on request of one
  of the two parties

grant bookkeeping itself lives in the engine; this module holds the policy.
"""

import logging

from encmatch.crypto import normalize_identity
from encmatch.engine import Ciphertext, FheContext
from encmatch.errors import PermissionDenied

logger = logging.getLogger(__name__)


class AccessGrantCoordinator:
    """grant policy of the matching service"""

    def __init__(self, system_identity: str):
        self.system_identity = normalize_identity(system_identity)

    def grant_self_access(self, ctx: FheContext, ciphertext: Ciphertext, owner: str) -> None:
        """let the owner of an ingested attribute decrypt their own data"""
        ctx.allow(ciphertext, owner)

    def grant_computation_access(self, ctx: FheContext, ciphertext: Ciphertext) -> None:
        """let the service use the ciphertext as an operand in later calls"""
        ctx.allow_this(ciphertext)

    def grant_ingested(self, ctx: FheContext, owner: str, *ciphertexts: Ciphertext) -> None:
        for ciphertext in ciphertexts:
            self.grant_computation_access(ctx, ciphertext)
            self.grant_self_access(ctx, ciphertext, owner)

    def grant_result_access(self, ctx: FheContext, result: Ciphertext, party_a: str, party_b: str) -> None:
        """authorize exactly the two parties (and the service, for audit) on a result"""
        ctx.allow_this(result)
        ctx.allow(result, party_a)
        ctx.allow(result, party_b)
        logger.debug("result %s granted to %s and %s", result.handle.hex()[:12],
                     normalize_identity(party_a), normalize_identity(party_b))

    def ensure_party(self, caller: str, party_a: str, party_b: str) -> None:
        """
        Raises:
            PermissionDenied: caller is neither party_a nor party_b
        """
        caller = normalize_identity(caller)
        if caller not in (normalize_identity(party_a), normalize_identity(party_b)):
            raise PermissionDenied(f"{caller} is not a party to this match")

    def make_public(self, ctx: FheContext, result: Ciphertext, caller: str,
                    party_a: str, party_b: str) -> None:
        """irreversibly mark a result as decryptable by anyone"""
        self.ensure_party(caller, party_a, party_b)
        ctx.make_publicly_decryptable(result)
        logger.info("result %s made public on request of %s",
                    result.handle.hex()[:12], normalize_identity(caller))
