"""
Matching service: the externally exposed operations.

Thin orchestration over the store, the predicate and the grant coordinator.
Every public method is one atomic call: it runs under the service lock, in
one engine execution context and one SQL session, and its events are
published only after both have committed.
"""

import logging
import secrets
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from encmatch import __version__, predicate
from encmatch.crypto import normalize_identity
from encmatch.engine import EncryptionEngine, FheContext, FheType
from encmatch.errors import NotRegistered
from encmatch.events import (
    EventBus,
    MatchComputed,
    MatchEvent,
    MatchMadePublic,
    PreferenceSubmitted,
    ProfilePublished,
)
from encmatch.grants import AccessGrantCoordinator
from encmatch.settings import MatchSettings
from encmatch.store import (
    ConfidentialAttributeStore,
    PreferenceAttributes,
    ProfileAttributes,
)

logger = logging.getLogger(__name__)

VERSION = f"ConfidentialMatch v{__version__}"


class MatchService:
    """
    Confidential profile/preference matching.

    Callers are identified by the `caller` argument of each operation, which
    the hosting environment is expected to authenticate.
    """

    def __init__(self, engine: EncryptionEngine, store: ConfidentialAttributeStore,
                 address: Optional[str] = None, events: Optional[EventBus] = None,
                 name: str = "encmatch"):
        """
        Args:
            engine: encryption engine evaluating the primitives
            store: attribute store
            address: identity of the service itself (random if omitted)
            events: event bus observers subscribe to
            name: instance name, used as the suffix of the service logger
        """
        self.engine = engine
        self.store = store
        self.address = normalize_identity(address) if address else "0x" + secrets.token_hex(20)
        self.events = events if events is not None else EventBus()
        self.grants = AccessGrantCoordinator(self.address)
        self._lock = threading.RLock()
        self.name = name
        self.log = logger.getChild(name)

    @classmethod
    def from_settings(cls, settings: MatchSettings,
                      engine: Optional[EncryptionEngine] = None) -> "MatchService":
        store = ConfidentialAttributeStore(settings.database_url, echo=settings.echo_sql)
        return cls(
            engine if engine is not None else EncryptionEngine(),
            store,
            events=EventBus(max_history=settings.max_event_history),
            name=settings.service_name,
        )

    @contextmanager
    def _call(self) -> Iterator[Tuple[FheContext, Session, List[MatchEvent]]]:
        pending: List[MatchEvent] = []
        with self._lock:
            with self.engine.execution(self.address) as ctx:
                with self.store.transaction() as session:
                    yield ctx, session, pending
            for event in pending:
                self.events.publish(event)

    # ---------- registration ----------
    def publish_profile(self, caller: str, enc_age, enc_gender, enc_interests, enc_region,
                        attestation: bytes) -> int:
        """
        Ingest an attested encrypted profile.

        Returns:
            the new profile id

        Raises:
            AttestationInvalid: a handle is not covered by a valid attestation
                for (caller, service) or has the wrong type
        """
        owner = normalize_identity(caller)
        with self._call() as (ctx, session, events):
            attributes = ProfileAttributes(
                age=ctx.from_external(enc_age, attestation, owner, FheType.EUINT8),
                gender=ctx.from_external(enc_gender, attestation, owner, FheType.EUINT8),
                interests=ctx.from_external(enc_interests, attestation, owner, FheType.EUINT16),
                region=ctx.from_external(enc_region, attestation, owner, FheType.EUINT16),
            )
            self.grants.grant_ingested(
                ctx, owner, attributes.age, attributes.gender, attributes.interests, attributes.region
            )
            profile_id = self.store.register_profile(owner, attributes, session=session)
            events.append(ProfilePublished(profile_id=profile_id, owner=owner))
        self.log.info("profile %d published by %s", profile_id, owner)
        return profile_id

    def submit_preference(self, caller: str, enc_min_age, enc_max_age, enc_desired_gender,
                          enc_interests_mask, enc_region, attestation: bytes) -> int:
        """Ingest an attested encrypted preference and return its id."""
        requester = normalize_identity(caller)
        with self._call() as (ctx, session, events):
            attributes = PreferenceAttributes(
                min_age=ctx.from_external(enc_min_age, attestation, requester, FheType.EUINT8),
                max_age=ctx.from_external(enc_max_age, attestation, requester, FheType.EUINT8),
                desired_gender=ctx.from_external(enc_desired_gender, attestation, requester, FheType.EUINT8),
                interests_mask=ctx.from_external(enc_interests_mask, attestation, requester, FheType.EUINT16),
                region=ctx.from_external(enc_region, attestation, requester, FheType.EUINT16),
            )
            self.grants.grant_ingested(
                ctx, requester, attributes.min_age, attributes.max_age,
                attributes.desired_gender, attributes.interests_mask, attributes.region,
            )
            pref_id = self.store.register_preference(requester, attributes, session=session)
            events.append(PreferenceSubmitted(pref_id=pref_id, requester=requester))
        self.log.info("preference %d submitted by %s", pref_id, requester)
        return pref_id

    # ---------- evaluation ----------
    def _evaluate_and_grant(self, ctx: FheContext, session: Session, profile_id: int, pref_id: int):
        profile = self.store.get_profile(profile_id, session=session)
        preference = self.store.get_preference(pref_id, session=session)
        result = predicate.evaluate(ctx, profile, preference)
        self.grants.grant_result_access(ctx, result, preference.requester, profile.owner)
        return result

    def compute_match_handle(self, caller: str, profile_id: int, pref_id: int) -> str:
        """
        Evaluate the predicate for a pair and grant the result to both parties.

        Every call derives a fresh ciphertext, so repeated calls return
        different handles that decrypt to the same value.

        Returns:
            opaque 0x-prefixed 256-bit handle of the encrypted result

        Raises:
            NotRegistered: unknown profile or preference id
        """
        with self._call() as (ctx, session, events):
            result = self._evaluate_and_grant(ctx, session, profile_id, pref_id)
            handle = self.engine.to_handle(result)
            events.append(MatchComputed(profile_id=profile_id, pref_id=pref_id, handle=handle))
        self.log.info("match computed for profile %d / preference %d by %s",
                    profile_id, pref_id, normalize_identity(caller))
        return handle

    def compute_match_handles(self, caller: str, pref_id: int,
                              profile_ids: Iterable[int]) -> Dict[int, str]:
        """Evaluate one preference against several profiles in a single atomic call."""
        handles: Dict[int, str] = {}
        with self._call() as (ctx, session, events):
            for profile_id in profile_ids:
                result = self._evaluate_and_grant(ctx, session, profile_id, pref_id)
                handles[profile_id] = self.engine.to_handle(result)
                events.append(MatchComputed(
                    profile_id=profile_id, pref_id=pref_id, handle=handles[profile_id]
                ))
        self.log.info("%d matches computed for preference %d by %s",
                    len(handles), pref_id, normalize_identity(caller))
        return handles

    def make_match_public(self, caller: str, profile_id: int, pref_id: int) -> str:
        """
        Re-derive the match result for a pair and make it publicly decryptable.

        Only the profile owner or the preference requester may call this. The
        first successful call records the public handle; later calls return
        it without another elevation.

        Returns:
            handle of the publicly decryptable result

        Raises:
            NotRegistered: unknown profile or preference id
            PermissionDenied: caller is neither owner nor requester
        """
        with self._call() as (ctx, session, events):
            profile = self.store.get_profile(profile_id, session=session)
            preference = self.store.get_preference(pref_id, session=session)
            predicate.require_registered(profile, preference)
            self.grants.ensure_party(caller, profile.owner, preference.requester)

            existing = self.store.get_public_match(profile_id, pref_id, session=session)
            if existing is not None:
                self.log.debug("match for profile %d / preference %d is already public",
                             profile_id, pref_id)
                return self.engine.to_handle(existing)

            result = predicate.evaluate(ctx, profile, preference)
            self.grants.grant_result_access(ctx, result, preference.requester, profile.owner)
            self.grants.make_public(ctx, result, caller, profile.owner, preference.requester)
            self.store.record_public_match(profile_id, pref_id, result, session=session)
            events.append(MatchMadePublic(profile_id=profile_id, pref_id=pref_id))
            return self.engine.to_handle(result)

    # ---------- metadata ----------
    def owner_of_profile(self, profile_id: int) -> str:
        profile = self.store.get_profile(profile_id)
        if not profile.published:
            raise NotRegistered(f"profile {profile_id} is not published")
        return profile.owner

    def owner_of_preference(self, pref_id: int) -> str:
        preference = self.store.get_preference(pref_id)
        if not preference.submitted:
            raise NotRegistered(f"preference {pref_id} is not submitted")
        return preference.requester

    def profile_count(self) -> int:
        return self.store.profile_count()

    def preference_count(self) -> int:
        return self.store.preference_count()

    @staticmethod
    def version() -> str:
        return VERSION
