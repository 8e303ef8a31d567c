"""Shared fixtures for the matching tests."""

import pytest

from encmatch.client import Account, MatchClient
from encmatch.engine import EncryptionEngine, FheType
from encmatch.models import Gender, PreferenceAttributes, ProfileAttributes
from encmatch.service import MatchService
from encmatch.store import ConfidentialAttributeStore, Preference, Profile
from encmatch.predicate import WILDCARD_GENDER, WILDCARD_REGION


# ============================================================================
# Core components
# ============================================================================

@pytest.fixture
def engine() -> EncryptionEngine:
    return EncryptionEngine()


@pytest.fixture
def store() -> ConfidentialAttributeStore:
    return ConfidentialAttributeStore("sqlite://")


@pytest.fixture
def service(engine, store) -> MatchService:
    return MatchService(engine, store)


@pytest.fixture
def make_client(service, engine):
    """factory for parties talking to the shared service"""
    def _make(label: str = "") -> MatchClient:
        return MatchClient(service, engine, Account.create(label=label))
    return _make


@pytest.fixture
def alice(make_client) -> MatchClient:
    """profile owner"""
    return make_client("alice")


@pytest.fixture
def bob(make_client) -> MatchClient:
    """preference requester"""
    return make_client("bob")


@pytest.fixture
def mallory(make_client) -> MatchClient:
    """unrelated third party"""
    return make_client("mallory")


# ============================================================================
# Attributes
# ============================================================================

@pytest.fixture
def scenario_profile() -> ProfileAttributes:
    return ProfileAttributes(age=25, gender=Gender.FEMALE, interests=0b0101, region=7)


@pytest.fixture
def scenario_preference() -> PreferenceAttributes:
    return PreferenceAttributes(min_age=20, max_age=30, interests_mask=0b0100)


@pytest.fixture
def published(alice, bob, scenario_profile, scenario_preference):
    """(profile_id, pref_id) for the end-to-end scenario pair"""
    return alice.publish_profile(scenario_profile), bob.submit_preference(scenario_preference)


# ============================================================================
# Direct predicate evaluation
# ============================================================================

EXECUTOR = "0x" + "ee" * 20


@pytest.fixture
def run_predicate(engine):
    """
    Evaluate a predicate function over trivially encrypted plaintext records.

    Returns the unsealed value of the result before the context ends.
    """
    def _run(fn, profile_values: dict, preference_values: dict) -> int:
        with engine.execution(EXECUTOR) as ctx:
            profile = make_profile(ctx, **profile_values)
            preference = make_preference(ctx, **preference_values)
            result = fn(ctx, profile, preference)
            return engine._unseal(result)
    return _run


def make_profile(ctx, age=25, gender=int(Gender.FEMALE), interests=0b0101, region=7,
                 published=True) -> Profile:
    return Profile(
        profile_id=1,
        owner="0x" + "aa" * 20,
        age=ctx.as_encrypted(age, FheType.EUINT8),
        gender=ctx.as_encrypted(gender, FheType.EUINT8),
        interests=ctx.as_encrypted(interests, FheType.EUINT16),
        region=ctx.as_encrypted(region, FheType.EUINT16),
        published=published,
    )


def make_preference(ctx, min_age=20, max_age=30, desired_gender=WILDCARD_GENDER,
                    interests_mask=0b0100, region=WILDCARD_REGION, submitted=True) -> Preference:
    return Preference(
        pref_id=1,
        requester="0x" + "bb" * 20,
        min_age=ctx.as_encrypted(min_age, FheType.EUINT8),
        max_age=ctx.as_encrypted(max_age, FheType.EUINT8),
        desired_gender=ctx.as_encrypted(desired_gender, FheType.EUINT8),
        interests_mask=ctx.as_encrypted(interests_mask, FheType.EUINT16),
        region=ctx.as_encrypted(region, FheType.EUINT16),
        submitted=submitted,
    )
