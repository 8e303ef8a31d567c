"""
synthetic parties and attributes for demos, benchmarks and tests.

generated values stay on the client side: they are encrypted through a
MatchClient like any real party's attributes.
"""

from dataclasses import dataclass
from typing import List, Optional

from faker import Faker

from encmatch.client import Account, MatchClient
from encmatch.engine import EncryptionEngine
from encmatch.models import Gender, PreferenceAttributes, ProfileAttributes
from encmatch.service import MatchService

REGION_CODES = list(range(1, 21))


@dataclass
class SyntheticParty:
    client: MatchClient
    record_id: int
    attributes: object      # ProfileAttributes or PreferenceAttributes


def random_profile(fake: Faker) -> ProfileAttributes:
    """random profile with 1-4 interest flags set"""
    interests = 0
    for bit in fake.random_elements(list(range(16)), length=fake.random_int(1, 4), unique=True):
        interests |= 1 << bit
    return ProfileAttributes(
        age=fake.random_int(18, 80),
        gender=fake.random_element(list(Gender)),
        interests=interests,
        region=fake.random_element(REGION_CODES),
    )


def random_preference(fake: Faker) -> PreferenceAttributes:
    """random preference; gender and region are sometimes left as wildcards"""
    min_age = fake.random_int(18, 60)
    mask = 0
    for bit in fake.random_elements(list(range(16)), length=fake.random_int(1, 6), unique=True):
        mask |= 1 << bit
    return PreferenceAttributes(
        min_age=min_age,
        max_age=fake.random_int(min_age, 90),
        desired_gender=fake.random_element([None, Gender.MALE, Gender.FEMALE, Gender.OTHER]),
        interests_mask=mask,
        region=fake.random_element([None, None] + REGION_CODES),
    )


def reference_match(profile: ProfileAttributes, preference: PreferenceAttributes) -> bool:
    """plaintext oracle used to check decrypted results"""
    return (
        preference.min_age <= profile.age <= preference.max_age
        and (preference.desired_gender is None or preference.desired_gender == profile.gender)
        and (preference.region is None or preference.region == profile.region)
        and (profile.interests & preference.interests_mask) != 0
    )


def populate(service: MatchService, engine: EncryptionEngine, num_profiles: int,
             num_preferences: int, seed: Optional[int] = None):
    """
    Register synthetic parties through the normal client path.

    Args:
        service: service to populate
        engine: engine shared with the service
        num_profiles: profiles to publish, one party each
        num_preferences: preferences to submit, one party each
        seed: faker seed for reproducible attributes

    Returns:
        (profile parties, preference parties)
    """
    fake = Faker()
    if seed is not None:
        fake.seed_instance(seed)

    profiles: List[SyntheticParty] = []
    for _ in range(num_profiles):
        client = MatchClient(service, engine, Account.create(label=fake.name()))
        attributes = random_profile(fake)
        profiles.append(SyntheticParty(client, client.publish_profile(attributes), attributes))

    preferences: List[SyntheticParty] = []
    for _ in range(num_preferences):
        client = MatchClient(service, engine, Account.create(label=fake.name()))
        attributes = random_preference(fake)
        preferences.append(SyntheticParty(client, client.submit_preference(attributes), attributes))

    return profiles, preferences
