"""
match predicate evaluation over encrypted attributes

the predicate is the logical and of four encrypted sub-predicates:
1. age range: min_age <= age <= max_age
2. gender: desired gender is the wildcard, or equals the profile's gender
3. region: preference region is the wildcard, or equals the profile's region
4. interests: profile interests and preference mask share at least one bit

every sub-term is built from engine primitives; the only plaintext this
module branches on is the published/submitted flag of the two records.
`evaluate` is the one definition of the policy: both the evaluation path
and the public-elevation path call it.
"""

from encmatch.engine import Ciphertext, FheContext, FheType
from encmatch.errors import NotRegistered
from encmatch.store import Preference, Profile

# reserved out-of-domain codes (largest representable value of each type)
WILDCARD_GENDER = 0xFF
WILDCARD_REGION = 0xFFFF

MATCH = 1
NO_MATCH = 0


def age_in_range(ctx: FheContext, age: Ciphertext, min_age: Ciphertext, max_age: Ciphertext) -> Ciphertext:
    """encrypted (age >= min_age) and (age <= max_age)"""
    return ctx.and_(ctx.ge(age, min_age), ctx.le(age, max_age))


def category_accepted(ctx: FheContext, actual: Ciphertext, desired: Ciphertext, wildcard: int) -> Ciphertext:
    """encrypted (desired == wildcard) or (actual == desired)"""
    any_value = ctx.eq(desired, ctx.as_encrypted(wildcard, desired.fhe_type))
    return ctx.or_(any_value, ctx.eq(actual, desired))


def gender_accepted(ctx: FheContext, gender: Ciphertext, desired_gender: Ciphertext) -> Ciphertext:
    return category_accepted(ctx, gender, desired_gender, WILDCARD_GENDER)


def region_accepted(ctx: FheContext, region: Ciphertext, desired_region: Ciphertext) -> Ciphertext:
    return category_accepted(ctx, region, desired_region, WILDCARD_REGION)


def interests_overlap(ctx: FheContext, interests: Ciphertext, mask: Ciphertext) -> Ciphertext:
    """encrypted (interests & mask) != 0"""
    shared = ctx.bitand(interests, mask)
    return ctx.ne(shared, ctx.as_encrypted(0, shared.fhe_type))


def require_registered(profile: Profile, preference: Preference) -> None:
    """plaintext precondition shared by every caller of the predicate"""
    if not profile.published:
        raise NotRegistered(f"profile {profile.profile_id} is not published")
    if not preference.submitted:
        raise NotRegistered(f"preference {preference.pref_id} is not submitted")


def evaluate(ctx: FheContext, profile: Profile, preference: Preference) -> Ciphertext:
    """
    Evaluate the match predicate for one profile/preference pair.

    Args:
        ctx: engine execution context of the service
        profile: published profile record
        preference: submitted preference record

    Returns:
        encrypted EUINT8 holding MATCH (1) or NO_MATCH (0)

    Raises:
        NotRegistered: either record is not published/submitted
    """
    require_registered(profile, preference)

    age_ok = age_in_range(ctx, profile.age, preference.min_age, preference.max_age)
    gender_ok = gender_accepted(ctx, profile.gender, preference.desired_gender)
    region_ok = region_accepted(ctx, profile.region, preference.region)
    interests_ok = interests_overlap(ctx, profile.interests, preference.interests_mask)

    match = ctx.and_(ctx.and_(ctx.and_(age_ok, gender_ok), region_ok), interests_ok)

    return ctx.select(
        match,
        ctx.as_encrypted(MATCH, FheType.EUINT8),
        ctx.as_encrypted(NO_MATCH, FheType.EUINT8),
    )
