"""
end-to-end demonstration of confidential matching.

shows complete flow:
1. a party publishes an encrypted profile
2. another party submits an encrypted preference
3. the service evaluates the match predicate over ciphertexts
4. both parties (and nobody else) decrypt the result
5. one party makes the result public
6. a batch of synthetic parties is matched and checked against plaintext
"""

from faker import Faker

from encmatch import DecryptionNotAllowed, EncryptionEngine, MatchService, PermissionDenied
from encmatch.client import Account, MatchClient
from encmatch.models import Gender, PreferenceAttributes, ProfileAttributes
from encmatch.settings import MatchSettings, configure_logging
from encmatch.synthetic import populate, reference_match


def demo_basic_flow(service: MatchService, engine: EncryptionEngine, fake: Faker):
    """demonstrate publish, submit, compute and public elevation."""

    print("\n" + "=" * 80)
    print("confidential matching demo")
    print("=" * 80)

    alice = MatchClient(service, engine, Account.create(label=fake.name()))
    bob = MatchClient(service, engine, Account.create(label=fake.name()))
    mallory = MatchClient(service, engine, Account.create(label=fake.name()))

    print(f"\n[setup] service {service.address} ({service.version()})")
    print(f"  profile owner:        {alice.account.label} {alice.address}")
    print(f"  preference requester: {bob.account.label} {bob.address}")
    print(f"  third party:          {mallory.account.label} {mallory.address}")

    print("\n[alice] publishing encrypted profile...")
    profile_id = alice.publish_profile(
        ProfileAttributes(age=25, gender=Gender.FEMALE, interests=0b0101, region=7)
    )
    print(f"  profile id: {profile_id}")

    print("\n[bob] submitting encrypted preference (age 20-30, any gender, any region)...")
    pref_id = bob.submit_preference(
        PreferenceAttributes(min_age=20, max_age=30, interests_mask=0b0100)
    )
    print(f"  preference id: {pref_id}")

    print("\n[bob] requesting match evaluation...")
    handle = bob.compute_match(profile_id, pref_id)
    print(f"  handle: {handle[:18]}...")
    print(f"  bob decrypts:   {'match' if bob.decrypt_match(handle) else 'no match'}")
    print(f"  alice decrypts: {'match' if alice.decrypt_match(handle) else 'no match'}")

    try:
        mallory.decrypt_match(handle)
        print("  mallory decrypted the result (unexpected)")
    except DecryptionNotAllowed:
        print("  mallory cannot decrypt: no grant")

    again = bob.compute_match(profile_id, pref_id)
    print(f"\n[demo] second evaluation handle: {again[:18]}... (fresh ciphertext, same value)")

    print("\n[mallory] trying to make the result public...")
    try:
        mallory.make_public(profile_id, pref_id)
    except PermissionDenied as e:
        print(f"  denied: {e}")

    print("\n[alice] making the result public...")
    public_handle = alice.make_public(profile_id, pref_id)
    print(f"  anyone can now read it: {'match' if mallory.public_match(public_handle) else 'no match'}")

    print("\n[bob] stricter preference (min age 26)...")
    strict_id = bob.submit_preference(
        PreferenceAttributes(min_age=26, max_age=30, interests_mask=0b0100)
    )
    strict = bob.compute_match(profile_id, strict_id)
    print(f"  result: {'match' if bob.decrypt_match(strict) else 'no match'}")


def demo_batch(service: MatchService, engine: EncryptionEngine, seed: int = 42):
    """match synthetic parties and compare with the plaintext oracle."""

    print("\n[batch] populating synthetic parties...")
    profiles, preferences = populate(service, engine, num_profiles=8, num_preferences=3, seed=seed)
    print(f"  profiles: {service.profile_count()}, preferences: {service.preference_count()}")

    mismatches = 0
    for pref in preferences:
        handles = service.compute_match_handles(
            pref.client.address, pref.record_id, [p.record_id for p in profiles]
        )
        matched = []
        for party in profiles:
            got = pref.client.decrypt_match(handles[party.record_id])
            if got != reference_match(party.attributes, pref.attributes):
                mismatches += 1
            if got:
                matched.append(party.record_id)
        print(f"  preference {pref.record_id}: matches {matched}")

    print(f"  mismatches against plaintext oracle: {mismatches}")


if __name__ == "__main__":
    settings = MatchSettings.from_env()
    configure_logging(settings)

    engine = EncryptionEngine()
    service = MatchService.from_settings(settings, engine=engine)
    fake = Faker()

    demo_basic_flow(service, engine, fake)
    demo_batch(service, engine)

    print("\n" + "=" * 80)
