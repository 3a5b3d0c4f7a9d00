"""
Profile provisioning: exactly one profile per identity, even under races.
"""
import threading

import pytest
from sqlalchemy import func, select

from contractor_core.core.database import get_db_session, contractor_identities, contractor_profiles
from contractor_core.core.errors import IdentityNotFound, ProfileNotFound, ValidationError
from contractor_core.features.identity.service import ensure_identity
from contractor_core.features.profiles.service import (
    complete_onboarding,
    ensure_profile,
    get_profile,
    get_profile_by_id,
    provision_profile,
)
from contractor_core.models.profile import Tier

PHONE = "+15551234567"


def _profile_count(identity_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(contractor_profiles).where(contractor_profiles.c.identity_id == identity_id)
        ).scalar_one()


def test_ensure_identity_is_idempotent():
    first = ensure_identity(PHONE)
    second = ensure_identity("+1 555 123 4567")
    assert first.id == second.id
    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(contractor_identities)).scalar_one() == 1


def test_new_profile_defaults():
    identity = ensure_identity(PHONE)
    profile_id = ensure_profile(identity.id, PHONE)

    profile = get_profile_by_id(profile_id)
    assert profile.identity_id == identity.id
    assert profile.contact_phone == PHONE
    assert profile.tier == Tier.BASE
    assert profile.onboarding_completed is False
    assert profile.stripe_customer_id is None
    assert profile.subscription is None
    assert profile.next_step == "onboarding"


def test_ensure_profile_returns_existing():
    identity = ensure_identity(PHONE)
    first, created = provision_profile(identity.id, PHONE)
    second, created_again = provision_profile(identity.id, PHONE)

    assert first == second
    assert (created, created_again) == (True, False)
    assert _profile_count(identity.id) == 1


def test_unknown_identity_rejected():
    with pytest.raises(IdentityNotFound):
        ensure_profile("not-a-real-identity", PHONE)
    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(contractor_profiles)).scalar_one() == 0


def test_concurrent_first_logins_converge():
    identity = ensure_identity(PHONE)
    workers = 8
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def provision():
        barrier.wait()
        try:
            results.append(ensure_profile(identity.id, PHONE))
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=provision) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == workers
    assert len(set(results)) == 1
    assert _profile_count(identity.id) == 1


def test_lost_race_rereads_winner(monkeypatch):
    identity = ensure_identity(PHONE)
    winner = ensure_profile(identity.id, PHONE)

    # Simulate the racy window: the existence check sees nothing
    monkeypatch.setattr("contractor_core.features.profiles.service._find_profile_id", _miss_once())
    assert ensure_profile(identity.id, PHONE) == winner
    assert _profile_count(identity.id) == 1


def _miss_once():
    from contractor_core.features.profiles import service

    real = service._find_profile_id
    calls = {"n": 0}

    def finder(session, identity_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real(session, identity_id)

    return finder


def test_complete_onboarding():
    identity = ensure_identity(PHONE)
    ensure_profile(identity.id, PHONE)

    profile = complete_onboarding(identity.id, "  Acme Roofing  ")
    assert profile.company_name == "Acme Roofing"
    assert profile.onboarding_completed is True
    assert profile.tier == Tier.BASE
    assert profile.next_step == "dashboard"


def test_onboarding_requires_company_name():
    identity = ensure_identity(PHONE)
    ensure_profile(identity.id, PHONE)
    with pytest.raises(ValidationError):
        complete_onboarding(identity.id, "   ")


def test_onboarding_without_profile():
    identity = ensure_identity(PHONE)
    with pytest.raises(ProfileNotFound):
        complete_onboarding(identity.id, "Acme")


def test_get_profile_missing():
    with pytest.raises(ProfileNotFound):
        get_profile("nobody")
