"""
Contractor profile provisioning and reads.

- ensure_profile(identity_id, phone): idempotent find-or-create
- get_profile(identity_id) / get_profile_by_id(profile_id)
- complete_onboarding(identity_id, company_name)

Exactly one profile exists per identity. The guarantee comes from the
UNIQUE constraint on contractor_profiles.identity_id, not from the
existence check in front of the insert: when two first logins race,
the loser's insert fails and it re-reads the winner's row.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from contractor_core.core.database import (
    get_db_session,
    contractor_identities,
    contractor_profiles,
    subscriptions,
)
from contractor_core.core.errors import ConflictError, IdentityNotFound, ProfileNotFound, ValidationError
from contractor_core.core.logging import log_event
from contractor_core.models.profile import ContractorProfile, SubscriptionSummary, Tier

logger = logging.getLogger("contractor_core")

MAX_COMPANY_NAME_LENGTH = 200


def _find_profile_id(session, identity_id: str) -> Optional[str]:
    row = session.execute(
        select(contractor_profiles.c.id).where(contractor_profiles.c.identity_id == identity_id)
    ).first()
    return row.id if row else None


def provision_profile(identity_id: str, phone: str) -> Tuple[str, bool]:
    """ensure_profile() that also reports whether this call created the row."""
    with get_db_session() as session:
        identity = session.execute(
            select(contractor_identities.c.id).where(contractor_identities.c.id == identity_id)
        ).first()
        if identity is None:
            raise IdentityNotFound(f"Unknown identity: {identity_id}")
        existing = _find_profile_id(session, identity_id)
    if existing:
        return existing, False

    profile_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            session.execute(
                insert(contractor_profiles).values(
                    id=profile_id,
                    identity_id=identity_id,
                    contact_phone=phone,
                    tier=Tier.BASE.value,
                    onboarding_completed=False,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Lost a concurrent first-login race; the winner's row is the profile
        with get_db_session() as session:
            existing = _find_profile_id(session, identity_id)
        if existing is None:
            raise ConflictError("Profile creation conflicted and no profile was found")
        log_event("info", "profile.provision.converged", identity_id=identity_id, profile_id=existing)
        return existing, False

    log_event("info", "profile.created", identity_id=identity_id, profile_id=profile_id, phone=phone)
    return profile_id, True


def ensure_profile(identity_id: str, phone: str) -> str:
    """
    Return the profile id for identity_id, creating the profile if needed.

    New profiles start on the base tier with onboarding incomplete.

    Raises:
        IdentityNotFound: identity_id is not a verified identity
    """
    profile_id, _ = provision_profile(identity_id, phone)
    return profile_id


def _to_model(row, sub_row) -> ContractorProfile:
    summary = None
    if sub_row is not None:
        summary = SubscriptionSummary(
            status=sub_row.status,
            tier=Tier(sub_row.tier),
            current_period_end=sub_row.current_period_end,
            cancel_at_period_end=bool(sub_row.cancel_at_period_end),
        )
    return ContractorProfile(
        id=row.id,
        identity_id=row.identity_id,
        contact_phone=row.contact_phone,
        company_name=row.company_name,
        tier=Tier(row.tier),
        stripe_customer_id=row.stripe_customer_id,
        onboarding_completed=bool(row.onboarding_completed),
        created_at=row.created_at,
        updated_at=row.updated_at,
        subscription=summary,
    )


def _load(where) -> Optional[ContractorProfile]:
    with get_db_session() as session:
        row = session.execute(select(contractor_profiles).where(where)).first()
        if row is None:
            return None
        sub_row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.profile_id == row.id)
            .order_by(subscriptions.c.updated_at.desc())
            .limit(1)
        ).first()
        return _to_model(row, sub_row)


def get_profile(identity_id: str) -> ContractorProfile:
    profile = _load(contractor_profiles.c.identity_id == identity_id)
    if profile is None:
        raise ProfileNotFound()
    return profile


def get_profile_by_id(profile_id: str) -> ContractorProfile:
    profile = _load(contractor_profiles.c.id == profile_id)
    if profile is None:
        raise ProfileNotFound()
    return profile


def complete_onboarding(identity_id: str, company_name: str) -> ContractorProfile:
    """Record the company name and mark onboarding done. Tier is untouched."""
    name = (company_name or "").strip()
    if not name:
        raise ValidationError("Company name is required")
    if len(name) > MAX_COMPANY_NAME_LENGTH:
        raise ValidationError(f"Company name must be at most {MAX_COMPANY_NAME_LENGTH} characters")

    with get_db_session() as session:
        result = session.execute(
            update(contractor_profiles)
            .where(contractor_profiles.c.identity_id == identity_id)
            .values(
                company_name=name,
                onboarding_completed=True,
                updated_at=datetime.now(timezone.utc),
            )
        )
    if result.rowcount != 1:
        raise ProfileNotFound()

    log_event("info", "profile.onboarding.completed", identity_id=identity_id)
    return get_profile(identity_id)


def bind_customer(session, profile_id: str, customer_id: str) -> Optional[str]:
    """
    Attach a billing customer id to a profile that has none yet.

    Returns the customer id now bound to the profile (ours, or one a
    concurrent caller bound first), or None if the profile is missing.
    """
    session.execute(
        update(contractor_profiles)
        .where(
            and_(
                contractor_profiles.c.id == profile_id,
                contractor_profiles.c.stripe_customer_id.is_(None),
            )
        )
        .values(stripe_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
    )
    row = session.execute(
        select(contractor_profiles.c.stripe_customer_id).where(contractor_profiles.c.id == profile_id)
    ).first()
    return row.stripe_customer_id if row else None
