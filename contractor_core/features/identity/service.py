"""
Contractor identities and login completion.

An identity is created the first time a phone number passes OTP
verification. complete_login() is the whole post-verification path:
verify, find-or-create identity, find-or-create profile, sign a session.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from contractor_core.core.auth import issue_session_token
from contractor_core.core.database import get_db_session, contractor_identities
from contractor_core.core.errors import ConflictError
from contractor_core.core.logging import log_event
from contractor_core.features.otp.phone import normalize_phone
from contractor_core.features.otp.service import OtpService, get_otp_service
from contractor_core.features.profiles.service import get_profile_by_id, provision_profile
from contractor_core.models.profile import ContractorIdentity, LoginResult

logger = logging.getLogger("contractor_core")


def _find_identity(phone: str) -> Optional[ContractorIdentity]:
    with get_db_session() as session:
        row = session.execute(
            select(contractor_identities).where(contractor_identities.c.phone == phone)
        ).first()
    if row is None:
        return None
    return ContractorIdentity(id=row.id, phone=row.phone, created_at=row.created_at)


def ensure_identity(phone: str) -> ContractorIdentity:
    """Find-or-create the identity for an already verified phone number."""
    phone = normalize_phone(phone)
    existing = _find_identity(phone)
    if existing:
        return existing

    identity = ContractorIdentity(id=str(uuid.uuid4()), phone=phone, created_at=datetime.now(timezone.utc))
    try:
        with get_db_session() as session:
            session.execute(
                insert(contractor_identities).values(
                    id=identity.id,
                    phone=identity.phone,
                    created_at=identity.created_at,
                )
            )
    except IntegrityError:
        existing = _find_identity(phone)
        if existing is None:
            raise ConflictError("Identity creation conflicted and no identity was found")
        return existing

    log_event("info", "identity.created", phone=phone, identity_id=identity.id)
    return identity


def complete_login(phone: str, code: str, *, otp_service: Optional[OtpService] = None) -> LoginResult:
    """
    Verify the code and establish a session.

    Raises whatever OtpService.verify() raises; nothing is created when
    verification fails.
    """
    service = otp_service or get_otp_service()
    verified = service.verify(phone, code)

    identity = ensure_identity(verified.phone)
    profile_id, created = provision_profile(identity.id, verified.phone)
    profile = get_profile_by_id(profile_id)

    log_event(
        "info",
        "auth.login.completed",
        phone=verified.phone,
        identity_id=identity.id,
        profile_id=profile_id,
        extra={"is_new_user": created},
    )
    return LoginResult(
        token=issue_session_token(identity.id),
        identity_id=identity.id,
        profile_id=profile_id,
        is_new_user=created,
        next_step=profile.next_step,
    )
