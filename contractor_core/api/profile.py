"""
Profile routes (session required).

- GET  /api/profile
- POST /api/profile/onboarding
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from contractor_core.core.auth import get_current_identity_id
from contractor_core.features.profiles.service import complete_onboarding, get_profile
from contractor_core.models.profile import ContractorProfile

router = APIRouter(prefix="/api/profile", tags=["profile"])


class SubscriptionOut(BaseModel):
    status: str
    tier: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class ProfileResponse(BaseModel):
    id: str
    identity_id: str
    contact_phone: str
    company_name: Optional[str] = None
    tier: str
    onboarding_completed: bool
    next_step: str
    subscription: Optional[SubscriptionOut] = None
    created_at: datetime
    updated_at: datetime


class OnboardingRequest(BaseModel):
    company_name: str


def _to_response(profile: ContractorProfile) -> ProfileResponse:
    subscription = None
    if profile.subscription:
        subscription = SubscriptionOut(
            status=profile.subscription.status,
            tier=profile.subscription.tier.value,
            current_period_end=profile.subscription.current_period_end,
            cancel_at_period_end=profile.subscription.cancel_at_period_end,
        )
    return ProfileResponse(
        id=profile.id,
        identity_id=profile.identity_id,
        contact_phone=profile.contact_phone,
        company_name=profile.company_name,
        tier=profile.tier.value,
        onboarding_completed=profile.onboarding_completed,
        next_step=profile.next_step,
        subscription=subscription,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


@router.get("", response_model=ProfileResponse)
def read_profile(identity_id: str = Depends(get_current_identity_id)):
    """Current profile, read fresh from the datastore on every request."""
    return _to_response(get_profile(identity_id))


@router.post("/onboarding", response_model=ProfileResponse)
def onboarding(request: OnboardingRequest, identity_id: str = Depends(get_current_identity_id)):
    return _to_response(complete_onboarding(identity_id, request.company_name))
