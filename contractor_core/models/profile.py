from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    BASE = "base"
    ELEVATED = "elevated"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class ContractorIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    phone: str
    created_at: datetime


class SubscriptionSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    tier: Tier
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class ContractorProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    identity_id: str
    contact_phone: str
    company_name: Optional[str] = None
    tier: Tier = Tier.BASE
    stripe_customer_id: Optional[str] = None
    onboarding_completed: bool = False
    created_at: datetime
    updated_at: datetime
    subscription: Optional[SubscriptionSummary] = None

    @property
    def next_step(self) -> str:
        return "dashboard" if self.onboarding_completed else "onboarding"


class LoginResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    identity_id: str
    profile_id: str
    is_new_user: bool
    next_step: str
