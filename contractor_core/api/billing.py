"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session for the elevated tier
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from contractor_core.core.auth import get_current_identity_id
from contractor_core.core.config import settings
from contractor_core.features.billing.service import process_webhook_event, start_checkout
from contractor_core.features.profiles.service import get_profile


router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    success_url: str = f"{settings.APP_BASE_URL}/billing/success"
    cancel_url: str = f"{settings.APP_BASE_URL}/billing/cancel"


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    url: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(request: CheckoutRequest, identity_id: str = Depends(get_current_identity_id)):
    """
    Create Stripe checkout session.

    Errors:
        401: no valid session
        404: no profile for this identity
        503: Billing disabled (STRIPE_SECRET_KEY or elevated price not set)
        502: Stripe API error
    """
    profile = get_profile(identity_id)
    url = start_checkout(profile.id, request.success_url, request.cancel_url)
    return {"url": url}


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    The raw body is verified against STRIPE_WEBHOOK_SECRET before it is
    parsed. Event deduplication uses stripe_event_id (billing_events table).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
        500: Processing failed; Stripe will redeliver
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = process_webhook_event(headers, body)
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}
