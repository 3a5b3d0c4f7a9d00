"""
Billing service orchestrator.

Coordinates:
- Checkout (the explicit upgrade flow)
- Webhook processing and the billing_events ledger
- Subscription reconciliation onto contractor profiles

All Stripe-specific code is in stripe_provider.py.

Each webhook event is a statement of current truth for its subject
(last writer wins on the fields that event type owns). Everything one
event changes commits in a single transaction together with its ledger
row, so a timed-out or crashed delivery can be re-applied from scratch.
"""
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from contractor_core.core.config import settings
from contractor_core.core.database import (
    get_db_session,
    billing_events,
    contractor_profiles,
    subscriptions,
    transactions,
)
from contractor_core.core.errors import BillingDisabled
from contractor_core.core.logging import log_event
from contractor_core.features.billing.provider import BillingProvider
from contractor_core.features.billing.stripe_provider import StripeProvider
from contractor_core.features.profiles.service import bind_customer, get_profile_by_id
from contractor_core.models.profile import Tier

logger = logging.getLogger("contractor_core")

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_EVENTS = (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED)
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"
CHECKOUT_COMPLETED = "checkout.session.completed"

# Invoices that represent a subscription charge
PAYMENT_BILLING_REASONS = ("subscription_create", "subscription_cycle")

# Statuses that keep the paid tier; the provider owns the past_due grace period
ENTITLED_STATUSES = ("active", "trialing", "past_due")

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_RECORDED = "recorded"
OUTCOME_STALE = "stale"


@dataclass
class BillingEventOutcome:
    """What happened to one webhook event."""
    event_id: str
    event_type: str
    outcome: str
    profile_id: Optional[str] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _from_timestamp(ts: Any) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def start_checkout(profile_id: str, success_url: str, cancel_url: str) -> str:
    """
    Start a subscription checkout for the elevated tier.

    The profile's Stripe customer is created on first use and bound with
    a conditional update, so concurrent checkouts converge on one customer.

    Returns:
        Checkout URL

    Raises:
        BillingDisabled: Stripe or the elevated price is not configured
        ProfileNotFound: unknown profile_id
        BillingProviderError: Stripe API failure
    """
    provider = get_provider()
    if not provider:
        raise BillingDisabled()
    price_id = settings.STRIPE_ELEVATED_PRICE_ID
    if not price_id:
        raise BillingDisabled("No Stripe price configured for the elevated tier")

    profile = get_profile_by_id(profile_id)
    customer_id = profile.stripe_customer_id
    if not customer_id:
        created = provider.ensure_customer(profile.id, profile.contact_phone, profile.company_name)
        with get_db_session() as session:
            customer_id = bind_customer(session, profile.id, created) or created
        if customer_id != created:
            log_event("info", "billing.customer.reused", profile_id=profile.id, extra={"customer_id": customer_id})

    url = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"contractor_id": profile.id},
    )
    log_event("info", "billing.checkout.started", profile_id=profile.id, extra={"customer_id": customer_id})
    return url


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingEventOutcome:
    """
    Verify and apply one billing webhook delivery (idempotent).

    Raises:
        BillingDisabled: Stripe not configured
        BillingWebhookError: signature invalid or payload malformed
    """
    provider = get_provider()
    if not provider:
        raise BillingDisabled()

    event = provider.verify_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()
    log_event("info", "billing.webhook.received", event_type=event["type"], extra={"stripe_event_id": event["id"]})
    return apply_billing_event(event, payload_hash=payload_hash)


def apply_billing_event(event: Dict[str, Any], *, payload_hash: Optional[str] = None) -> BillingEventOutcome:
    """
    Apply a verified billing event to subscriptions, transactions and profiles.

    Already processed events are skipped. An event recorded but not
    processed (an earlier attempt failed) is applied again from scratch.
    Failures are written to the ledger and re-raised so the provider
    redelivers.
    """
    event_id = event["id"]
    event_type = event["type"]

    for attempt in range(2):
        try:
            with get_db_session() as session:
                ledger = session.execute(
                    select(billing_events.c.processed, billing_events.c.outcome).where(
                        billing_events.c.stripe_event_id == event_id
                    )
                ).first()
                if ledger is not None and ledger.processed:
                    log_event("info", "billing.event.duplicate", event_type=event_type, extra={"stripe_event_id": event_id})
                    return BillingEventOutcome(event_id, event_type, OUTCOME_DUPLICATE)

                outcome, profile_id = _apply(session, event)
                _write_ledger(session, event, payload_hash, outcome=outcome, processed=True)
            break
        except IntegrityError as e:
            # A concurrent delivery of this event (or of the same charge) won
            if attempt:
                _record_failure(event, payload_hash, e)
                raise
            log_event("info", "billing.event.retry", event_type=event_type, reason="conflict", extra={"stripe_event_id": event_id})
        except Exception as e:
            _record_failure(event, payload_hash, e)
            raise

    log_event(
        "info",
        "billing.event.processed",
        profile_id=profile_id,
        event_type=event_type,
        extra={"stripe_event_id": event_id, "outcome": outcome},
    )
    return BillingEventOutcome(event_id, event_type, outcome, profile_id)


def _write_ledger(session, event: Dict[str, Any], payload_hash: Optional[str], **values) -> None:
    now = datetime.now(timezone.utc)
    if values.get("processed"):
        values["processed_at"] = now
        values["error"] = None
    result = session.execute(
        update(billing_events)
        .where(billing_events.c.stripe_event_id == event["id"])
        .values(**values)
    )
    if result.rowcount == 0:
        session.execute(
            insert(billing_events).values(
                stripe_event_id=event["id"],
                event_type=event["type"],
                payload_hash=payload_hash,
                received_at=now,
                **values,
            )
        )


def _record_failure(event: Dict[str, Any], payload_hash: Optional[str], error: Exception) -> None:
    try:
        with get_db_session() as session:
            _write_ledger(session, event, payload_hash, processed=False, error=str(error)[:2000])
    except Exception:
        logger.error("billing.ledger.write_failed", exc_info=True, extra={"stripe_event_id": event["id"]})
    log_event(
        "error",
        "billing.event.failed",
        event_type=event["type"],
        error_code=type(error).__name__,
        extra={"stripe_event_id": event["id"]},
    )


def _apply(session, event: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    event_type = event["type"]
    data = event["data"]["object"]

    if event_type in SUBSCRIPTION_EVENTS:
        return _apply_subscription(session, event, data)
    if event_type == PAYMENT_SUCCEEDED:
        return _apply_payment(session, event, data)
    if event_type == PAYMENT_FAILED:
        return _record_payment_failure(session, event, data)
    if event_type == CHECKOUT_COMPLETED:
        return _apply_checkout(session, event, data)

    log_event("info", "billing.event.ignored", event_type=event_type, extra={"stripe_event_id": event["id"]})
    return OUTCOME_IGNORED, None


def _profile_for_customer(session, customer_id: Optional[str], *, lock: bool = True) -> Optional[str]:
    if not customer_id:
        return None
    stmt = select(contractor_profiles.c.id).where(contractor_profiles.c.stripe_customer_id == customer_id)
    if lock:
        # Serialises concurrent events for the same profile
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    return row.id if row else None


def _claim_profile(session, contractor_id: Optional[str], customer_id: Optional[str]) -> Optional[str]:
    """Bind customer_id to the profile named in metadata if it has no customer yet."""
    if not contractor_id or not customer_id:
        return None
    row = session.execute(
        select(contractor_profiles.c.id, contractor_profiles.c.stripe_customer_id)
        .where(contractor_profiles.c.id == contractor_id)
        .with_for_update()
    ).first()
    if row is None:
        return None
    if row.stripe_customer_id not in (None, customer_id):
        log_event(
            "warning",
            "billing.customer.mismatch",
            profile_id=contractor_id,
            extra={"customer_id": customer_id, "bound_customer_id": row.stripe_customer_id},
        )
        return None
    if row.stripe_customer_id is None:
        bind_customer(session, contractor_id, customer_id)
    return contractor_id


def _unmatched(event: Dict[str, Any], customer_id: Optional[str]) -> Tuple[str, None]:
    # The profile may not be bound yet; dropping here keeps the provider from retrying forever
    log_event(
        "warning",
        "billing.event.unmatched",
        event_type=event["type"],
        extra={"stripe_event_id": event["id"], "customer_id": customer_id},
    )
    return OUTCOME_UNMATCHED, None


def derive_tier(subscription: Dict[str, Any], *, deleted: bool = False, elevated_price_id: Optional[str] = None) -> Tier:
    """elevated iff the elevated price is among the items of an entitled subscription."""
    price_id = elevated_price_id or settings.STRIPE_ELEVATED_PRICE_ID
    if deleted or not price_id:
        return Tier.BASE
    if subscription.get("status") not in ENTITLED_STATUSES:
        return Tier.BASE
    for item in (subscription.get("items") or {}).get("data") or []:
        if _ref(item.get("price")) == price_id:
            return Tier.ELEVATED
    return Tier.BASE


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    ts = subscription.get("current_period_end")
    if ts is None:
        # Newer API versions carry the period on each item
        ends = [item.get("current_period_end") for item in (subscription.get("items") or {}).get("data") or []]
        ends = [e for e in ends if e is not None]
        ts = max(ends) if ends else None
    return _from_timestamp(ts)


def _apply_subscription(session, event: Dict[str, Any], data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    customer_id = _ref(data.get("customer"))
    profile_id = _profile_for_customer(session, customer_id)
    if profile_id is None:
        profile_id = _claim_profile(session, (data.get("metadata") or {}).get("contractor_id"), customer_id)
    if profile_id is None:
        return _unmatched(event, customer_id)

    deleted = event["type"] == SUBSCRIPTION_DELETED
    event_at = _from_timestamp(event.get("created"))
    existing = session.execute(
        select(subscriptions.c.id, subscriptions.c.last_event_at).where(
            subscriptions.c.external_customer_id == customer_id
        )
    ).first()

    if (
        settings.BILLING_REJECT_STALE_EVENTS
        and existing is not None
        and existing.last_event_at is not None
        and event_at is not None
        and event_at < _utc(existing.last_event_at)
    ):
        log_event("warning", "billing.event.stale", profile_id=profile_id, event_type=event["type"], extra={"stripe_event_id": event["id"]})
        return OUTCOME_STALE, profile_id

    tier = derive_tier(data, deleted=deleted)
    now = datetime.now(timezone.utc)
    values = {
        "profile_id": profile_id,
        "stripe_subscription_id": data.get("id"),
        "status": data.get("status") or ("canceled" if deleted else "active"),
        "tier": tier.value,
        "current_period_end": _period_end(data),
        "cancel_at_period_end": bool(data.get("cancel_at_period_end")),
        "last_event_at": event_at,
        "updated_at": now,
    }
    if existing is not None:
        session.execute(update(subscriptions).where(subscriptions.c.id == existing.id).values(**values))
    else:
        session.execute(insert(subscriptions).values(external_customer_id=customer_id, created_at=now, **values))

    session.execute(
        update(contractor_profiles)
        .where(contractor_profiles.c.id == profile_id)
        .values(tier=tier.value, updated_at=now)
    )
    log_event(
        "info",
        "billing.subscription.synced",
        profile_id=profile_id,
        event_type=event["type"],
        extra={"status": values["status"], "tier": tier.value, "customer_id": customer_id},
    )
    return OUTCOME_APPLIED, profile_id


def _apply_payment(session, event: Dict[str, Any], data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    if data.get("billing_reason") not in PAYMENT_BILLING_REASONS:
        log_event("info", "billing.payment.ignored", event_type=event["type"], reason=data.get("billing_reason"))
        return OUTCOME_IGNORED, None

    customer_id = _ref(data.get("customer"))
    profile_id = _profile_for_customer(session, customer_id)
    if profile_id is None:
        return _unmatched(event, customer_id)

    charge_id = _ref(data.get("charge")) or data.get("id")
    existing = session.execute(
        select(transactions.c.id).where(transactions.c.external_charge_id == charge_id)
    ).first()
    if existing is not None:
        log_event("info", "billing.payment.duplicate", profile_id=profile_id, extra={"charge_id": charge_id})
        return OUTCOME_DUPLICATE, profile_id

    # The unique index on external_charge_id rejects a concurrent second insert
    session.execute(
        insert(transactions).values(
            id=str(uuid.uuid4()),
            profile_id=profile_id,
            amount=Decimal(int(data.get("amount_paid") or 0)) / Decimal(100),
            currency=(data.get("currency") or "usd").lower(),
            type="subscription_payment",
            status="succeeded",
            external_charge_id=charge_id,
            created_at=datetime.now(timezone.utc),
        )
    )
    log_event("info", "billing.payment.recorded", profile_id=profile_id, extra={"charge_id": charge_id})
    return OUTCOME_APPLIED, profile_id


def _record_payment_failure(session, event: Dict[str, Any], data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    # Never downgrades; only subscription events change the tier
    customer_id = _ref(data.get("customer"))
    profile_id = _profile_for_customer(session, customer_id, lock=False)
    if profile_id is None:
        return _unmatched(event, customer_id)
    log_event(
        "warning",
        "billing.payment.failed",
        profile_id=profile_id,
        event_type=event["type"],
        extra={"invoice_id": data.get("id"), "attempt_count": data.get("attempt_count")},
    )
    return OUTCOME_RECORDED, profile_id


def _apply_checkout(session, event: Dict[str, Any], data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    customer_id = _ref(data.get("customer"))
    contractor_id = (data.get("metadata") or {}).get("contractor_id") or data.get("client_reference_id")
    if not contractor_id or not customer_id:
        log_event("info", "billing.checkout.ignored", event_type=event["type"], reason="missing_reference")
        return OUTCOME_IGNORED, None

    owner = _profile_for_customer(session, customer_id, lock=False)
    if owner is not None:
        if owner != contractor_id:
            log_event("warning", "billing.customer.mismatch", profile_id=contractor_id, extra={"customer_id": customer_id})
            return OUTCOME_RECORDED, None
        return OUTCOME_APPLIED, owner

    profile_id = _claim_profile(session, contractor_id, customer_id)
    if profile_id is None:
        return _unmatched(event, customer_id)
    log_event("info", "billing.checkout.bound", profile_id=profile_id, extra={"customer_id": customer_id})
    return OUTCOME_APPLIED, profile_id
