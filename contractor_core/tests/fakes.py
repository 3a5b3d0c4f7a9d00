"""Test doubles and Stripe payload builders shared by the suite."""
import hashlib
import hmac
import time
from datetime import datetime

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_ELEVATED_PRICE = "price_elevated_test"


class SequenceStrategy:
    """Hands out predetermined codes and records every delivery."""
    name = "sequence"

    def __init__(self, codes=None, fail_with=None):
        self.codes = list(codes or [])
        self.fail_with = fail_with
        self.generated = 0
        self.deliveries = []

    def generate_code(self, length: int) -> str:
        self.generated += 1
        if self.codes:
            return self.codes.pop(0)
        return str(self.generated).zfill(length)

    def deliver(self, phone: str, code: str, *, ttl_seconds: int) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.deliveries.append((phone, code))


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header for payload."""
    ts = int(timestamp if timestamp is not None else time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_type: str, obj: dict, *, event_id: str = "evt_1", created=None) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(created if created is not None else time.time()),
        "data": {"object": obj},
    }


def subscription_object(customer: str, *, status: str = "active", price: str = TEST_ELEVATED_PRICE, **extra) -> dict:
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_end": 1735689600,
        "items": {"data": [{"id": "si_1", "price": {"id": price}}]},
    }
    obj.update(extra)
    return obj


def invoice_object(customer: str, *, charge: str = "ch_1", amount_paid: int = 4900, billing_reason: str = "subscription_create") -> dict:
    return {
        "id": "in_1",
        "object": "invoice",
        "customer": customer,
        "charge": charge,
        "amount_paid": amount_paid,
        "currency": "usd",
        "billing_reason": billing_reason,
    }


