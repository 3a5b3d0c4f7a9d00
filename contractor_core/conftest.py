# contractor_core/conftest.py
import json
from datetime import datetime, timezone

import pytest

from contractor_core.core.config import settings
from contractor_core.core.database import init_engine, create_all_tables, dispose_engine
from contractor_core.features.otp import service as otp_service_module
from contractor_core.features.otp.service import OtpService
from contractor_core.tests.fakes import (
    TEST_ELEVATED_PRICE,
    TEST_WEBHOOK_SECRET,
    FrozenClock,
    SequenceStrategy,
    sign_payload,
)


@pytest.fixture(scope="function", autouse=True)
def database(tmp_path):
    """Bind the engine to a throwaway SQLite file with the full schema."""
    url = f"sqlite:///{tmp_path / 'test.db'}"
    init_engine(url)
    create_all_tables()
    yield url
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """Deterministic configuration; no network-backed delivery."""
    monkeypatch.setattr(settings, "ENV", "test")
    monkeypatch.setattr(settings, "OTP_MODE", "fixed")
    monkeypatch.setattr(settings, "OTP_FIXED_CODE", "123456")
    monkeypatch.setattr(settings, "OTP_CODE_LENGTH", 6)
    monkeypatch.setattr(settings, "OTP_TTL_SECONDS", 600)
    monkeypatch.setattr(settings, "OTP_RATE_LIMIT_MAX", 5)
    monkeypatch.setattr(settings, "OTP_RATE_LIMIT_WINDOW_SECONDS", 600)
    monkeypatch.setattr(settings, "OTP_MAX_VERIFY_ATTEMPTS", 5)
    monkeypatch.setattr(settings, "OTP_MAX_RESENDS", 3)
    monkeypatch.setattr(settings, "ANALYTICS_ENABLED", True)
    monkeypatch.setattr(settings, "SESSION_SECRET", "test-session-secret")
    monkeypatch.setattr(settings, "CRON_SECRET", "test-cron-secret")
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "STRIPE_ELEVATED_PRICE_ID", TEST_ELEVATED_PRICE)
    monkeypatch.setattr(settings, "BILLING_REJECT_STALE_EVENTS", False)
    otp_service_module.set_otp_service(None)
    yield settings
    otp_service_module.set_otp_service(None)


@pytest.fixture
def billing_settings(monkeypatch):
    """Turn billing on with a known webhook secret."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    return settings


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def strategy():
    return SequenceStrategy()


@pytest.fixture
def otp(strategy, clock):
    """OtpService over the sequence strategy, also installed process-wide."""
    service = OtpService(strategy, clock=clock)
    otp_service_module.set_otp_service(service)
    return service


@pytest.fixture
def signed():
    """Serialize an event and return (body, headers) signed with the test secret."""
    def _signed(event: dict):
        body = json.dumps(event)
        return body.encode(), {"stripe-signature": sign_payload(body)}
    return _signed
