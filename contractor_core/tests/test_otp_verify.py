"""
OTP verification: single use, expiry, attempt budget and analytics.
"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from contractor_core.core.database import get_db_session, otp_challenges, otp_analytics_events
from contractor_core.core.errors import (
    VERIFICATION_FAILED_MESSAGE,
    AlreadyConsumed,
    AttemptsExhausted,
    ChallengeExpired,
    CodeMismatch,
    InvalidCode,
    NoChallenge,
    VerificationFailed,
)

PHONE = "+15551234567"


def _events(event_type, phone=PHONE):
    with get_db_session() as session:
        return session.execute(
            select(otp_analytics_events).where(
                otp_analytics_events.c.phone == phone,
                otp_analytics_events.c.event_type == event_type,
            )
        ).fetchall()


def test_correct_code_verifies_once(otp, strategy):
    strategy.codes = ["123456"]
    handle = otp.issue(PHONE)

    result = otp.verify(PHONE, "123456")
    assert result.phone == PHONE
    assert result.challenge_id == handle.challenge_id

    with pytest.raises(AlreadyConsumed):
        otp.verify(PHONE, "123456")


def test_consumed_row_is_marked(otp, strategy, clock):
    strategy.codes = ["123456"]
    handle = otp.issue(PHONE)
    otp.verify(PHONE, "123456")

    with get_db_session() as session:
        row = session.execute(select(otp_challenges).where(otp_challenges.c.id == handle.challenge_id)).first()
    assert row.consumed is True
    assert row.verified_at is not None


def test_mismatch(otp, strategy):
    strategy.codes = ["123456"]
    otp.issue(PHONE)
    with pytest.raises(CodeMismatch) as exc:
        otp.verify(PHONE, "000000")
    assert exc.value.reason == "mismatch"
    # Still usable after a wrong guess
    assert otp.verify(PHONE, "123456")


def test_leading_zeros_are_significant(otp, strategy):
    strategy.codes = ["012345"]
    otp.issue(PHONE)
    with pytest.raises(CodeMismatch):
        otp.verify(PHONE, "12345")
    assert otp.verify(PHONE, "012345")


def test_no_challenge(otp):
    with pytest.raises(NoChallenge) as exc:
        otp.verify(PHONE, "123456")
    assert exc.value.reason == "no_challenge"


def test_expired_challenge(otp, strategy, clock):
    strategy.codes = ["123456"]
    otp.issue(PHONE)
    clock.advance(timedelta(seconds=601))

    with pytest.raises(ChallengeExpired):
        otp.verify(PHONE, "123456")

    expired = _events("expired")
    assert len(expired) == 1
    assert expired[0].event_data["expiration_reason"] == "verify_after_expiry"

    # Marked consumed: no further expiry reports, and nothing left to verify
    with pytest.raises(NoChallenge):
        otp.verify(PHONE, "123456")
    assert len(_events("expired")) == 1


def test_attempt_budget_burns_challenge(otp, strategy):
    strategy.codes = ["123456"]
    otp.issue(PHONE)
    for _ in range(4):
        with pytest.raises(CodeMismatch):
            otp.verify(PHONE, "999999")
    with pytest.raises(AttemptsExhausted):
        otp.verify(PHONE, "999999")

    with pytest.raises(NoChallenge):
        otp.verify(PHONE, "123456")


@pytest.mark.parametrize("code", ["abc123", "12", "", "1234567890123", "\u0661\u0662\u0663\u0664\u0665\u0666"])
def test_malformed_code(otp, code):
    otp.issue(PHONE)
    with pytest.raises(InvalidCode):
        otp.verify(PHONE, code)


def test_all_failures_share_public_message(otp, strategy, clock):
    strategy.codes = ["123456"]
    failures = []

    try:
        otp.verify(PHONE, "123456")
    except VerificationFailed as e:
        failures.append(e)

    otp.issue(PHONE)
    try:
        otp.verify(PHONE, "000000")
    except VerificationFailed as e:
        failures.append(e)

    clock.advance(timedelta(seconds=601))
    try:
        otp.verify(PHONE, "123456")
    except VerificationFailed as e:
        failures.append(e)

    assert [f.reason for f in failures] == ["no_challenge", "mismatch", "expired"]
    assert {(f.code, f.message, f.status_code) for f in failures} == {
        ("invalid_code", VERIFICATION_FAILED_MESSAGE, 400)
    }


def test_verify_emits_analytics(otp, strategy):
    strategy.codes = ["123456"]
    otp.issue(PHONE)
    with pytest.raises(CodeMismatch):
        otp.verify(PHONE, "000000")
    otp.verify(PHONE, "123456")

    assert len(_events("verify_attempt")) == 2
    failures = _events("verify_failure")
    assert len(failures) == 1
    assert failures[0].event_data["reason"] == "mismatch"
    assert len(_events("verify_success")) == 1


def test_analytics_outage_does_not_block_verification(otp, strategy, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("analytics store down")

    monkeypatch.setattr("contractor_core.features.analytics.service.record_otp_event", broken)
    strategy.codes = ["123456"]
    otp.issue(PHONE)
    assert otp.verify(PHONE, "123456").phone == PHONE


def test_concurrent_correct_codes_consume_once(otp, strategy):
    strategy.codes = ["123456"]
    otp.issue(PHONE)
    workers = 2
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def submit():
        barrier.wait()
        try:
            results.append(otp.verify(PHONE, "123456"))
        except VerificationFailed as e:
            errors.append(e)

    threads = [threading.Thread(target=submit) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyConsumed)
    assert len(_events("verify_success")) == 1
