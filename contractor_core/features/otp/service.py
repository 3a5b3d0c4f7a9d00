"""
OTP issuance and verification.

Invariants held by this module:
- At most one unconsumed challenge per phone. issue() supersedes the
  previous one and inserts the new one in a single transaction; the
  partial unique index on otp_challenges(phone) rejects a concurrent
  second insert.
- A challenge is consumed at most once. Consumption is a conditional
  UPDATE on consumed = false, so two verifications racing on the same
  correct code cannot both succeed.
- Codes are compared as strings in constant time.
"""
import hmac
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, insert, update, and_, false
from sqlalchemy.exc import IntegrityError

from contractor_core.core.config import Settings, settings as default_settings
from contractor_core.core.database import get_db_session, otp_challenges
from contractor_core.core.errors import (
    AlreadyConsumed,
    AttemptsExhausted,
    ChallengeExpired,
    CodeMismatch,
    ConflictError,
    InvalidCode,
    NoChallenge,
    OtpRateLimited,
    TransportTimeout,
    TransportUnavailable,
    VerificationFailed,
)
from contractor_core.core.logging import log_event
from contractor_core.features.analytics.service import track_otp_event
from contractor_core.features.otp.expiration import SweepReport, as_utc, sweep_expired, utc_now
from contractor_core.features.otp.phone import is_valid_code_format, normalize_phone
from contractor_core.features.otp.strategy import OtpDeliveryStrategy, build_strategy
from contractor_core.models.otp import ChallengeHandle, OtpEventType, VerificationResult

logger = logging.getLogger("contractor_core")


class OtpService:
    def __init__(
        self,
        strategy: OtpDeliveryStrategy,
        *,
        cfg: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.strategy = strategy
        self.cfg = cfg or default_settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(self, phone: str) -> ChallengeHandle:
        """
        Supersede any outstanding challenge, persist a fresh one and send it.

        Raises:
            InvalidPhone: phone is not E.164
            OtpRateLimited: too many issuances inside the rolling window
            TransportUnavailable / TransportTimeout: delivery failed; the
                challenge is persisted and can be re-sent with resend()
        """
        phone = normalize_phone(phone)
        now = self.clock()
        code = self.strategy.generate_code(self.cfg.OTP_CODE_LENGTH)
        challenge_id = str(uuid.uuid4())
        expires_at = now + timedelta(seconds=self.cfg.OTP_TTL_SECONDS)

        for attempt in range(2):
            try:
                with get_db_session() as session:
                    self._check_rate_limit(session, phone, now)
                    session.execute(
                        update(otp_challenges)
                        .where(and_(otp_challenges.c.phone == phone, otp_challenges.c.consumed == false()))
                        .values(consumed=True, consumed_at=now)
                    )
                    session.execute(
                        insert(otp_challenges).values(
                            id=challenge_id,
                            phone=phone,
                            code=code,
                            created_at=now,
                            expires_at=expires_at,
                            consumed=False,
                            attempts=0,
                            send_count=1,
                            expiry_reported=False,
                        )
                    )
                break
            except IntegrityError:
                # Another issue() for this phone committed between our supersede and insert
                if attempt:
                    raise ConflictError("A verification code was requested concurrently. Please try again.")
                log_event("info", "otp.issue.retry", phone=phone, reason="concurrent_issue")

        handle = ChallengeHandle(
            challenge_id=challenge_id,
            phone=phone,
            expires_at=expires_at,
            expires_in=self.cfg.OTP_TTL_SECONDS,
            code=code,
        )
        log_event("info", "otp.issued", phone=phone, extra={"challenge_id": challenge_id, "strategy": self.strategy.name})
        self._dispatch(handle, attempt_number=1)
        return handle

    def resend(self, phone: str) -> ChallengeHandle:
        """
        Re-send the outstanding code without issuing a new one.

        Raises:
            NoChallenge: nothing outstanding (or it already expired)
            OtpRateLimited: resend budget for this challenge is spent
        """
        phone = normalize_phone(phone)
        now = self.clock()
        limit = 1 + max(0, self.cfg.OTP_MAX_RESENDS)

        with get_db_session() as session:
            row = session.execute(
                select(otp_challenges).where(
                    and_(otp_challenges.c.phone == phone, otp_challenges.c.consumed == false())
                )
            ).first()
            usable = row is not None and as_utc(row.expires_at) > now
            claimed = False
            if usable:
                result = session.execute(
                    update(otp_challenges)
                    .where(
                        and_(
                            otp_challenges.c.id == row.id,
                            otp_challenges.c.consumed == false(),
                            otp_challenges.c.send_count < limit,
                        )
                    )
                    .values(send_count=otp_challenges.c.send_count + 1)
                )
                claimed = result.rowcount == 1

        if not usable:
            raise NoChallenge("No active verification code. Please request a new one.")
        if not claimed:
            raise OtpRateLimited("Resend limit reached. Please request a new code.")

        expires_at = as_utc(row.expires_at)
        handle = ChallengeHandle(
            challenge_id=row.id,
            phone=phone,
            expires_at=expires_at,
            expires_in=max(0, int((expires_at - now).total_seconds())),
            code=row.code,
        )
        self._dispatch(handle, attempt_number=row.send_count + 1)
        return handle

    def _check_rate_limit(self, session, phone: str, now: datetime) -> None:
        window_start = now - timedelta(seconds=self.cfg.OTP_RATE_LIMIT_WINDOW_SECONDS)
        recent = session.execute(
            select(otp_challenges.c.id).where(
                and_(otp_challenges.c.phone == phone, otp_challenges.c.created_at > window_start)
            )
        ).fetchall()
        if len(recent) >= self.cfg.OTP_RATE_LIMIT_MAX:
            log_event("warning", "otp.rate_limited", phone=phone, error_code="rate_limited", extra={"recent": len(recent)})
            raise OtpRateLimited()

    def _dispatch(self, handle: ChallengeHandle, *, attempt_number: int) -> None:
        base = {"challenge_id": handle.challenge_id, "strategy": self.strategy.name, "attempt": attempt_number}
        track_otp_event(handle.phone, OtpEventType.SEND_ATTEMPT, base)
        try:
            self.strategy.deliver(handle.phone, handle.code, ttl_seconds=self.cfg.OTP_TTL_SECONDS)
        except (TransportUnavailable, TransportTimeout) as e:
            track_otp_event(handle.phone, OtpEventType.SEND_FAILURE, {**base, "error": e.code})
            log_event("warning", "otp.send.failed", phone=handle.phone, error_code=e.code, extra={"challenge_id": handle.challenge_id})
            raise
        track_otp_event(handle.phone, OtpEventType.SEND_SUCCESS, base)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, phone: str, code: str) -> VerificationResult:
        """
        Check a submitted code against the outstanding challenge.

        Raises:
            InvalidPhone / InvalidCode: malformed input
            VerificationFailed subclasses: NoChallenge, ChallengeExpired,
                CodeMismatch, AttemptsExhausted, AlreadyConsumed
        """
        phone = normalize_phone(phone)
        if not is_valid_code_format(code):
            raise InvalidCode()

        track_otp_event(phone, OtpEventType.VERIFY_ATTEMPT, {})
        try:
            result = self._verify(phone, code, self.clock())
        except VerificationFailed as e:
            track_otp_event(phone, OtpEventType.VERIFY_FAILURE, {"reason": e.reason})
            log_event("warning", "otp.verify.failed", phone=phone, reason=e.reason)
            raise

        track_otp_event(phone, OtpEventType.VERIFY_SUCCESS, {"challenge_id": result.challenge_id})
        log_event("info", "otp.verified", phone=phone, extra={"challenge_id": result.challenge_id})
        return result

    def _verify(self, phone: str, code: str, now: datetime) -> VerificationResult:
        failure: Optional[VerificationFailed] = None
        report_expiry = None

        with get_db_session() as session:
            row = session.execute(
                select(otp_challenges).where(
                    and_(otp_challenges.c.phone == phone, otp_challenges.c.consumed == false())
                )
            ).first()

            if row is None:
                failure = self._classify_without_outstanding(session, phone, code)
            elif as_utc(row.expires_at) <= now:
                consumed = session.execute(
                    update(otp_challenges)
                    .where(and_(otp_challenges.c.id == row.id, otp_challenges.c.consumed == false()))
                    .values(consumed=True, consumed_at=now)
                )
                # The sweep may have reported this row since it was read
                if consumed.rowcount == 1 and self._claim_expiry_report(session, row.id):
                    report_expiry = row
                failure = ChallengeExpired()
            elif not hmac.compare_digest(row.code.encode(), code.encode()):
                failure = self._record_mismatch(session, row, now)
            else:
                consumed = session.execute(
                    update(otp_challenges)
                    .where(and_(otp_challenges.c.id == row.id, otp_challenges.c.consumed == false()))
                    .values(consumed=True, consumed_at=now, verified_at=now)
                )
                if consumed.rowcount != 1:
                    failure = AlreadyConsumed()

        # Failure state above must be committed before raising
        if report_expiry is not None:
            track_otp_event(phone, OtpEventType.EXPIRED, {
                "challenge_id": report_expiry.id,
                "created_at": as_utc(report_expiry.created_at),
                "expired_at": as_utc(report_expiry.expires_at),
                "expiration_reason": "verify_after_expiry",
            })
        if failure is not None:
            raise failure
        return VerificationResult(phone=phone, challenge_id=row.id, verified_at=now)

    def _classify_without_outstanding(self, session, phone: str, code: str) -> VerificationFailed:
        last_verified = session.execute(
            select(otp_challenges.c.code)
            .where(and_(otp_challenges.c.phone == phone, otp_challenges.c.verified_at.isnot(None)))
            .order_by(otp_challenges.c.verified_at.desc())
            .limit(1)
        ).first()
        if last_verified is not None and hmac.compare_digest(last_verified.code.encode(), code.encode()):
            return AlreadyConsumed()
        return NoChallenge()

    def _claim_expiry_report(self, session, challenge_id: str) -> bool:
        claimed = session.execute(
            update(otp_challenges)
            .where(and_(otp_challenges.c.id == challenge_id, otp_challenges.c.expiry_reported == false()))
            .values(expiry_reported=True)
        )
        return claimed.rowcount == 1

    def _record_mismatch(self, session, row, now: datetime) -> VerificationFailed:
        session.execute(
            update(otp_challenges)
            .where(and_(otp_challenges.c.id == row.id, otp_challenges.c.consumed == false()))
            .values(attempts=otp_challenges.c.attempts + 1)
        )
        burned = session.execute(
            update(otp_challenges)
            .where(
                and_(
                    otp_challenges.c.id == row.id,
                    otp_challenges.c.consumed == false(),
                    otp_challenges.c.attempts >= self.cfg.OTP_MAX_VERIFY_ATTEMPTS,
                )
            )
            .values(consumed=True, consumed_at=now)
        )
        if burned.rowcount == 1:
            return AttemptsExhausted()
        return CodeMismatch()

    # ------------------------------------------------------------------
    # Expiration sweep
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Delete expired challenges; returns how many were fully processed."""
        return sweep_expired(now or self.clock()).processed

    def sweep_expired(self, now: Optional[datetime] = None) -> SweepReport:
        return sweep_expired(now or self.clock())


_service: Optional[OtpService] = None


def get_otp_service() -> OtpService:
    """Process-wide service; the delivery strategy is chosen once here."""
    global _service
    if _service is None:
        _service = OtpService(build_strategy())
    return _service


def set_otp_service(service: Optional[OtpService]) -> None:
    """Swap the process-wide service (tests, alternate wiring)."""
    global _service
    _service = service
