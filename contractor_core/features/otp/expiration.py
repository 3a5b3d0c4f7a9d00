"""
OTP expiration sweep.

Finds challenges past expires_at, reports each lapsed (never consumed)
one to analytics exactly once, then deletes it. A row whose analytics
write fails is left in place for the next sweep; the remaining rows are
still processed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, delete, and_, false, true

from contractor_core.core.database import get_db_session, otp_challenges
from contractor_core.core.logging import mask_phone
from contractor_core.features.analytics.service import record_otp_event
from contractor_core.models.otp import OtpEventType

logger = logging.getLogger("contractor_core")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class SweepReport:
    total: int
    processed: int
    failed: int


def sweep_expired(now: Optional[datetime] = None) -> SweepReport:
    now = now or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(
                otp_challenges.c.id,
                otp_challenges.c.phone,
                otp_challenges.c.created_at,
                otp_challenges.c.expires_at,
                otp_challenges.c.consumed,
            ).where(otp_challenges.c.expires_at < now)
        ).fetchall()

    processed = 0
    failed = 0
    for row in rows:
        try:
            if not row.consumed:
                _report_expiry(row, now)
            with get_db_session() as session:
                deleted = session.execute(delete(otp_challenges).where(otp_challenges.c.id == row.id))
            if deleted.rowcount == 1:
                processed += 1
        except Exception:
            # One bad row must not stop the sweep
            failed += 1
            logger.warning(
                "otp.sweep.row_failed",
                exc_info=True,
                extra={"phone": mask_phone(row.phone), "challenge_id": row.id},
            )

    logger.info("otp.sweep.complete", extra={"total": len(rows), "processed": processed, "failed": failed})
    return SweepReport(total=len(rows), processed=processed, failed=failed)


def sweep(now: Optional[datetime] = None) -> int:
    """Delete expired challenges; returns how many were fully processed."""
    return sweep_expired(now).processed


def _report_expiry(row, now: datetime) -> None:
    with get_db_session() as session:
        claimed = session.execute(
            update(otp_challenges)
            .where(and_(otp_challenges.c.id == row.id, otp_challenges.c.expiry_reported == false()))
            .values(expiry_reported=True)
        )
    if claimed.rowcount != 1:
        return
    try:
        record_otp_event(row.phone, OtpEventType.EXPIRED, {
            "challenge_id": row.id,
            "created_at": as_utc(row.created_at),
            "expired_at": as_utc(row.expires_at),
            "expiration_reason": "time_limit",
            "cleanup_time": now,
        })
    except Exception:
        # Leave the row for the next sweep to report
        with get_db_session() as session:
            session.execute(
                update(otp_challenges)
                .where(and_(otp_challenges.c.id == row.id, otp_challenges.c.expiry_reported == true()))
                .values(expiry_reported=False)
            )
        raise
