"""
Scheduled job endpoints (called by an external cron).

- POST|GET /api/jobs/otp-expiration: delete expired OTP challenges
"""
import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from contractor_core.core.config import settings
from contractor_core.core.errors import UnauthorizedError
from contractor_core.features.otp.expiration import sweep_expired

logger = logging.getLogger("contractor_core")

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _require_cron_secret(request: Request) -> None:
    expected = settings.CRON_SECRET
    auth_header = request.headers.get("Authorization", "")
    if not expected or not hmac.compare_digest(auth_header.encode(), f"Bearer {expected}".encode()):
        raise UnauthorizedError()


@router.api_route("/otp-expiration", methods=["GET", "POST"])
def otp_expiration(request: Request):
    _require_cron_secret(request)
    now = datetime.now(timezone.utc)
    report = sweep_expired(now)
    logger.info("jobs.otp_expiration", extra={"total": report.total, "processed": report.processed, "failed": report.failed})
    return {
        "processed": report.processed,
        "total": report.total,
        "timestamp": now.isoformat(),
    }
