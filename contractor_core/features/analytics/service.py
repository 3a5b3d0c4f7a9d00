"""
OTP lifecycle analytics sink.

Events are written to otp_analytics_events. The sink is best-effort:
track_otp_event() never raises and never blocks the caller on a failure.
record_otp_event() is the strict variant for callers that must know
whether the write landed (the expiration sweep).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy import insert

from contractor_core.core.config import settings
from contractor_core.core.database import get_db_session, otp_analytics_events
from contractor_core.core.logging import mask_phone
from contractor_core.models.otp import OtpEventType

logger = logging.getLogger("contractor_core")


def _safe_value(value: Any, limit: int = 500):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = value.isoformat() if isinstance(value, datetime) else str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def record_otp_event(
    phone: str,
    event_type: Union[OtpEventType, str],
    event_data: Optional[Dict[str, Any]] = None,
    contractor_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Insert one analytics row. Raises on any failure."""
    if not settings.ANALYTICS_ENABLED:
        return

    kind = OtpEventType(event_type).value
    payload = {k: _safe_value(v) for k, v in (event_data or {}).items()}
    with get_db_session() as session:
        session.execute(
            insert(otp_analytics_events).values(
                phone=phone,
                event_type=kind,
                event_data=payload,
                contractor_id=contractor_id,
                created_at=now or datetime.now(timezone.utc),
            )
        )


def track_otp_event(
    phone: str,
    event_type: Union[OtpEventType, str],
    event_data: Optional[Dict[str, Any]] = None,
    contractor_id: Optional[str] = None,
) -> bool:
    """Best-effort analytics. Returns False when the event was dropped."""
    try:
        record_otp_event(phone, event_type, event_data, contractor_id)
        return True
    except Exception:
        # Analytics must never affect the OTP flow
        logger.warning(
            "analytics.dropped",
            exc_info=True,
            extra={"event_type": str(getattr(event_type, "value", event_type)), "phone": mask_phone(phone)},
        )
        return False
