"""
Session tokens for verified contractors.

After a successful OTP verification the API hands out a short HS256 JWT
whose 'sub' claim is the contractor identity id. Routes that act on a
profile resolve the caller with get_current_identity_id().
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import jwt
from fastapi import Request

from contractor_core.core.config import Settings, settings as default_settings
from contractor_core.core.errors import UnauthorizedError

logger = logging.getLogger("contractor_core")

SESSION_ALGORITHM = "HS256"
SESSION_ISSUER = "contractor_core"


def _secret(cfg: Settings) -> str:
    if not cfg.SESSION_SECRET:
        raise RuntimeError("SESSION_SECRET is not configured")
    return cfg.SESSION_SECRET


def issue_session_token(identity_id: str, *, now: Optional[datetime] = None, cfg: Optional[Settings] = None) -> str:
    cfg = cfg or default_settings
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": identity_id,
        "iss": SESSION_ISSUER,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=cfg.SESSION_TTL_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, _secret(cfg), algorithm=SESSION_ALGORITHM)


def decode_session_token(token: str, *, cfg: Optional[Settings] = None) -> str:
    """
    Verify a session token and return the identity id it was issued for.

    Raises:
        UnauthorizedError: expired, tampered or otherwise invalid token
    """
    cfg = cfg or default_settings
    try:
        payload = jwt.decode(
            token,
            _secret(cfg),
            algorithms=[SESSION_ALGORITHM],
            issuer=SESSION_ISSUER,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Session expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid session token: {e}")
        raise UnauthorizedError("Invalid session token")

    identity_id = payload.get("sub")
    if not identity_id:
        raise UnauthorizedError("Invalid session token")
    return identity_id


async def get_current_identity_id(request: Request) -> str:
    """FastAPI dependency: identity id from 'Authorization: Bearer <token>'."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthorizedError("Missing Authorization (Bearer token) header")
    identity_id = decode_session_token(auth_header[7:])
    request.state.identity_id = identity_id
    return identity_id
