from datetime import datetime, timedelta, timezone

import jwt
import pytest

from contractor_core.core.auth import SESSION_ALGORITHM, decode_session_token, issue_session_token
from contractor_core.core.errors import UnauthorizedError


def test_round_trip_returns_identity():
    assert decode_session_token(issue_session_token("ident-1")) == "ident-1"


def test_expired_token_rejected():
    issued = datetime.now(timezone.utc) - timedelta(days=30)
    token = issue_session_token("ident-1", now=issued)
    with pytest.raises(UnauthorizedError) as exc:
        decode_session_token(token)
    assert exc.value.message == "Session expired"


def test_foreign_secret_rejected():
    token = jwt.encode(
        {"sub": "ident-1", "iss": "contractor_core", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        "some-other-secret",
        algorithm=SESSION_ALGORITHM,
    )
    with pytest.raises(UnauthorizedError) as exc:
        decode_session_token(token)
    assert exc.value.message == "Invalid session token"


def test_missing_secret_refuses_to_issue(test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "SESSION_SECRET", None)
    with pytest.raises(RuntimeError):
        issue_session_token("ident-1")
