from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import select

from contractor_core.core.database import get_db_session, otp_challenges
from contractor_core.features.otp.service import OtpService
from contractor_core.main import app
from contractor_core.tests.fakes import FrozenClock, SequenceStrategy
from contractor_core.workers.otp_expiration_sweep import run_sweep


def _issue_stale():
    # Issued long enough ago that it is already expired
    clock = FrozenClock(datetime.now(timezone.utc) - timedelta(hours=1))
    OtpService(SequenceStrategy(), clock=clock).issue("+15551234567")


def test_expiration_job_requires_secret():
    client = TestClient(app)
    assert client.post("/api/jobs/otp-expiration").status_code == 401
    wrong = client.post("/api/jobs/otp-expiration", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


def test_expiration_job_sweeps():
    _issue_stale()
    client = TestClient(app)
    resp = client.get("/api/jobs/otp-expiration", headers={"Authorization": "Bearer test-cron-secret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 1
    assert body["total"] == 1
    assert body["timestamp"]
    with get_db_session() as session:
        assert session.execute(select(otp_challenges)).fetchall() == []


def test_worker_run_sweep():
    _issue_stale()
    result = run_sweep()
    assert result["processed"] == 1
    assert result["failed"] == 0
