"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi.testclient import TestClient

from contractor_core.core.logging import JsonFormatter, log_event, mask_phone
from contractor_core.main import app


def test_request_id_in_response_and_logs(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="contractor_core"):
        response = client.get("/readyz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_mask_phone_keeps_last_four():
    assert mask_phone("+15551234567") == "********4567"
    assert mask_phone(None) is None


def test_log_event_masks_phone(caplog):
    with caplog.at_level(logging.INFO, logger="contractor_core"):
        log_event("info", "otp.sent", phone="+15551234567", extra={"challenge_id": "c1"})
    record = caplog.records[-1]
    assert record.phone == "********4567"
    assert record.challenge_id == "c1"


def test_json_formatter_emits_fields():
    record = logging.LogRecord("contractor_core", logging.INFO, __file__, 1, "otp.sent", None, None)
    record.request_id = "rid-1"
    record.phone = "***4567"
    line = json.loads(JsonFormatter().format(record))
    assert line["message"] == "otp.sent"
    assert line["request_id"] == "rid-1"
    assert line["phone"] == "***4567"
