from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient

from inbox_web.app_logging import JsonFormatter, _scrub, configure_logging
from inbox_web.config import Settings
from inbox_web.main import create_app
from inbox_web.whatsapp import StubWhatsAppSender


def test_scrub_masks_sensitive_keys_recursively() -> None:
    data = {
        "Authorization": "Bearer abc",
        "x-api-key": "secret",
        "nested": [{"X-Hub-Signature-256": "sha256=ff", "path": "/health"}],
        "agent": "agent-admin",
    }

    assert _scrub(data) == {
        "Authorization": "***",
        "x-api-key": "***",
        "nested": [{"X-Hub-Signature-256": "***", "path": "/health"}],
        "agent": "agent-admin",
    }


def test_json_formatter_emits_one_object() -> None:
    record = logging.LogRecord(
        name="inbox_web.delivery",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="outbound message failed: %s",
        args=("timeout",),
        exc_info=None,
    )

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "inbox_web.delivery"
    assert payload["message"] == "outbound message failed: timeout"


def test_configure_logging_replaces_its_own_handler() -> None:
    logger = configure_logging(Settings(log_json=True))
    configure_logging(Settings(log_level="DEBUG"))

    owned = [handler for handler in logger.handlers if getattr(handler, "_inbox_web_handler", False)]
    assert len(owned) == 1
    assert not isinstance(owned[0].formatter, JsonFormatter)
    assert logger.level == logging.DEBUG


def test_access_log_records_request_id_and_scrubs_headers(caplog: pytest.LogCaptureFixture) -> None:
    app = create_app(
        Settings(runtime_secret_guard_mode="off", agent_directory="agent-admin:Admin:admin"),
        sender=StubWhatsAppSender(enabled=True),
    )
    client = TestClient(app)

    with caplog.at_level(logging.INFO, logger="inbox_web.access"):
        response = client.get(
            "/api/v1/team",
            headers={"X-Agent-Id": "agent-admin", "X-Request-Id": "req-123", "X-API-Key": "do-not-log"},
        )

    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-123"
    access = [json.loads(record.getMessage()) for record in caplog.records if record.name == "inbox_web.access"]
    assert access[-1]["request_id"] == "req-123"
    assert access[-1]["path"] == "/api/v1/team"
    assert access[-1]["status"] == 200
    assert access[-1]["headers"]["x-api-key"] == "***"


def test_health_checks_are_not_access_logged(caplog: pytest.LogCaptureFixture) -> None:
    client = TestClient(create_app(Settings(runtime_secret_guard_mode="off"), sender=StubWhatsAppSender(enabled=True)))

    with caplog.at_level(logging.INFO, logger="inbox_web.access"):
        client.get("/api/v1/health")

    assert not [record for record in caplog.records if record.name == "inbox_web.access"]
