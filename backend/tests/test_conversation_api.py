from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from inbox_web.config import Settings
from inbox_web.errors import ProviderError
from inbox_web.main import create_app
from inbox_web.templates import TemplateDefinition
from inbox_web.whatsapp import StubWhatsAppSender

PREFIX = "/api/v1"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ADMIN = {"X-Agent-Id": "agent-admin"}
SUPPORT = {"X-Agent-Id": "agent-support"}
MARKETING = {"X-Agent-Id": "agent-marketing"}


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _client(clock: _Clock | None = None, sender: StubWhatsAppSender | None = None) -> TestClient:
    settings = Settings(
        runtime_secret_guard_mode="off",
        whatsapp_webhook_signature_mode="off",
        agent_directory="agent-admin:Admin:admin;agent-support:Sam:support;agent-marketing:Mia:marketing",
    )
    app = create_app(
        settings,
        sender=sender or StubWhatsAppSender(enabled=True, fail_recipients={"+15550000000"}),
        clock=clock or _Clock(NOW),
    )
    return TestClient(app)


def _inbound(client: TestClient, *, phone: str, message_id: str, text: str, sent_at: datetime) -> None:
    body = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "contacts": [{"wa_id": phone.lstrip("+"), "profile": {"name": "Ava"}}],
                            "messages": [
                                {
                                    "from": phone.lstrip("+"),
                                    "id": message_id,
                                    "timestamp": str(int(sent_at.timestamp())),
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        }
                    }
                ]
            }
        ],
    }
    response = client.post(f"{PREFIX}/whatsapp/webhook", json=body)
    assert response.status_code == 200


def _conversation_id(client: TestClient) -> str:
    response = client.get(f"{PREFIX}/conversations", headers=SUPPORT)
    assert response.status_code == 200
    return response.json()["items"][0]["conversation_id"]


def test_health_does_not_require_agent() -> None:
    response = _client().get(f"{PREFIX}/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_inbox_requires_known_agent() -> None:
    client = _client()

    assert client.get(f"{PREFIX}/conversations").status_code == 401
    assert client.get(f"{PREFIX}/conversations", headers={"X-Agent-Id": "agent-ghost"}).status_code == 401


def test_conversation_detail_shows_window_and_masked_phone() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hello!", sent_at=NOW - timedelta(hours=1))
    conversation_id = _conversation_id(client)

    response = client.get(f"{PREFIX}/conversations/{conversation_id}", headers=SUPPORT)

    assert response.status_code == 200
    body = response.json()
    assert body["conversation"]["phone_masked"] == "***4567"
    assert body["conversation"]["unread_count"] == 1
    assert body["conversation"]["display_name"] == "Ava"
    assert body["window"]["open"] is True
    assert [message["body_text"] for message in body["messages"]] == ["Hello!"]
    assert client.get(f"{PREFIX}/conversations/conv_missing", headers=SUPPORT).status_code == 404


def test_freeform_reply_inside_and_outside_window() -> None:
    clock = _Clock(NOW)
    client = _client(clock)
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hi", sent_at=NOW - timedelta(hours=2))
    conversation_id = _conversation_id(client)

    sent = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"kind": "freeform", "content": "Happy to help"},
        headers=SUPPORT,
    )
    assert sent.status_code == 201
    assert sent.json()["delivery_status"] == "sent"

    clock.advance(hours=23)
    closed = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"kind": "freeform", "content": "Still there?"},
        headers=SUPPORT,
    )
    assert closed.status_code == 409
    assert "template" in closed.json()["detail"]

    template = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={
            "kind": "template",
            "template_name": "trip_reminder",
            "variables": ["Alpine Escape", "Zermatt", "2026-12-01"],
        },
        headers=SUPPORT,
    )
    assert template.status_code == 201
    assert template.json()["kind"] == "template"


def test_send_validation_and_permissions() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hi", sent_at=NOW)
    conversation_id = _conversation_id(client)
    url = f"{PREFIX}/conversations/{conversation_id}/messages"

    assert client.post(url, json={"kind": "freeform"}, headers=SUPPORT).status_code == 422
    wrong_count = client.post(
        url, json={"kind": "template", "template_name": "trip_reminder", "variables": ["x"]}, headers=SUPPORT
    )
    assert wrong_count.status_code == 400
    assert client.post(url, json={"kind": "freeform", "content": "Hi"}, headers=MARKETING).status_code == 403


def test_internal_note_and_retry_endpoint() -> None:
    client = _client()
    _inbound(client, phone="+15550000000", message_id="wamid.in-1", text="Hi", sent_at=NOW)
    conversation_id = _conversation_id(client)
    url = f"{PREFIX}/conversations/{conversation_id}/messages"

    note = client.post(url, json={"kind": "internal_note", "content": "VIP customer"}, headers=SUPPORT)
    assert note.status_code == 201
    assert note.json()["delivery_status"] is None

    failed = client.post(url, json={"kind": "freeform", "content": "Hello"}, headers=SUPPORT)
    assert failed.status_code == 201
    assert failed.json()["delivery_status"] == "failed"
    assert failed.json()["error_code"] == "stub_delivery_failed"

    retried = client.post(f"{PREFIX}/messages/{failed.json()['message_id']}/retry", headers=SUPPORT)
    assert retried.status_code == 201
    assert retried.json()["retry_of_message_id"] == failed.json()["message_id"]

    assert client.post(f"{PREFIX}/messages/{note.json()['message_id']}/retry", headers=SUPPORT).status_code == 400
    assert client.post(f"{PREFIX}/messages/msg_missing/retry", headers=SUPPORT).status_code == 404


def test_conversation_update_actions() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hi", sent_at=NOW)
    conversation_id = _conversation_id(client)
    url = f"{PREFIX}/conversations/update"

    assigned = client.post(
        url, json={"action": "assign", "conversationId": conversation_id, "value": "agent-support"}, headers=ADMIN
    )
    assert assigned.status_code == 200
    assert assigned.json()["conversation"]["assigned_agent_id"] == "agent-support"

    read = client.post(url, json={"action": "unread", "conversationId": conversation_id}, headers=MARKETING)
    assert read.status_code == 200
    assert read.json()["conversation"]["unread_count"] == 0

    pinned = client.post(url, json={"action": "pin", "conversationId": conversation_id, "value": True}, headers=SUPPORT)
    assert pinned.json()["conversation"]["pinned"] is True

    resolved = client.post(
        url, json={"action": "status", "conversationId": conversation_id, "value": "resolved"}, headers=SUPPORT
    )
    assert resolved.json()["conversation"]["state"] == "resolved"

    reopen_denied = client.post(
        url, json={"action": "status", "conversationId": conversation_id, "value": "open"}, headers=SUPPORT
    )
    assert reopen_denied.status_code == 403
    reopened = client.post(
        url, json={"action": "status", "conversationId": conversation_id, "value": "open"}, headers=ADMIN
    )
    assert reopened.json()["conversation"]["state"] == "open"

    denied = client.post(
        url, json={"action": "pin", "conversationId": conversation_id, "value": False}, headers=MARKETING
    )
    assert denied.status_code == 403
    unknown_agent = client.post(
        url, json={"action": "assign", "conversationId": conversation_id, "value": "agent-ghost"}, headers=ADMIN
    )
    assert unknown_agent.status_code == 400
    missing = client.post(url, json={"action": "pin", "conversationId": "conv_missing", "value": True}, headers=ADMIN)
    assert missing.status_code == 404


def test_list_filters_by_state() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hi", sent_at=NOW)
    _inbound(client, phone="+15557654321", message_id="wamid.in-2", text="Hey", sent_at=NOW)
    conversation_id = _conversation_id(client)
    client.post(
        f"{PREFIX}/conversations/update",
        json={"action": "status", "conversationId": conversation_id, "value": "pending"},
        headers=SUPPORT,
    )

    pending = client.get(f"{PREFIX}/conversations", params={"state": "pending"}, headers=SUPPORT)

    assert [item["conversation_id"] for item in pending.json()["items"]] == [conversation_id]
    assert client.get(f"{PREFIX}/conversations", params={"state": "archived"}, headers=SUPPORT).status_code == 422


def test_usage_stats_templates_and_team() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hi", sent_at=NOW)
    conversation_id = _conversation_id(client)
    client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"kind": "freeform", "content": "Hello"},
        headers=SUPPORT,
    )

    stats = client.get(f"{PREFIX}/stats/usage", headers=MARKETING).json()
    assert stats == {"total_outbound": 1, "last_24h": 1, "by_status": {"sent": 1}}

    templates = client.get(f"{PREFIX}/templates", headers=SUPPORT).json()["items"]
    by_name = {item["name"]: item for item in templates}
    assert by_name["trip_confirmation"]["parameter_count"] == 5

    team = client.get(f"{PREFIX}/team", headers=SUPPORT).json()["items"]
    assert {(item["agent_id"], item["read_only"]) for item in team} == {
        ("agent-admin", False),
        ("agent-support", False),
        ("agent-marketing", True),
    }


def test_campaign_lifecycle() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hi", sent_at=NOW)
    _inbound(client, phone="+15550000000", message_id="wamid.in-2", text="Hey", sent_at=NOW)
    body = {
        "name": "Spring sale",
        "template_name": "trip_reminder",
        "variables": ["Alpine Escape", "Zermatt", "2026-12-01"],
    }

    assert client.post(f"{PREFIX}/campaigns", json=body, headers=MARKETING).status_code == 403
    created = client.post(f"{PREFIX}/campaigns", json=body, headers=SUPPORT)
    assert created.status_code == 201
    campaign = created.json()
    assert campaign["status"] == "completed"
    assert campaign["audience_count"] == 2
    assert campaign["sent_count"] == 1
    assert campaign["failed_count"] == 1

    fetched = client.get(f"{PREFIX}/campaigns/{campaign['campaign_id']}", headers=MARKETING)
    assert fetched.json()["campaign_id"] == campaign["campaign_id"]
    listed = client.get(f"{PREFIX}/campaigns", headers=MARKETING).json()["items"]
    assert [item["campaign_id"] for item in listed] == [campaign["campaign_id"]]
    assert client.get(f"{PREFIX}/campaigns/camp_missing", headers=SUPPORT).status_code == 404

    bad = client.post(f"{PREFIX}/campaigns", json={**body, "variables": []}, headers=SUPPORT)
    assert bad.status_code == 400


def test_event_log_and_ledger_trim_permissions() -> None:
    client = _client()
    client.post(
        f"{PREFIX}/events/trip_reminder",
        json={
            "contact": {"phone": "+15551234567"},
            "trip": {"name": "Alpine Escape", "destination": "Zermatt", "startDate": "2026-12-01"},
        },
    )

    logs = client.get(f"{PREFIX}/logs", headers=SUPPORT).json()["items"]
    assert [(item["event_type"], item["outcome"]) for item in logs] == [("trip_reminder", "SUCCESS")]
    assert logs[0]["recipient"] == "***4567"

    assert client.post(f"{PREFIX}/admin/ledger/trim", headers=SUPPORT).status_code == 403
    trimmed = client.post(f"{PREFIX}/admin/ledger/trim", headers=ADMIN)
    assert trimmed.status_code == 200
    assert trimmed.json()["deleted_count"] == 0


def test_contacts_list_create_and_rename() -> None:
    client = _client()
    _inbound(client, phone="+15551234567", message_id="wamid.in-1", text="Hello", sent_at=NOW)

    created = client.post(f"{PREFIX}/contacts", json={"phone": "+15557654321", "name": " Noah "}, headers=SUPPORT)
    assert created.status_code == 201
    contact = created.json()["contact"]
    assert created.json()["created"] is True
    assert contact["name"] == "Noah"
    assert contact["phone"] == "+15557654321"
    assert contact["state"] == "open"

    existing = client.post(f"{PREFIX}/contacts", json={"phone": "+15551234567", "name": "Ava Stone"}, headers=SUPPORT)
    assert existing.status_code == 200
    assert existing.json()["created"] is False
    assert existing.json()["contact"]["name"] == "Ava Stone"

    renamed = client.patch(f"{PREFIX}/contacts/{contact['conversation_id']}", json={"name": "Noah B."}, headers=ADMIN)
    assert renamed.status_code == 200
    assert renamed.json()["contact"]["name"] == "Noah B."

    items = client.get(f"{PREFIX}/contacts", headers=MARKETING).json()["items"]
    assert {(item["phone"], item["name"]) for item in items} == {
        ("+15551234567", "Ava Stone"),
        ("+15557654321", "Noah B."),
    }


def test_contact_validation_and_permissions() -> None:
    client = _client()

    assert client.get(f"{PREFIX}/contacts").status_code == 401
    assert client.post(f"{PREFIX}/contacts", json={"phone": "12345"}, headers=SUPPORT).status_code == 422
    assert client.post(f"{PREFIX}/contacts", json={"phone": "+15557654321"}, headers=MARKETING).status_code == 403
    assert client.patch(f"{PREFIX}/contacts/conv_missing", json={"name": "X"}, headers=SUPPORT).status_code == 404
    assert client.get(f"{PREFIX}/contacts", headers=SUPPORT).json()["items"] == []


class _StaticTemplateSource:
    def __init__(self, templates: list[TemplateDefinition] | None = None, error: Exception | None = None) -> None:
        self._templates = templates or []
        self._error = error

    def fetch_templates(self) -> list[TemplateDefinition]:
        if self._error is not None:
            raise self._error
        return list(self._templates)


def test_template_sync_endpoint() -> None:
    client = _client()
    url = f"{PREFIX}/templates/sync"

    assert client.post(url, headers=SUPPORT).status_code == 403
    unconfigured = client.post(url, headers=ADMIN)
    assert unconfigured.status_code == 400
    assert "WHATSAPP_BUSINESS_ID" in unconfigured.json()["detail"]

    services = client.app.state.services
    services.template_source = _StaticTemplateSource(
        [TemplateDefinition(name="spring_sale", category="MARKETING", language="en_US", body="Save {{1}}%")]
    )
    synced = client.post(url, headers=ADMIN)
    assert synced.status_code == 200
    assert synced.json() == {"success": True, "count": 1}
    names = [item["name"] for item in client.get(f"{PREFIX}/templates", headers=SUPPORT).json()["items"]]
    assert "spring_sale" in names

    services.template_source = _StaticTemplateSource(error=ProviderError("http_401", "HTTP 401: Unauthorized"))
    failed = client.post(url, headers=ADMIN)
    assert failed.status_code == 502
    assert failed.json()["detail"] == "provider error: http_401"
