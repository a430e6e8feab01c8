from __future__ import annotations

import http.client
import json
import socket
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from inbox_web.errors import ProviderError
from inbox_web.whatsapp import (
    HttpTemplateSource,
    HttpWhatsAppSender,
    ProviderMessageRequest,
    build_cloud_api_payload,
    mask_phone,
    parse_message_templates,
    parse_webhook_payload,
)

RECEIVED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_request(*, message_type: str = "text") -> ProviderMessageRequest:
    if message_type == "template":
        return ProviderMessageRequest(
            conversation_id="conv_000001",
            to_phone="+15551234567",
            message_type="template",
            body_text="Confirmation: we have received your payment of 50.00 EUR. Receipt ID: RC-1.",
            template_name="payment_received",
            template_language="en_GB",
            variables=("50.00", "EUR", "RC-1"),
        )
    return ProviderMessageRequest(
        conversation_id="conv_000001",
        to_phone="+15551234567",
        message_type="text",
        body_text="Your voucher is on its way.",
    )


def _make_sender(*, base_url: str = "https://graph.example.test/v20.0") -> HttpWhatsAppSender:
    return HttpWhatsAppSender(
        base_url=base_url,
        access_token="test-access-token",
        phone_number_id="1098765",
    )


def _mock_response(body: object, status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.HBgL123"}]})
    sender = _make_sender()

    result = sender.send_message(_make_request())

    assert result.status == "sent"
    assert result.provider_message_id == "wamid.HBgL123"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None
    mock_urlopen.assert_called_once()

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.example.test/v20.0/1098765/messages"
    assert request_arg.get_header("Authorization") == "Bearer test-access-token"
    assert request_arg.get_header("Content-type") == "application/json"

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["to"] == "15551234567"
    assert sent_body["type"] == "text"
    assert sent_body["text"]["body"] == "Your voucher is on its way."


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_template_payload(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.T1"}]})

    _make_sender().send_message(_make_request(message_type="template"))

    sent_body = json.loads(mock_urlopen.call_args[0][0].data.decode("utf-8"))
    assert sent_body["type"] == "template"
    assert sent_body["template"]["name"] == "payment_received"
    assert sent_body["template"]["language"] == {"code": "en_GB"}
    parameters = sent_body["template"]["components"][0]["parameters"]
    assert [value["text"] for value in parameters] == ["50.00", "EUR", "RC-1"]


def test_template_without_variables_has_no_components() -> None:
    request = ProviderMessageRequest(
        conversation_id="conv_000001",
        to_phone="+15551234567",
        message_type="template",
        body_text="hello",
        template_name="hello_world",
    )

    assert build_cloud_api_payload(request)["template"]["components"] == []


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_http_500(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.example.test/v20.0/1098765/messages",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "http_500"
    assert result.error_message is not None
    assert "500" in result.error_message
    assert "***4567" in result.error_message
    assert "15551234567" not in result.error_message


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Connection" in (result.error_message or "")


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_missing_message_id(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": []})

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "missing_message_id"


def test_http_sender_empty_base_url() -> None:
    with pytest.raises(ValueError, match="base_url must not be empty"):
        _make_sender(base_url="  ")


def test_http_sender_empty_access_token() -> None:
    with pytest.raises(ValueError, match="access_token must not be empty"):
        HttpWhatsAppSender(base_url="https://graph.example.test", access_token="", phone_number_id="1")


def test_mask_phone() -> None:
    assert mask_phone("+15551234567") == "***4567"
    assert mask_phone("") == "***"
    assert mask_phone("+12") == "***"


def test_parse_webhook_payload_flattens_messages_and_statuses() -> None:
    payload = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "contacts": [{"wa_id": "15551234567", "profile": {"name": "Ava"}}],
                            "messages": [
                                {
                                    "from": "15551234567",
                                    "id": "wamid.in-1",
                                    "timestamp": "1772366400",
                                    "type": "text",
                                    "text": {"body": "Hi there"},
                                },
                                {
                                    "from": "15551234567",
                                    "id": "wamid.in-2",
                                    "type": "image",
                                    "image": {"id": "media-1"},
                                },
                                {"from": "15551234567", "type": "text", "text": {"body": "no id"}},
                            ],
                            "statuses": [
                                {"id": "wamid.out-1", "status": "DELIVERED", "recipient_id": "15551234567"},
                                {
                                    "id": "wamid.out-2",
                                    "status": "failed",
                                    "errors": [{"code": 131047, "title": "Re-engagement message"}],
                                },
                                {"id": "", "status": "read"},
                            ],
                        },
                    }
                ],
            }
        ],
    }

    batch = parse_webhook_payload(payload, received_at=RECEIVED_AT)

    assert [message.provider_message_id for message in batch.messages] == ["wamid.in-1", "wamid.in-2"]
    first, second = batch.messages
    assert first.phone == "+15551234567"
    assert first.body_text == "Hi there"
    assert first.profile_name == "Ava"
    assert first.sent_at == datetime.fromtimestamp(1772366400, tz=timezone.utc)
    assert second.body_text == "[image]"
    assert second.sent_at == RECEIVED_AT

    assert [(value.provider_message_id, value.status) for value in batch.statuses] == [
        ("wamid.out-1", "delivered"),
        ("wamid.out-2", "failed"),
    ]
    assert batch.statuses[1].error_code == "131047"


def test_parse_webhook_payload_tolerates_empty_bodies() -> None:
    batch = parse_webhook_payload({}, received_at=RECEIVED_AT)

    assert batch.messages == ()
    assert batch.statuses == ()


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_remote_disconnect_is_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = http.client.RemoteDisconnected("Remote end closed connection without response")

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "RemoteDisconnected" in (result.error_message or "")


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_connection_reset_is_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = ConnectionResetError(104, "Connection reset by peer")

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "***4567" in (result.error_message or "")


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_non_object_body_is_invalid_response(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response([{"id": "wamid.X"}])

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "invalid_response"


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_sender_non_list_messages_is_missing_id(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": {"id": "wamid.X"}})

    result = _make_sender().send_message(_make_request())

    assert result.status == "failed"
    assert result.error_code == "missing_message_id"


def _template_entry(name: str, *, status: str = "APPROVED", body: str | None = "Hello {{1}}") -> dict:
    components = [{"type": "HEADER", "format": "TEXT", "text": "Header"}]
    if body is not None:
        components.append({"type": "BODY", "text": body})
    return {
        "name": name,
        "status": status,
        "category": "marketing",
        "language": "en_GB",
        "components": components,
    }


def test_parse_message_templates_keeps_approved_with_body() -> None:
    templates = parse_message_templates(
        [
            _template_entry("spring_sale"),
            _template_entry("pending_one", status="PENDING"),
            _template_entry("no_body", body=None),
            "not-an-object",
            {"status": "APPROVED", "components": [{"type": "BODY", "text": "nameless"}]},
        ]
    )

    assert [template.name for template in templates] == ["spring_sale"]
    assert templates[0].category == "MARKETING"
    assert templates[0].language == "en_GB"
    assert templates[0].body == "Hello {{1}}"


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_template_source_fetches_listing(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"data": [_template_entry("spring_sale")]})
    source = HttpTemplateSource(
        base_url="https://graph.example.test/v20.0/",
        access_token="test-access-token",
        business_account_id="WABA1",
    )

    templates = source.fetch_templates()

    assert [template.name for template in templates] == ["spring_sale"]
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.example.test/v20.0/WABA1/message_templates?limit=100"
    assert request_arg.get_method() == "GET"
    assert request_arg.get_header("Authorization") == "Bearer test-access-token"


@patch("inbox_web.whatsapp.urllib.request.urlopen")
def test_http_template_source_rejects_listing_without_data(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"error": {"message": "nope"}})
    source = HttpTemplateSource(
        base_url="https://graph.example.test/v20.0",
        access_token="test-access-token",
        business_account_id="WABA1",
    )

    with pytest.raises(ProviderError) as excinfo:
        source.fetch_templates()

    assert excinfo.value.error_code == "invalid_response"


def test_http_template_source_requires_business_account() -> None:
    with pytest.raises(ValueError, match="business_account_id must not be empty"):
        HttpTemplateSource(base_url="https://graph.example.test", access_token="t", business_account_id=" ")


def test_parse_webhook_payload_skips_non_object_items() -> None:
    payload = {
        "entry": [
            "garbage",
            {
                "changes": [
                    None,
                    {"value": "not-an-object"},
                    {
                        "value": {
                            "contacts": ["bad-contact"],
                            "messages": [
                                42,
                                {"from": "15551234567", "id": "wamid.ok", "type": "text", "text": "bad-shape"},
                            ],
                            "statuses": [
                                "bad-status",
                                {"id": "wamid.out-1", "status": "read", "errors": ["oops"]},
                            ],
                        }
                    },
                ]
            },
        ]
    }

    batch = parse_webhook_payload(payload, received_at=RECEIVED_AT)

    assert [message.provider_message_id for message in batch.messages] == ["wamid.ok"]
    assert batch.messages[0].body_text == "[Unsupported message]"
    assert [(value.provider_message_id, value.error_code) for value in batch.statuses] == [("wamid.out-1", None)]
