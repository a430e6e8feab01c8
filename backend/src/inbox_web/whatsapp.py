from __future__ import annotations

import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from typing import Any, Iterable, Literal, Mapping, Protocol, Sequence

from .errors import ProviderError
from .templates import TemplateDefinition

logger = logging.getLogger(__name__)

ProviderResultStatus = Literal["sent", "failed"]
ProviderMessageType = Literal["text", "template"]

RECEIPT_STATUSES = frozenset({"sent", "delivered", "read", "failed"})


@dataclass(frozen=True)
class ProviderMessageRequest:
    conversation_id: str
    to_phone: str
    message_type: ProviderMessageType
    body_text: str
    template_name: str | None = None
    template_language: str = "en_US"
    variables: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class WhatsAppSender(Protocol):
    def send_message(self, request: ProviderMessageRequest) -> ProviderSendResult: ...


class StubWhatsAppSender:
    """Sender used in development and tests; never leaves the process."""

    def __init__(self, *, enabled: bool, fail_recipients: Iterable[str] = ()) -> None:
        self._enabled = enabled
        self._fail_recipients = {value.strip() for value in fail_recipients}
        self._counter = count(1)
        self.sent: list[ProviderMessageRequest] = []

    def send_message(self, request: ProviderMessageRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="whatsapp_disabled",
                error_message="WhatsApp live delivery is disabled",
            )

        if request.to_phone in self._fail_recipients:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(request)
        message_id = f"wamid.stub-{next(self._counter):06d}"
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class HttpWhatsAppSender:
    """WhatsApp Cloud API sender that posts to the Graph API messages endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        phone_number_id: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = access_token.strip()
        stripped_number = phone_number_id.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        if not stripped_number:
            raise ValueError("phone_number_id must not be empty")
        self._base_url = stripped_url
        self._access_token = stripped_token
        self._phone_number_id = stripped_number
        self._timeout_seconds = timeout_seconds

    def send_message(self, request: ProviderMessageRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            response_data = self._post(build_cloud_api_payload(request))
        except ProviderError as exc:
            logger.warning(
                "whatsapp send failed: conversation=%s recipient=%s error_code=%s",
                request.conversation_id,
                mask_phone(request.to_phone),
                exc.error_code,
            )
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_phone(request.to_phone)})",
            )

        messages = response_data.get("messages") or []
        first = messages[0] if isinstance(messages, list) and messages else None
        message_id = first.get("id") if isinstance(first, dict) else None
        if not message_id:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="missing_message_id",
                error_message="WhatsApp API response did not include a message id",
            )
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """Send a POST request to the Cloud API messages endpoint."""
        request = urllib.request.Request(
            f"{self._base_url}/{self._phone_number_id}/messages",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        return _open_json(request, timeout_seconds=self._timeout_seconds)


def _open_json(request: urllib.request.Request, *, timeout_seconds: float) -> dict[str, Any]:
    """Perform a Graph API call and decode its JSON object body, mapping every transport failure to ProviderError."""
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            data = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        raise ProviderError(
            error_code=f"http_{exc.code}",
            message=f"HTTP {exc.code}: {exc.reason}",
        ) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise ProviderError(error_code="timeout", message=f"Request timed out: {exc.reason}") from exc
        raise ProviderError(
            error_code="connection_error",
            message=f"Connection error: {exc.reason}",
        ) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise ProviderError(
            error_code="timeout",
            message=f"Request timed out: {exc}",
        ) from exc
    except (OSError, http.client.HTTPException) as exc:
        raise ProviderError(
            error_code="connection_error",
            message=f"Connection error: {exc.__class__.__name__}: {exc}",
        ) from exc
    except ValueError as exc:
        raise ProviderError(error_code="invalid_response", message=f"Invalid JSON response: {exc}") from exc

    if not isinstance(data, dict):
        raise ProviderError(
            error_code="invalid_response",
            message=f"Expected a JSON object, got {type(data).__name__}",
        )
    return data


class TemplateSource(Protocol):
    def fetch_templates(self) -> list[TemplateDefinition]: ...


class HttpTemplateSource:
    """Reads the business account's message templates from the Graph API."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        business_account_id: str,
        timeout_seconds: float = 10.0,
        page_limit: int = 100,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not access_token.strip():
            raise ValueError("access_token must not be empty")
        if not business_account_id.strip():
            raise ValueError("business_account_id must not be empty")
        self._base_url = stripped_url
        self._access_token = access_token.strip()
        self._business_account_id = business_account_id.strip()
        self._timeout_seconds = timeout_seconds
        self._page_limit = page_limit

    def fetch_templates(self) -> list[TemplateDefinition]:
        request = urllib.request.Request(
            f"{self._base_url}/{self._business_account_id}/message_templates?limit={self._page_limit}",
            headers={"Authorization": f"Bearer {self._access_token}"},
            method="GET",
        )
        response_data = _open_json(request, timeout_seconds=self._timeout_seconds)
        entries = response_data.get("data")
        if not isinstance(entries, list):
            raise ProviderError(error_code="invalid_response", message="template listing did not include data")
        return parse_message_templates(entries)


def parse_message_templates(entries: Iterable[Any]) -> list[TemplateDefinition]:
    """Keep approved templates that have a BODY component."""
    templates: list[TemplateDefinition] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if str(entry.get("status") or "").upper() != "APPROVED":
            continue
        name = str(entry.get("name") or "").strip()
        body = next(
            (
                str(component.get("text") or "")
                for component in entry.get("components") or []
                if isinstance(component, dict) and str(component.get("type") or "").upper() == "BODY"
            ),
            "",
        )
        if not name or not body:
            continue
        templates.append(
            TemplateDefinition(
                name=name,
                category=str(entry.get("category") or "UTILITY").upper(),
                language=str(entry.get("language") or "en_US"),
                body=body,
            )
        )
    return templates


def build_cloud_api_payload(request: ProviderMessageRequest) -> dict[str, Any]:
    to = request.to_phone.lstrip("+")
    if request.message_type == "text":
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": request.body_text},
        }

    components: list[dict[str, Any]] = []
    if request.variables:
        components.append(
            {
                "type": "body",
                "parameters": [{"type": "text", "text": value} for value in request.variables],
            }
        )
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "template",
        "template": {
            "name": request.template_name,
            "language": {"code": request.template_language},
            "components": components,
        },
    }


def mask_phone(phone: str) -> str:
    normalized = phone.strip()
    if not normalized:
        return "***"
    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "*" * len(normalized)


# ---------------------------------------------------------------------------
# Webhook payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InboundWhatsAppMessage:
    provider_message_id: str
    phone: str
    body_text: str
    sent_at: datetime
    profile_name: str | None = None


@dataclass(frozen=True)
class DeliveryStatusUpdate:
    provider_message_id: str
    status: str
    recipient_phone: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class WebhookBatch:
    messages: Sequence[InboundWhatsAppMessage] = field(default_factory=tuple)
    statuses: Sequence[DeliveryStatusUpdate] = field(default_factory=tuple)


def _timestamp(value: object, default: datetime) -> datetime:
    if value is None:
        return default
    try:
        return datetime.fromtimestamp(int(str(value)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return default


def _message_text(message: Mapping[str, Any]) -> str:
    message_type = message.get("type")
    if message_type == "text":
        return str((message.get("text") or {}).get("body") or "")
    if message_type == "button":
        return str((message.get("button") or {}).get("text") or "")
    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return str(reply.get("title") or "")
    if message_type in {"image", "audio", "video", "document", "sticker"}:
        media = message.get(message_type) or {}
        return str(media.get("caption") or f"[{message_type}]")
    return ""


def _objects(value: object) -> list[Mapping[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def parse_webhook_payload(payload: Mapping[str, Any], *, received_at: datetime) -> WebhookBatch:
    """Flatten a Cloud API webhook body into inbound messages and status updates.

    Entries, changes and items that are not JSON objects are skipped so one
    malformed element does not hide the rest of the batch.
    """
    messages: list[InboundWhatsAppMessage] = []
    statuses: list[DeliveryStatusUpdate] = []

    for entry in _objects(payload.get("entry")):
        for change in _objects(entry.get("changes")):
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            names = {
                str(contact.get("wa_id")): (contact.get("profile") or {}).get("name")
                for contact in _objects(value.get("contacts"))
                if isinstance(contact.get("profile") or {}, dict)
            }
            for message in _objects(value.get("messages")):
                sender = str(message.get("from") or "").strip()
                message_id = str(message.get("id") or "").strip()
                if not sender or not message_id:
                    continue
                phone = sender if sender.startswith("+") else f"+{sender}"
                try:
                    body_text = _message_text(message)
                except AttributeError:
                    body_text = ""
                messages.append(
                    InboundWhatsAppMessage(
                        provider_message_id=message_id,
                        phone=phone,
                        body_text=body_text or "[Unsupported message]",
                        sent_at=_timestamp(message.get("timestamp"), received_at),
                        profile_name=names.get(sender),
                    )
                )
            for status in _objects(value.get("statuses")):
                message_id = str(status.get("id") or "").strip()
                status_value = str(status.get("status") or "").strip().lower()
                if not message_id or not status_value:
                    continue
                errors = _objects(status.get("errors"))
                error_code = str(errors[0].get("code")) if errors else None
                statuses.append(
                    DeliveryStatusUpdate(
                        provider_message_id=message_id,
                        status=status_value,
                        recipient_phone=status.get("recipient_id"),
                        error_code=error_code,
                    )
                )

    return WebhookBatch(messages=tuple(messages), statuses=tuple(statuses))
