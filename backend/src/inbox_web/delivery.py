from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from .agents import Agent, require_write_access
from .conversations import ConversationRepository, ConversationService, MessageRecord
from .errors import NotFoundError, ProviderError, ValidationError
from .models import DeliveryStatus, MessageKind, ReceiptOutcome, UsageStatsResponse
from .session_window import SESSION_WINDOW, require_freeform_allowed
from .templates import TemplateCatalog
from .whatsapp import RECEIPT_STATUSES, ProviderMessageRequest, ProviderSendResult, WhatsAppSender, mask_phone

logger = logging.getLogger(__name__)

_STATUS_RANK: dict[str, int] = {"sent": 1, "delivered": 2, "read": 3}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def can_advance(current: DeliveryStatus | str | None, incoming: str) -> bool:
    """Forward-only delivery lattice: sent < delivered < read, and failed is terminal."""
    if current == "failed":
        return False
    if incoming == "failed":
        return True
    if incoming not in _STATUS_RANK:
        return False
    return _STATUS_RANK[incoming] > _STATUS_RANK.get(current or "", 0)


class MessageDeliveryTracker:
    def __init__(
        self,
        *,
        repository: ConversationRepository,
        conversations: ConversationService,
        sender: WhatsAppSender,
        catalog: TemplateCatalog,
        template_language: str = "en_US",
        window: timedelta = SESSION_WINDOW,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._conversations = conversations
        self._sender = sender
        self._catalog = catalog
        self._template_language = template_language
        self._window = window
        self._clock = clock

    def send(
        self,
        conversation_id: str,
        *,
        kind: MessageKind,
        content: str | None = None,
        template_name: str | None = None,
        variables: Sequence[str] = (),
        agent: Agent | None = None,
        campaign_id: str | None = None,
        retry_of_message_id: str | None = None,
    ) -> MessageRecord:
        require_write_access(agent, "send messages")
        conversation = self._conversations.get_conversation(conversation_id)
        agent_id = agent.agent_id if agent is not None else None

        if kind == "internal_note":
            body_text = (content or "").strip()
            if not body_text:
                raise ValidationError("internal notes require content")
            message = self._repository.append_message(
                conversation_id=conversation_id,
                direction="outbound",
                kind="internal_note",
                body_text=body_text,
                created_at=self._clock(),
                agent_id=agent_id,
            )
            self._conversations.note_outbound(message)
            return message

        if kind == "freeform":
            body_text = (content or "").strip()
            if not body_text:
                raise ValidationError("freeform messages require content")
            require_freeform_allowed(
                conversation_id,
                conversation.last_customer_message_at,
                self._clock(),
                window=self._window,
            )
            request = ProviderMessageRequest(
                conversation_id=conversation_id,
                to_phone=conversation.phone,
                message_type="text",
                body_text=body_text,
            )
        elif kind == "template":
            if not template_name:
                raise ValidationError("template messages require a template name")
            try:
                template = self._catalog.get(template_name)
            except NotFoundError as exc:
                raise ValidationError(f"unknown template: {template_name}") from exc
            values = tuple(str(value) for value in variables)
            body_text = self._catalog.render(template.name, values)
            request = ProviderMessageRequest(
                conversation_id=conversation_id,
                to_phone=conversation.phone,
                message_type="template",
                body_text=body_text,
                template_name=template.name,
                template_language=template.language or self._template_language,
                variables=values,
            )
        else:
            raise ValidationError(f"unsupported message kind: {kind}")

        result = self._dispatch(request)
        message = self._repository.append_message(
            conversation_id=conversation_id,
            direction="outbound",
            kind=kind,
            body_text=body_text,
            created_at=self._clock(),
            template_name=request.template_name,
            template_variables=request.variables,
            delivery_status=result.status,
            provider_message_id=result.provider_message_id,
            agent_id=agent_id,
            retry_of_message_id=retry_of_message_id,
            campaign_id=campaign_id,
            error_code=result.error_code,
        )
        self._conversations.note_outbound(message)
        if result.status == "failed":
            logger.warning(
                "outbound message failed: conversation=%s message=%s to=%s error_code=%s",
                conversation_id,
                message.message_id,
                mask_phone(conversation.phone),
                result.error_code,
            )
        else:
            logger.info(
                "outbound message sent: conversation=%s message=%s kind=%s provider_message_id=%s",
                conversation_id,
                message.message_id,
                kind,
                result.provider_message_id,
            )
        return message

    def _dispatch(self, request: ProviderMessageRequest) -> ProviderSendResult:
        try:
            return self._sender.send_message(request)
        except ProviderError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=self._clock(),
                error_code=exc.error_code,
                error_message=exc.message,
            )

    def retry(self, message_id: str, *, agent: Agent | None = None) -> MessageRecord:
        original = self._repository.find_message(message_id)
        if original is None:
            raise NotFoundError(f"message not found: {message_id}")
        if not original.is_public_outbound or original.delivery_status != "failed":
            raise ValidationError("only failed outbound messages can be retried")
        return self.send(
            original.conversation_id,
            kind=original.kind,
            content=original.body_text if original.kind == "freeform" else None,
            template_name=original.template_name,
            variables=original.template_variables,
            agent=agent,
            campaign_id=original.campaign_id,
            retry_of_message_id=original.message_id,
        )

    def apply_delivery_receipt(
        self,
        provider_message_id: str,
        status: str,
        *,
        error_code: str | None = None,
    ) -> ReceiptOutcome:
        incoming = status.strip().lower()
        if incoming not in RECEIPT_STATUSES:
            logger.info("delivery receipt ignored: provider_message_id=%s status=%s", provider_message_id, status)
            return "ignored"

        message = self._repository.find_message_by_provider_message_id(provider_message_id)
        if message is None:
            logger.warning(
                "delivery receipt unmatched: provider_message_id=%s status=%s", provider_message_id, incoming
            )
            return "unmatched"
        if not message.is_public_outbound or not can_advance(message.delivery_status, incoming):
            return "ignored"

        self._repository.set_delivery_status(
            message_id=message.message_id,
            delivery_status=incoming,  # type: ignore[arg-type]
            error_code=error_code if incoming == "failed" else None,
        )
        return "applied"

    def usage_stats(self, *, now: datetime | None = None) -> UsageStatsResponse:
        current = now or self._clock()
        by_status = self._repository.delivery_status_counts()
        recent = self._repository.delivery_status_counts(since=current - timedelta(hours=24))
        return UsageStatsResponse(
            total_outbound=sum(by_status.values()),
            last_24h=sum(recent.values()),
            by_status=by_status,
        )
