from __future__ import annotations

import hmac
import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from .agents import Agent
from .conversations import MessageRecord, to_contact_item, to_conversation_item, to_message_item, to_window_item
from .errors import (
    InboxError,
    InternalError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    ValidationError,
    WindowClosedError,
)
from .events import EventIntakeResult
from .models import (
    AgentItem,
    CampaignCreateRequest,
    CampaignItem,
    CampaignListResponse,
    ContactCreateRequest,
    ContactListResponse,
    ContactSaveResponse,
    ContactUpdateRequest,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationState,
    ConversationUpdateRequest,
    ConversationUpdateResponse,
    EventIntakeResponse,
    LedgerEntryItem,
    LedgerListResponse,
    LedgerTrimResponse,
    SendMessageRequest,
    SendMessageResponse,
    TeamResponse,
    TemplateItem,
    TemplateListResponse,
    TemplateSyncResponse,
    UsageStatsResponse,
    WebhookProcessResponse,
)
from .services import InboxServices
from .webhook_security import verify_subscription_challenge, verify_whatsapp_signature
from .whatsapp import parse_webhook_payload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["inbox"])


def _services(request: Request) -> InboxServices:
    return request.app.state.services  # type: ignore[no-any-return]


def _require_agent(request: Request) -> Agent:
    agent_id = request.headers.get("X-Agent-Id", "").strip()
    if not agent_id:
        raise HTTPException(401, "agent identity required")
    agent = _services(request).directory.get(agent_id)
    if agent is None:
        raise HTTPException(401, f"unknown agent: {agent_id}")
    return agent


def _http_error(exc: InboxError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, WindowClosedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProviderError):
        logger.warning("provider error: error_code=%s message=%s", exc.error_code, exc.message)
        return HTTPException(status_code=502, detail=f"provider error: {exc.error_code}")
    if isinstance(exc, InternalError):
        logger.error("internal error: %s", exc)
        return HTTPException(status_code=500, detail="internal error")
    return HTTPException(status_code=400, detail=str(exc))


def _event_response(result: EventIntakeResult) -> JSONResponse:
    body = EventIntakeResponse(success=result.accepted, message=result.message)
    return JSONResponse(status_code=result.status_code, content=body.model_dump())


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Business events
# ---------------------------------------------------------------------------


@router.post("/events/{event_type}", response_model=EventIntakeResponse)
async def ingest_event(event_type: str, request: Request) -> JSONResponse:
    services = _services(request)
    configured_key = services.settings.events_api_key.strip()
    if configured_key:
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(configured_key, provided):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content=EventIntakeResponse(success=False, message="Unauthorized").model_dump(),
            )

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        return _event_response(
            EventIntakeResult(accepted=False, status_code=400, message="Validation Error: body must be valid JSON")
        )

    result = await run_in_threadpool(services.events.handle_event, event_type, payload)
    return _event_response(result)


# ---------------------------------------------------------------------------
# WhatsApp webhook
# ---------------------------------------------------------------------------


@router.get("/whatsapp/webhook", response_class=PlainTextResponse)
def verify_whatsapp_webhook(
    request: Request,
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse:
    challenge = verify_subscription_challenge(
        settings=_services(request).settings,
        mode=hub_mode,
        verify_token=hub_verify_token,
        challenge=hub_challenge,
    )
    if challenge is None:
        logger.warning("whatsapp webhook verification rejected: mode=%s", hub_mode)
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)
    return PlainTextResponse(challenge, status_code=status.HTTP_200_OK)


def _process_webhook(services: InboxServices, payload: dict) -> WebhookProcessResponse:
    batch = parse_webhook_payload(payload, received_at=services.clock())
    response = WebhookProcessResponse(accepted=True)

    for message in batch.messages:
        try:
            result = services.conversations.ingest_inbound(
                phone=message.phone,
                body_text=message.body_text,
                provider_message_id=message.provider_message_id,
                sent_at=message.sent_at,
                display_name=message.profile_name,
            )
        except InboxError as exc:
            response.failed_count += 1
            logger.warning(
                "whatsapp inbound message dropped: provider_message_id=%s error=%s",
                message.provider_message_id,
                exc,
            )
            continue
        if result.deduped:
            response.deduped_count += 1
        elif result.accepted:
            response.inbound_count += 1

    for update in batch.statuses:
        try:
            outcome = services.tracker.apply_delivery_receipt(
                update.provider_message_id,
                update.status,
                error_code=update.error_code,
            )
        except InboxError as exc:
            response.failed_count += 1
            logger.warning(
                "whatsapp status update dropped: provider_message_id=%s status=%s error=%s",
                update.provider_message_id,
                update.status,
                exc,
            )
            continue
        if outcome == "applied":
            response.status_applied += 1
        elif outcome == "unmatched":
            response.status_unmatched += 1
        else:
            response.status_ignored += 1
    return response


@router.post("/whatsapp/webhook", response_model=WebhookProcessResponse)
async def receive_whatsapp_webhook(request: Request) -> WebhookProcessResponse:
    services = _services(request)
    raw_body = await request.body()

    verification = verify_whatsapp_signature(settings=services.settings, body=raw_body, headers=request.headers)
    if not verification.verified:
        if services.settings.whatsapp_webhook_signature_mode == "enforce":
            raise HTTPException(401, f"invalid webhook signature: {verification.reason}")
        logger.warning("whatsapp webhook signature not verified: reason=%s", verification.reason)

    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(400, "webhook body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "webhook body must be a JSON object")

    return await run_in_threadpool(_process_webhook, services, payload)


# ---------------------------------------------------------------------------
# Agent inbox
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    request: Request,
    state: ConversationState | None = None,
    limit: int = Query(default=100, ge=1, le=500),
) -> ConversationListResponse:
    _require_agent(request)
    records = _services(request).conversations.list_conversations(limit=limit, state=state)
    return ConversationListResponse(items=[to_conversation_item(value) for value in records])


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(conversation_id: str, request: Request) -> ConversationDetailResponse:
    _require_agent(request)
    conversations = _services(request).conversations
    try:
        conversation = conversations.get_conversation(conversation_id)
        messages = conversations.list_messages(conversation_id)
    except InboxError as exc:
        raise _http_error(exc) from exc
    return ConversationDetailResponse(
        conversation=to_conversation_item(conversation),
        window=to_window_item(conversations.session_window(conversation)),
        messages=[to_message_item(value) for value in messages],
    )


def _send_response(message: MessageRecord) -> SendMessageResponse:
    return SendMessageResponse(
        message_id=message.message_id,
        conversation_id=message.conversation_id,
        kind=message.kind,
        delivery_status=message.delivery_status,
        provider_message_id=message.provider_message_id,
        retry_of_message_id=message.retry_of_message_id,
        error_code=message.error_code,
    )


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_message(conversation_id: str, payload: SendMessageRequest, request: Request) -> SendMessageResponse:
    agent = _require_agent(request)
    try:
        message = _services(request).tracker.send(
            conversation_id,
            kind=payload.kind,
            content=payload.content,
            template_name=payload.template_name,
            variables=payload.variables,
            agent=agent,
        )
    except InboxError as exc:
        raise _http_error(exc) from exc
    return _send_response(message)


@router.post("/messages/{message_id}/retry", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
def retry_message(message_id: str, request: Request) -> SendMessageResponse:
    agent = _require_agent(request)
    try:
        message = _services(request).tracker.retry(message_id, agent=agent)
    except InboxError as exc:
        raise _http_error(exc) from exc
    return _send_response(message)


@router.post("/conversations/update", response_model=ConversationUpdateResponse)
def update_conversation(payload: ConversationUpdateRequest, request: Request) -> ConversationUpdateResponse:
    agent = _require_agent(request)
    try:
        conversation = _services(request).conversations.apply_action(
            payload.action,
            payload.conversation_id,
            payload.value,
            agent=agent,
        )
    except InboxError as exc:
        raise _http_error(exc) from exc
    return ConversationUpdateResponse(success=True, conversation=to_conversation_item(conversation))


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@router.get("/contacts", response_model=ContactListResponse)
def list_contacts(request: Request, limit: int = Query(default=500, ge=1, le=5000)) -> ContactListResponse:
    _require_agent(request)
    records = _services(request).conversations.list_contacts(limit=limit)
    return ContactListResponse(items=[to_contact_item(value) for value in records])


@router.post("/contacts", response_model=ContactSaveResponse)
def save_contact(payload: ContactCreateRequest, request: Request, response: Response) -> ContactSaveResponse:
    agent = _require_agent(request)
    try:
        conversation, created = _services(request).conversations.save_contact(
            phone=payload.phone,
            display_name=payload.name,
            agent=agent,
        )
    except InboxError as exc:
        raise _http_error(exc) from exc
    if created:
        response.status_code = status.HTTP_201_CREATED
    return ContactSaveResponse(success=True, created=created, contact=to_contact_item(conversation))


@router.patch("/contacts/{conversation_id}", response_model=ContactSaveResponse)
def rename_contact(conversation_id: str, payload: ContactUpdateRequest, request: Request) -> ContactSaveResponse:
    agent = _require_agent(request)
    try:
        conversation = _services(request).conversations.rename_contact(conversation_id, payload.name, agent=agent)
    except InboxError as exc:
        raise _http_error(exc) from exc
    return ContactSaveResponse(success=True, created=False, contact=to_contact_item(conversation))


# ---------------------------------------------------------------------------
# Audit log, stats, catalog, team
# ---------------------------------------------------------------------------


@router.get("/logs", response_model=LedgerListResponse)
def list_event_log(
    request: Request,
    event_type: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> LedgerListResponse:
    _require_agent(request)
    entries = _services(request).events.audit_log(limit=limit, event_type=event_type)
    return LedgerListResponse(
        items=[
            LedgerEntryItem(
                entry_id=entry.entry_id,
                idempotency_key=entry.idempotency_key,
                event_type=entry.event_type,
                outcome=entry.outcome,
                recipient=entry.recipient,
                detail=entry.detail,
                error=entry.error,
                processed_at=entry.processed_at,
            )
            for entry in entries
        ]
    )


@router.post("/admin/ledger/trim", response_model=LedgerTrimResponse)
def trim_event_ledger(request: Request) -> LedgerTrimResponse:
    agent = _require_agent(request)
    if not agent.is_admin:
        raise HTTPException(403, "only admins can trim the event ledger")
    deleted, cutoff = _services(request).events.trim_ledger()
    return LedgerTrimResponse(deleted_count=deleted, cutoff=cutoff)


@router.get("/stats/usage", response_model=UsageStatsResponse)
def usage_stats(request: Request) -> UsageStatsResponse:
    _require_agent(request)
    return _services(request).tracker.usage_stats()


@router.get("/templates", response_model=TemplateListResponse)
def list_templates(request: Request) -> TemplateListResponse:
    _require_agent(request)
    return TemplateListResponse(
        items=[
            TemplateItem(
                name=template.name,
                category=template.category,
                language=template.language,
                body=template.body,
                parameter_count=template.parameter_count,
            )
            for template in _services(request).catalog.list_templates()
        ]
    )


@router.post("/templates/sync", response_model=TemplateSyncResponse)
def sync_templates(request: Request) -> TemplateSyncResponse:
    agent = _require_agent(request)
    if not agent.is_admin:
        raise HTTPException(403, "only admins can sync templates")
    try:
        count = _services(request).sync_templates()
    except InboxError as exc:
        raise _http_error(exc) from exc
    return TemplateSyncResponse(success=True, count=count)


@router.get("/team", response_model=TeamResponse)
def list_team(request: Request) -> TeamResponse:
    _require_agent(request)
    return TeamResponse(
        items=[
            AgentItem(
                agent_id=agent.agent_id,
                display_name=agent.display_name,
                role=agent.role,
                read_only=agent.read_only,
            )
            for agent in _services(request).directory.list_agents()
        ]
    )


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


@router.post("/campaigns", response_model=CampaignItem, status_code=status.HTTP_201_CREATED)
def create_campaign(payload: CampaignCreateRequest, request: Request) -> CampaignItem:
    agent = _require_agent(request)
    try:
        return _services(request).campaigns.create_campaign(
            name=payload.name,
            template_name=payload.template_name,
            variables=payload.variables,
            conversation_ids=payload.conversation_ids,
            agent=agent,
        )
    except InboxError as exc:
        raise _http_error(exc) from exc


@router.get("/campaigns", response_model=CampaignListResponse)
def list_campaigns(request: Request, limit: int = Query(default=100, ge=1, le=500)) -> CampaignListResponse:
    _require_agent(request)
    return CampaignListResponse(items=_services(request).campaigns.list_campaigns(limit=limit))


@router.get("/campaigns/{campaign_id}", response_model=CampaignItem)
def get_campaign(campaign_id: str, request: Request) -> CampaignItem:
    _require_agent(request)
    try:
        return _services(request).campaigns.get_campaign(campaign_id)
    except InboxError as exc:
        raise _http_error(exc) from exc
