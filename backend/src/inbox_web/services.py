from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .agents import AgentDirectory
from .campaigns import CampaignRepository, CampaignService, create_campaign_repository
from .config import Settings
from .conversations import ConversationRepository, ConversationService, create_conversation_repository
from .delivery import MessageDeliveryTracker
from .errors import ValidationError
from .events import EventIntakeService
from .idempotency import IdempotencyLedger, create_idempotency_ledger
from .templates import TemplateCatalog
from .whatsapp import HttpTemplateSource, HttpWhatsAppSender, StubWhatsAppSender, TemplateSource, WhatsAppSender


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InboxServices:
    settings: Settings
    clock: Callable[[], datetime]
    directory: AgentDirectory
    catalog: TemplateCatalog
    sender: WhatsAppSender
    conversation_repo: ConversationRepository
    ledger: IdempotencyLedger
    campaign_repo: CampaignRepository
    conversations: ConversationService
    tracker: MessageDeliveryTracker
    events: EventIntakeService
    campaigns: CampaignService
    template_source: TemplateSource | None = None

    def reset(self) -> None:
        self.conversation_repo.reset()
        self.ledger.reset()
        self.campaign_repo.reset()

    def sync_templates(self) -> int:
        if self.template_source is None:
            raise ValidationError(
                "template sync requires WHATSAPP_SENDER_TYPE=http, WHATSAPP_BUSINESS_ID and WHATSAPP_ACCESS_TOKEN"
            )
        return self.catalog.sync(self.template_source.fetch_templates())


def create_sender(settings: Settings) -> WhatsAppSender:
    if settings.whatsapp_sender_type == "http":
        return HttpWhatsAppSender(
            base_url=settings.whatsapp_api_base_url,
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            timeout_seconds=settings.whatsapp_timeout_seconds,
        )
    return StubWhatsAppSender(enabled=settings.whatsapp_enabled)


def create_template_source(settings: Settings) -> TemplateSource | None:
    if settings.whatsapp_sender_type != "http":
        return None
    if not settings.whatsapp_business_account_id.strip() or not settings.whatsapp_access_token.strip():
        return None
    return HttpTemplateSource(
        base_url=settings.whatsapp_api_base_url,
        access_token=settings.whatsapp_access_token,
        business_account_id=settings.whatsapp_business_account_id,
        timeout_seconds=settings.whatsapp_timeout_seconds,
    )


def build_services(
    settings: Settings,
    *,
    sender: WhatsAppSender | None = None,
    template_source: TemplateSource | None = None,
    clock: Callable[[], datetime] = _now_utc,
) -> InboxServices:
    window = timedelta(hours=settings.session_window_hours)
    directory = AgentDirectory.from_settings(settings)
    catalog = TemplateCatalog()
    active_sender = sender if sender is not None else create_sender(settings)

    conversation_repo = create_conversation_repository(
        backend=settings.conversation_store_backend,
        database_url=settings.database_url,
    )
    ledger = create_idempotency_ledger(
        backend=settings.ledger_store_backend,
        database_url=settings.database_url,
    )
    campaign_repo = create_campaign_repository(
        backend=settings.campaign_store_backend,
        database_url=settings.database_url,
    )

    conversations = ConversationService(
        repository=conversation_repo,
        directory=directory,
        window=window,
        clock=clock,
    )
    tracker = MessageDeliveryTracker(
        repository=conversation_repo,
        conversations=conversations,
        sender=active_sender,
        catalog=catalog,
        template_language=settings.whatsapp_template_language,
        window=window,
        clock=clock,
    )
    events = EventIntakeService(
        ledger=ledger,
        conversations=conversations,
        tracker=tracker,
        retention=timedelta(days=settings.ledger_retention_days),
        clock=clock,
    )
    campaigns = CampaignService(
        repository=campaign_repo,
        messages=conversation_repo,
        conversations=conversations,
        tracker=tracker,
        catalog=catalog,
        clock=clock,
    )
    return InboxServices(
        settings=settings,
        clock=clock,
        directory=directory,
        catalog=catalog,
        sender=active_sender,
        conversation_repo=conversation_repo,
        ledger=ledger,
        campaign_repo=campaign_repo,
        conversations=conversations,
        tracker=tracker,
        events=events,
        campaigns=campaigns,
        template_source=template_source if template_source is not None else create_template_source(settings),
    )
