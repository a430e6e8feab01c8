from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Callable, Protocol, Sequence
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Integer, String, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .agents import Agent, require_write_access
from .conversations import ConversationRepository, ConversationService
from .delivery import MessageDeliveryTracker
from .errors import InboxError, NotFoundError, ValidationError
from .models import CampaignItem, CampaignStatus
from .templates import TemplateCatalog

logger = logging.getLogger(__name__)

MAX_AUDIENCE = 5000


@dataclass(frozen=True)
class CampaignRecord:
    campaign_id: str
    name: str
    template_name: str
    variables: tuple[str, ...]
    status: CampaignStatus
    audience_count: int
    created_by: str | None
    created_at: datetime
    completed_at: datetime | None = None


class CampaignRepository(Protocol):
    def reset(self) -> None: ...

    def create_campaign(
        self,
        *,
        name: str,
        template_name: str,
        variables: Sequence[str],
        audience_count: int,
        created_by: str | None,
        now: datetime,
    ) -> CampaignRecord: ...

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None: ...

    def list_campaigns(self, *, limit: int) -> list[CampaignRecord]: ...

    def mark_completed(self, *, campaign_id: str, now: datetime) -> CampaignRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryCampaignRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._campaigns: dict[str, CampaignRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._campaigns.clear()

    def create_campaign(
        self,
        *,
        name: str,
        template_name: str,
        variables: Sequence[str],
        audience_count: int,
        created_by: str | None,
        now: datetime,
    ) -> CampaignRecord:
        with self._lock:
            record = CampaignRecord(
                campaign_id=f"camp_{next(self._counter):06d}",
                name=name,
                template_name=template_name,
                variables=tuple(variables),
                status="sending",
                audience_count=audience_count,
                created_by=created_by,
                created_at=now,
            )
            self._campaigns[record.campaign_id] = record
            return record

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None:
        return self._campaigns.get(campaign_id)

    def list_campaigns(self, *, limit: int) -> list[CampaignRecord]:
        values = sorted(self._campaigns.values(), key=lambda value: value.created_at, reverse=True)
        return values[:limit]

    def mark_completed(self, *, campaign_id: str, now: datetime) -> CampaignRecord:
        with self._lock:
            current = self._campaigns.get(campaign_id)
            if current is None:
                raise NotFoundError(f"campaign not found: {campaign_id}")
            updated = replace(current, status="completed", completed_at=now)
            self._campaigns[campaign_id] = updated
            return updated


class CampaignsBase(DeclarativeBase):
    pass


class _CampaignRow(CampaignsBase):
    __tablename__ = "campaigns"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    template_name: Mapped[str] = mapped_column(String(128), nullable=False)
    variables: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="sending")
    audience_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SqlAlchemyCampaignRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CAMPAIGN_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            CampaignsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_CampaignRow))

    def create_campaign(
        self,
        *,
        name: str,
        template_name: str,
        variables: Sequence[str],
        audience_count: int,
        created_by: str | None,
        now: datetime,
    ) -> CampaignRecord:
        row = _CampaignRow(
            campaign_id=f"camp_{uuid4().hex[:16]}",
            name=name,
            template_name=template_name,
            variables=list(variables),
            status="sending",
            audience_count=audience_count,
            created_by=created_by,
            created_at=now,
            completed_at=None,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
                session.flush()
                return self._record(row)

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None:
        with self._session() as session:
            row = session.get(_CampaignRow, campaign_id)
            return self._record(row) if row is not None else None

    def list_campaigns(self, *, limit: int) -> list[CampaignRecord]:
        with self._session() as session:
            rows = session.scalars(select(_CampaignRow).order_by(_CampaignRow.created_at.desc()).limit(limit)).all()
            return [self._record(row) for row in rows]

    def mark_completed(self, *, campaign_id: str, now: datetime) -> CampaignRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_CampaignRow, campaign_id)
                if row is None:
                    raise NotFoundError(f"campaign not found: {campaign_id}")
                row.status = "completed"
                row.completed_at = now
                session.flush()
                return self._record(row)

    @staticmethod
    def _record(row: _CampaignRow) -> CampaignRecord:
        return CampaignRecord(
            campaign_id=row.campaign_id,
            name=row.name,
            template_name=row.template_name,
            variables=tuple(row.variables or ()),
            status=row.status,  # type: ignore[arg-type]
            audience_count=row.audience_count,
            created_by=row.created_by,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            completed_at=_coerce_utc(row.completed_at),
        )


def create_campaign_repository(*, backend: str, database_url: str) -> CampaignRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyCampaignRepository(database_url)
    if normalized == "inmemory":
        return InMemoryCampaignRepository()
    raise RuntimeError(f"unsupported CAMPAIGN_STORE_BACKEND: {backend}")


class CampaignService:
    """Bulk template sends. Each recipient gets an ordinary template message tagged with the campaign id."""

    def __init__(
        self,
        *,
        repository: CampaignRepository,
        messages: ConversationRepository,
        conversations: ConversationService,
        tracker: MessageDeliveryTracker,
        catalog: TemplateCatalog,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._messages = messages
        self._conversations = conversations
        self._tracker = tracker
        self._catalog = catalog
        self._clock = clock

    def reset(self) -> None:
        self._repository.reset()

    def create_campaign(
        self,
        *,
        name: str,
        template_name: str,
        variables: Sequence[str],
        conversation_ids: Sequence[str] | None,
        agent: Agent,
    ) -> CampaignItem:
        require_write_access(agent, "run campaigns")
        try:
            self._catalog.render(template_name, variables)
        except NotFoundError as exc:
            raise ValidationError(f"unknown template: {template_name}") from exc

        if conversation_ids is None:
            audience = [value.conversation_id for value in self._conversations.list_conversations(limit=MAX_AUDIENCE)]
        else:
            audience = list(dict.fromkeys(conversation_ids))
            for conversation_id in audience:
                self._conversations.get_conversation(conversation_id)
        if not audience:
            raise ValidationError("campaign has no conversations to send to")

        campaign = self._repository.create_campaign(
            name=name,
            template_name=template_name,
            variables=variables,
            audience_count=len(audience),
            created_by=agent.agent_id,
            now=self._clock(),
        )
        logger.info(
            "campaign started: campaign=%s template=%s audience=%s",
            campaign.campaign_id,
            template_name,
            len(audience),
        )
        skipped = 0
        try:
            for conversation_id in audience:
                try:
                    self._tracker.send(
                        conversation_id,
                        kind="template",
                        template_name=template_name,
                        variables=variables,
                        agent=agent,
                        campaign_id=campaign.campaign_id,
                    )
                except InboxError as exc:
                    skipped += 1
                    logger.warning(
                        "campaign recipient skipped: campaign=%s conversation=%s error=%s",
                        campaign.campaign_id,
                        conversation_id,
                        exc,
                    )
        finally:
            # A campaign never stays in "sending" once the loop has ended.
            campaign = self._repository.mark_completed(campaign_id=campaign.campaign_id, now=self._clock())
        item = self._to_item(campaign)
        logger.info(
            "campaign completed: campaign=%s sent=%s failed=%s skipped=%s",
            campaign.campaign_id,
            item.sent_count,
            item.failed_count,
            skipped,
        )
        return item

    def get_campaign(self, campaign_id: str) -> CampaignItem:
        campaign = self._repository.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"campaign not found: {campaign_id}")
        return self._to_item(campaign)

    def list_campaigns(self, *, limit: int = 100) -> list[CampaignItem]:
        return [self._to_item(value) for value in self._repository.list_campaigns(limit=limit)]

    def _to_item(self, campaign: CampaignRecord) -> CampaignItem:
        counts = self._messages.delivery_status_counts(campaign_id=campaign.campaign_id)
        failed = counts.get("failed", 0)
        return CampaignItem(
            campaign_id=campaign.campaign_id,
            name=campaign.name,
            template_name=campaign.template_name,
            variables=list(campaign.variables),
            status=campaign.status,
            audience_count=campaign.audience_count,
            sent_count=sum(counts.values()) - failed,
            failed_count=failed,
            created_at=campaign.created_at,
            completed_at=campaign.completed_at,
        )
