from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Callable, Protocol, Sequence
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, delete, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .agents import Agent, AgentDirectory, require_write_access
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .models import (
    ContactItem,
    ConversationItem,
    ConversationMutationAction,
    ConversationState,
    DeliveryStatus,
    MessageDirection,
    MessageItem,
    MessageKind,
    SessionWindowItem,
)
from .session_window import SESSION_WINDOW, SessionWindowDecision, evaluate_session_window
from .whatsapp import mask_phone

logger = logging.getLogger(__name__)

CONVERSATION_STATES: frozenset[str] = frozenset({"open", "pending", "resolved"})


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    phone: str
    display_name: str | None
    state: ConversationState
    assigned_agent_id: str | None
    last_customer_message_at: datetime | None
    last_agent_message_at: datetime | None
    unread_count: int
    pinned: bool
    last_message_preview: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    direction: MessageDirection
    kind: MessageKind
    body_text: str
    template_name: str | None
    template_variables: tuple[str, ...]
    delivery_status: DeliveryStatus | None
    provider_message_id: str | None
    agent_id: str | None
    retry_of_message_id: str | None
    campaign_id: str | None
    error_code: str | None
    created_at: datetime

    @property
    def is_public_outbound(self) -> bool:
        return self.direction == "outbound" and self.kind != "internal_note"


@dataclass(frozen=True)
class InboundResult:
    accepted: bool
    deduped: bool
    conversation_id: str | None
    message_id: str | None


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def register_webhook_receipt(self, *, source: str, receipt_key: str) -> bool: ...

    def create_or_get_conversation(
        self, *, phone: str, display_name: str | None, now: datetime
    ) -> ConversationRecord: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def find_conversation_by_phone(self, phone: str) -> ConversationRecord | None: ...

    def list_conversations(self, *, limit: int, state: ConversationState | None = None) -> list[ConversationRecord]: ...

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]: ...

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        kind: MessageKind,
        body_text: str,
        created_at: datetime,
        template_name: str | None = None,
        template_variables: Sequence[str] = (),
        delivery_status: DeliveryStatus | None = None,
        provider_message_id: str | None = None,
        agent_id: str | None = None,
        retry_of_message_id: str | None = None,
        campaign_id: str | None = None,
        error_code: str | None = None,
    ) -> MessageRecord: ...

    def find_message(self, message_id: str) -> MessageRecord | None: ...

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None: ...

    def set_delivery_status(
        self, *, message_id: str, delivery_status: DeliveryStatus, error_code: str | None = None
    ) -> MessageRecord: ...

    def set_state(self, *, conversation_id: str, state: ConversationState, now: datetime) -> ConversationRecord: ...

    def set_assignee(
        self, *, conversation_id: str, assigned_agent_id: str | None, now: datetime
    ) -> ConversationRecord: ...

    def set_pinned(self, *, conversation_id: str, pinned: bool, now: datetime) -> ConversationRecord: ...

    def set_display_name(
        self, *, conversation_id: str, display_name: str | None, now: datetime
    ) -> ConversationRecord: ...

    def reset_unread(self, *, conversation_id: str, now: datetime) -> ConversationRecord: ...

    def record_inbound_activity(self, *, conversation_id: str, at: datetime) -> ConversationRecord: ...

    def record_agent_activity(self, *, conversation_id: str, at: datetime) -> ConversationRecord: ...

    def delivery_status_counts(
        self, *, campaign_id: str | None = None, since: datetime | None = None
    ) -> dict[str, int]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_phone(value: str) -> str:
    digits = "".join(ch for ch in value if ch.isdigit())
    if not digits:
        raise ValidationError(f"invalid phone number: {value!r}")
    return f"+{digits}"


def _preview(body_text: str, *, limit: int = 120) -> str:
    clean = " ".join(body_text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


def _latest(current: datetime | None, candidate: datetime) -> datetime:
    if current is None:
        return candidate
    return max(current, candidate)


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversation_counter = count(1)
        self._message_counter = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_phone: dict[str, str] = {}
        self._messages_by_conversation: dict[str, list[MessageRecord]] = defaultdict(list)
        self._messages: dict[str, MessageRecord] = {}
        self._message_by_provider_id: dict[str, str] = {}
        self._webhook_receipts: set[str] = set()

    def reset(self) -> None:
        with self._lock:
            self._conversation_counter = count(1)
            self._message_counter = count(1)
            self._conversations.clear()
            self._conversation_by_phone.clear()
            self._messages_by_conversation.clear()
            self._messages.clear()
            self._message_by_provider_id.clear()
            self._webhook_receipts.clear()

    def register_webhook_receipt(self, *, source: str, receipt_key: str) -> bool:
        dedup_key = f"{source}:{receipt_key}"
        with self._lock:
            if dedup_key in self._webhook_receipts:
                return True
            self._webhook_receipts.add(dedup_key)
            return False

    def create_or_get_conversation(
        self, *, phone: str, display_name: str | None, now: datetime
    ) -> ConversationRecord:
        normalized = normalize_phone(phone)
        with self._lock:
            existing_id = self._conversation_by_phone.get(normalized)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                if display_name and not existing.display_name:
                    existing = replace(existing, display_name=display_name, updated_at=now)
                    self._conversations[existing_id] = existing
                return existing

            conversation_id = f"conv_{next(self._conversation_counter):06d}"
            created = ConversationRecord(
                conversation_id=conversation_id,
                phone=normalized,
                display_name=display_name,
                state="open",
                assigned_agent_id=None,
                last_customer_message_at=None,
                last_agent_message_at=None,
                unread_count=0,
                pinned=False,
                last_message_preview=None,
                created_at=now,
                updated_at=now,
            )
            self._conversation_by_phone[normalized] = conversation_id
            self._conversations[conversation_id] = created
            return created

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return self._conversations.get(conversation_id)

    def find_conversation_by_phone(self, phone: str) -> ConversationRecord | None:
        conversation_id = self._conversation_by_phone.get(normalize_phone(phone))
        return self._conversations.get(conversation_id) if conversation_id else None

    def list_conversations(self, *, limit: int, state: ConversationState | None = None) -> list[ConversationRecord]:
        selected = [value for value in self._conversations.values() if state is None or value.state == state]
        selected.sort(key=lambda value: value.updated_at, reverse=True)
        selected.sort(key=lambda value: not value.pinned)
        return selected[:limit]

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]:
        messages = sorted(self._messages_by_conversation.get(conversation_id, []), key=lambda value: value.created_at)
        return messages[-limit:]

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        kind: MessageKind,
        body_text: str,
        created_at: datetime,
        template_name: str | None = None,
        template_variables: Sequence[str] = (),
        delivery_status: DeliveryStatus | None = None,
        provider_message_id: str | None = None,
        agent_id: str | None = None,
        retry_of_message_id: str | None = None,
        campaign_id: str | None = None,
        error_code: str | None = None,
    ) -> MessageRecord:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"conversation not found: {conversation_id}")
            message = MessageRecord(
                message_id=f"msg_{next(self._message_counter):06d}",
                conversation_id=conversation_id,
                direction=direction,
                kind=kind,
                body_text=body_text,
                template_name=template_name,
                template_variables=tuple(template_variables),
                delivery_status=delivery_status,
                provider_message_id=provider_message_id,
                agent_id=agent_id,
                retry_of_message_id=retry_of_message_id,
                campaign_id=campaign_id,
                error_code=error_code,
                created_at=created_at,
            )
            self._messages_by_conversation[conversation_id].append(message)
            self._messages[message.message_id] = message
            if provider_message_id:
                self._message_by_provider_id[provider_message_id] = message.message_id
            self._conversations[conversation_id] = replace(
                conversation,
                last_message_preview=_preview(body_text),
                updated_at=max(conversation.updated_at, created_at),
            )
            return message

    def find_message(self, message_id: str) -> MessageRecord | None:
        return self._messages.get(message_id)

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        message_id = self._message_by_provider_id.get(provider_message_id)
        return self._messages.get(message_id) if message_id else None

    def set_delivery_status(
        self, *, message_id: str, delivery_status: DeliveryStatus, error_code: str | None = None
    ) -> MessageRecord:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise NotFoundError(f"message not found: {message_id}")
            updated = replace(current, delivery_status=delivery_status, error_code=error_code or current.error_code)
            self._messages[message_id] = updated
            self._messages_by_conversation[current.conversation_id] = [
                updated if item.message_id == message_id else item
                for item in self._messages_by_conversation[current.conversation_id]
            ]
            return updated

    def _update(self, conversation_id: str, **changes: object) -> ConversationRecord:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise NotFoundError(f"conversation not found: {conversation_id}")
            updated = replace(current, **changes)  # type: ignore[arg-type]
            self._conversations[conversation_id] = updated
            return updated

    def set_state(self, *, conversation_id: str, state: ConversationState, now: datetime) -> ConversationRecord:
        return self._update(conversation_id, state=state, updated_at=now)

    def set_assignee(
        self, *, conversation_id: str, assigned_agent_id: str | None, now: datetime
    ) -> ConversationRecord:
        return self._update(conversation_id, assigned_agent_id=assigned_agent_id, updated_at=now)

    def set_pinned(self, *, conversation_id: str, pinned: bool, now: datetime) -> ConversationRecord:
        return self._update(conversation_id, pinned=pinned, updated_at=now)

    def set_display_name(
        self, *, conversation_id: str, display_name: str | None, now: datetime
    ) -> ConversationRecord:
        return self._update(conversation_id, display_name=display_name, updated_at=now)

    def reset_unread(self, *, conversation_id: str, now: datetime) -> ConversationRecord:
        return self._update(conversation_id, unread_count=0, updated_at=now)

    def record_inbound_activity(self, *, conversation_id: str, at: datetime) -> ConversationRecord:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise NotFoundError(f"conversation not found: {conversation_id}")
            updated = replace(
                current,
                unread_count=current.unread_count + 1,
                last_customer_message_at=_latest(current.last_customer_message_at, at),
                updated_at=max(current.updated_at, at),
            )
            self._conversations[conversation_id] = updated
            return updated

    def record_agent_activity(self, *, conversation_id: str, at: datetime) -> ConversationRecord:
        current = self._conversations.get(conversation_id)
        if current is None:
            raise NotFoundError(f"conversation not found: {conversation_id}")
        return self._update(conversation_id, last_agent_message_at=_latest(current.last_agent_message_at, at))

    def delivery_status_counts(
        self, *, campaign_id: str | None = None, since: datetime | None = None
    ) -> dict[str, int]:
        counts: Counter[str] = Counter()
        for message in list(self._messages.values()):
            if not message.is_public_outbound or message.delivery_status is None:
                continue
            if campaign_id is not None and message.campaign_id != campaign_id:
                continue
            if since is not None and message.created_at < since:
                continue
            counts[message.delivery_status] += 1
        return dict(counts)


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="open", index=True)
    assigned_agent_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    last_customer_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_agent_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_message_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _MessageRow(ConversationsBase):
    __tablename__ = "messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    body_text: Mapped[str] = mapped_column(Text, nullable=False)
    template_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    template_variables: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    delivery_status: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    agent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    retry_of_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _WebhookReceiptRow(ConversationsBase):
    __tablename__ = "webhook_receipts"

    receipt_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_WebhookReceiptRow))
                session.execute(delete(_MessageRow))
                session.execute(delete(_ConversationRow))

    def register_webhook_receipt(self, *, source: str, receipt_key: str) -> bool:
        dedup_key = f"{source}:{receipt_key}"
        with self._session() as session:
            with session.begin():
                row = session.get(_WebhookReceiptRow, dedup_key)
                if row is not None:
                    return True
                session.add(_WebhookReceiptRow(receipt_key=dedup_key, source=source, created_at=_now_utc()))
        return False

    def create_or_get_conversation(
        self, *, phone: str, display_name: str | None, now: datetime
    ) -> ConversationRecord:
        normalized = normalize_phone(phone)
        with self._session() as session:
            with session.begin():
                row = session.scalar(select(_ConversationRow).where(_ConversationRow.phone == normalized))
                if row is None:
                    row = _ConversationRow(
                        conversation_id=f"conv_{uuid4().hex[:16]}",
                        phone=normalized,
                        display_name=display_name,
                        state="open",
                        assigned_agent_id=None,
                        last_customer_message_at=None,
                        last_agent_message_at=None,
                        unread_count=0,
                        pinned=False,
                        last_message_preview=None,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                elif display_name and not row.display_name:
                    row.display_name = display_name
                    row.updated_at = now
                session.flush()
                return self._conversation_record(row)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def find_conversation_by_phone(self, phone: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ConversationRow).where(_ConversationRow.phone == normalize_phone(phone)))
            return self._conversation_record(row) if row is not None else None

    def list_conversations(self, *, limit: int, state: ConversationState | None = None) -> list[ConversationRecord]:
        query = select(_ConversationRow)
        if state is not None:
            query = query.where(_ConversationRow.state == state)
        query = query.order_by(_ConversationRow.pinned.desc(), _ConversationRow.updated_at.desc()).limit(limit)
        with self._session() as session:
            return [self._conversation_record(row) for row in session.scalars(query).all()]

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.created_at.desc())
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in reversed(rows)]

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        kind: MessageKind,
        body_text: str,
        created_at: datetime,
        template_name: str | None = None,
        template_variables: Sequence[str] = (),
        delivery_status: DeliveryStatus | None = None,
        provider_message_id: str | None = None,
        agent_id: str | None = None,
        retry_of_message_id: str | None = None,
        campaign_id: str | None = None,
        error_code: str | None = None,
    ) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                conversation = session.get(_ConversationRow, conversation_id)
                if conversation is None:
                    raise NotFoundError(f"conversation not found: {conversation_id}")
                message = _MessageRow(
                    message_id=f"msg_{uuid4().hex}",
                    conversation_id=conversation_id,
                    direction=direction,
                    kind=kind,
                    body_text=body_text,
                    template_name=template_name,
                    template_variables=list(template_variables),
                    delivery_status=delivery_status,
                    provider_message_id=provider_message_id,
                    agent_id=agent_id,
                    retry_of_message_id=retry_of_message_id,
                    campaign_id=campaign_id,
                    error_code=error_code,
                    created_at=created_at,
                )
                session.add(message)
                conversation.last_message_preview = _preview(body_text)
                conversation.updated_at = max(_coerce_utc(conversation.updated_at), _coerce_utc(created_at))
                session.flush()
                return self._message_record(message)

    def find_message(self, message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.get(_MessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.provider_message_id == provider_message_id))
            return self._message_record(row) if row is not None else None

    def set_delivery_status(
        self, *, message_id: str, delivery_status: DeliveryStatus, error_code: str | None = None
    ) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, message_id)
                if row is None:
                    raise NotFoundError(f"message not found: {message_id}")
                row.delivery_status = delivery_status
                if error_code:
                    row.error_code = error_code
                session.flush()
                return self._message_record(row)

    def _mutate(self, conversation_id: str, mutate: Callable[[_ConversationRow], None]) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    raise NotFoundError(f"conversation not found: {conversation_id}")
                mutate(row)
                session.flush()
                return self._conversation_record(row)

    def set_state(self, *, conversation_id: str, state: ConversationState, now: datetime) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.state = state
            row.updated_at = now

        return self._mutate(conversation_id, _apply)

    def set_assignee(
        self, *, conversation_id: str, assigned_agent_id: str | None, now: datetime
    ) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.assigned_agent_id = assigned_agent_id
            row.updated_at = now

        return self._mutate(conversation_id, _apply)

    def set_pinned(self, *, conversation_id: str, pinned: bool, now: datetime) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.pinned = pinned
            row.updated_at = now

        return self._mutate(conversation_id, _apply)

    def set_display_name(
        self, *, conversation_id: str, display_name: str | None, now: datetime
    ) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.display_name = display_name
            row.updated_at = now

        return self._mutate(conversation_id, _apply)

    def reset_unread(self, *, conversation_id: str, now: datetime) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.unread_count = 0
            row.updated_at = now

        return self._mutate(conversation_id, _apply)

    def record_inbound_activity(self, *, conversation_id: str, at: datetime) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.unread_count = (row.unread_count or 0) + 1
            row.last_customer_message_at = _latest(_coerce_utc(row.last_customer_message_at), at)
            row.updated_at = max(_coerce_utc(row.updated_at), at)

        return self._mutate(conversation_id, _apply)

    def record_agent_activity(self, *, conversation_id: str, at: datetime) -> ConversationRecord:
        def _apply(row: _ConversationRow) -> None:
            row.last_agent_message_at = _latest(_coerce_utc(row.last_agent_message_at), at)

        return self._mutate(conversation_id, _apply)

    def delivery_status_counts(
        self, *, campaign_id: str | None = None, since: datetime | None = None
    ) -> dict[str, int]:
        query = (
            select(_MessageRow.delivery_status, func.count())
            .where(_MessageRow.direction == "outbound")
            .where(_MessageRow.kind != "internal_note")
            .where(_MessageRow.delivery_status.is_not(None))
        )
        if campaign_id is not None:
            query = query.where(_MessageRow.campaign_id == campaign_id)
        if since is not None:
            query = query.where(_MessageRow.created_at >= since)
        query = query.group_by(_MessageRow.delivery_status)
        with self._session() as session:
            return {str(status): int(total) for status, total in session.execute(query).all()}

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            phone=row.phone,
            display_name=row.display_name,
            state=row.state,  # type: ignore[arg-type]
            assigned_agent_id=row.assigned_agent_id,
            last_customer_message_at=_coerce_utc(row.last_customer_message_at),
            last_agent_message_at=_coerce_utc(row.last_agent_message_at),
            unread_count=row.unread_count,
            pinned=bool(row.pinned),
            last_message_preview=row.last_message_preview,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            direction=row.direction,  # type: ignore[arg-type]
            kind=row.kind,  # type: ignore[arg-type]
            body_text=row.body_text,
            template_name=row.template_name,
            template_variables=tuple(row.template_variables or ()),
            delivery_status=row.delivery_status,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            agent_id=row.agent_id,
            retry_of_message_id=row.retry_of_message_id,
            campaign_id=row.campaign_id,
            error_code=row.error_code,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")


class ConversationService:
    """Conversation lifecycle: open, pending, resolved, plus assignment and unread bookkeeping."""

    def __init__(
        self,
        *,
        repository: ConversationRepository,
        directory: AgentDirectory,
        window: timedelta = SESSION_WINDOW,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._window = window
        self._clock = clock

    def reset(self) -> None:
        self._repository.reset()

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"conversation not found: {conversation_id}")
        return conversation

    def list_conversations(self, *, limit: int = 100, state: ConversationState | None = None) -> list[ConversationRecord]:
        return self._repository.list_conversations(limit=limit, state=state)

    def list_messages(self, conversation_id: str, *, limit: int = 500) -> list[MessageRecord]:
        self.get_conversation(conversation_id)
        return self._repository.list_messages(conversation_id, limit=limit)

    def session_window(self, conversation: ConversationRecord) -> SessionWindowDecision:
        return evaluate_session_window(conversation.last_customer_message_at, self._clock(), window=self._window)

    def ensure_conversation(self, *, phone: str, display_name: str | None = None) -> ConversationRecord:
        return self._repository.create_or_get_conversation(phone=phone, display_name=display_name, now=self._clock())

    def ingest_inbound(
        self,
        *,
        phone: str,
        body_text: str,
        provider_message_id: str,
        sent_at: datetime | None = None,
        display_name: str | None = None,
        source: str = "whatsapp",
    ) -> InboundResult:
        receipt_key = provider_message_id.strip()
        if not receipt_key:
            return InboundResult(accepted=False, deduped=False, conversation_id=None, message_id=None)

        deduped = self._repository.register_webhook_receipt(source=source, receipt_key=receipt_key)
        existing = self._repository.find_message_by_provider_message_id(receipt_key)
        if deduped and existing is not None:
            return InboundResult(
                accepted=True,
                deduped=True,
                conversation_id=existing.conversation_id,
                message_id=existing.message_id,
            )

        received_at = _coerce_utc(sent_at) or self._clock()
        conversation = self.ensure_conversation(phone=phone, display_name=display_name)
        message = self._repository.append_message(
            conversation_id=conversation.conversation_id,
            direction="inbound",
            kind="freeform",
            body_text=body_text,
            created_at=received_at,
            delivery_status="received",
            provider_message_id=receipt_key,
        )
        self._repository.record_inbound_activity(conversation_id=conversation.conversation_id, at=received_at)
        logger.info(
            "inbound message stored: conversation=%s message=%s from=%s",
            conversation.conversation_id,
            message.message_id,
            mask_phone(phone),
        )
        return InboundResult(
            accepted=True,
            deduped=False,
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
        )

    def note_outbound(self, message: MessageRecord) -> ConversationRecord:
        """Apply conversation side effects of an outbound message that was just appended."""
        conversation = self.get_conversation(message.conversation_id)
        if not message.is_public_outbound:
            return conversation
        if message.delivery_status != "failed":
            conversation = self._repository.record_agent_activity(
                conversation_id=conversation.conversation_id, at=message.created_at
            )
        if conversation.state == "resolved":
            conversation = self._repository.set_state(
                conversation_id=conversation.conversation_id, state="open", now=self._clock()
            )
            logger.info(
                "conversation reopened by outbound message: conversation=%s message=%s",
                conversation.conversation_id,
                message.message_id,
            )
        return conversation

    def resolve(self, conversation_id: str, *, agent: Agent) -> ConversationRecord:
        require_write_access(agent, "resolve conversations")
        conversation = self.get_conversation(conversation_id)
        if conversation.state == "resolved":
            return conversation
        updated = self._repository.set_state(conversation_id=conversation_id, state="resolved", now=self._clock())
        logger.info("conversation resolved: conversation=%s agent=%s", conversation_id, agent.agent_id)
        return updated

    def reopen(self, conversation_id: str, *, agent: Agent) -> ConversationRecord:
        require_write_access(agent, "reopen conversations")
        conversation = self.get_conversation(conversation_id)
        if conversation.state != "resolved":
            return conversation
        if not agent.is_admin:
            raise PermissionDeniedError("only admins can reopen a resolved conversation")
        updated = self._repository.set_state(conversation_id=conversation_id, state="open", now=self._clock())
        logger.info("conversation reopened: conversation=%s agent=%s", conversation_id, agent.agent_id)
        return updated

    def set_state(self, conversation_id: str, state: str, *, agent: Agent) -> ConversationRecord:
        normalized = state.strip().lower()
        if normalized not in CONVERSATION_STATES:
            raise ValidationError(f"unknown conversation state: {state}")
        if normalized == "resolved":
            return self.resolve(conversation_id, agent=agent)

        require_write_access(agent, "change conversation state")
        conversation = self.get_conversation(conversation_id)
        if conversation.state == normalized:
            return conversation
        if conversation.state == "resolved":
            if normalized == "open":
                return self.reopen(conversation_id, agent=agent)
            raise ValidationError("a resolved conversation must be reopened before it can be set to pending")
        return self._repository.set_state(
            conversation_id=conversation_id,
            state=normalized,  # type: ignore[arg-type]
            now=self._clock(),
        )

    def assign(self, conversation_id: str, assignee_id: str | None, *, agent: Agent) -> ConversationRecord:
        require_write_access(agent, "assign conversations")
        conversation = self.get_conversation(conversation_id)
        normalized = assignee_id.strip() if assignee_id else None
        if normalized and self._directory.get(normalized) is None:
            raise ValidationError(f"unknown agent: {normalized}")
        if conversation.assigned_agent_id == normalized:
            return conversation
        return self._repository.set_assignee(
            conversation_id=conversation_id, assigned_agent_id=normalized, now=self._clock()
        )

    def mark_read(self, conversation_id: str, *, agent: Agent) -> ConversationRecord:
        conversation = self.get_conversation(conversation_id)
        if conversation.unread_count == 0:
            return conversation
        return self._repository.reset_unread(conversation_id=conversation_id, now=self._clock())

    def set_pinned(self, conversation_id: str, pinned: bool, *, agent: Agent) -> ConversationRecord:
        require_write_access(agent, "pin conversations")
        conversation = self.get_conversation(conversation_id)
        if conversation.pinned == pinned:
            return conversation
        return self._repository.set_pinned(conversation_id=conversation_id, pinned=pinned, now=self._clock())

    def list_contacts(self, *, limit: int = 500) -> list[ConversationRecord]:
        return self._repository.list_conversations(limit=limit)

    def save_contact(
        self, *, phone: str, display_name: str | None, agent: Agent
    ) -> tuple[ConversationRecord, bool]:
        """Start a conversation for a new phone, or rename the one that already exists.

        Returns the conversation and whether it was created.
        """
        require_write_access(agent, "manage contacts")
        existing = self._repository.find_conversation_by_phone(phone)
        if existing is None:
            created = self.ensure_conversation(phone=phone, display_name=display_name)
            logger.info(
                "contact created: conversation=%s phone=%s agent=%s",
                created.conversation_id,
                mask_phone(created.phone),
                agent.agent_id,
            )
            return created, True
        if display_name is None or display_name == existing.display_name:
            return existing, False
        renamed = self._repository.set_display_name(
            conversation_id=existing.conversation_id, display_name=display_name, now=self._clock()
        )
        return renamed, False

    def rename_contact(self, conversation_id: str, display_name: str | None, *, agent: Agent) -> ConversationRecord:
        require_write_access(agent, "manage contacts")
        conversation = self.get_conversation(conversation_id)
        normalized = (display_name or "").strip() or None
        if conversation.display_name == normalized:
            return conversation
        return self._repository.set_display_name(
            conversation_id=conversation_id, display_name=normalized, now=self._clock()
        )

    def apply_action(
        self,
        action: ConversationMutationAction,
        conversation_id: str,
        value: str | bool | None,
        *,
        agent: Agent,
    ) -> ConversationRecord:
        if action == "assign":
            if isinstance(value, bool):
                raise ValidationError("assign expects an agent id or null")
            return self.assign(conversation_id, value, agent=agent)
        if action == "status":
            if not isinstance(value, str):
                raise ValidationError("status expects one of open, pending, resolved")
            return self.set_state(conversation_id, value, agent=agent)
        if action == "unread":
            return self.mark_read(conversation_id, agent=agent)
        if action == "pin":
            return self.set_pinned(conversation_id, _as_flag(value), agent=agent)
        raise ValidationError(f"unsupported action: {action}")


def _as_flag(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    raise ValidationError("pin expects a boolean value")


def to_conversation_item(record: ConversationRecord) -> ConversationItem:
    return ConversationItem(
        conversation_id=record.conversation_id,
        phone_masked=mask_phone(record.phone),
        display_name=record.display_name,
        state=record.state,
        assigned_agent_id=record.assigned_agent_id,
        unread_count=record.unread_count,
        pinned=record.pinned,
        last_message_preview=record.last_message_preview,
        last_customer_message_at=record.last_customer_message_at,
        last_agent_message_at=record.last_agent_message_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def to_contact_item(record: ConversationRecord) -> ContactItem:
    return ContactItem(
        conversation_id=record.conversation_id,
        name=record.display_name,
        phone=record.phone,
        state=record.state,
        last_activity_at=record.updated_at,
    )


def to_message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        message_id=record.message_id,
        conversation_id=record.conversation_id,
        direction=record.direction,
        kind=record.kind,
        body_text=record.body_text,
        template_name=record.template_name,
        template_variables=list(record.template_variables),
        delivery_status=record.delivery_status,
        provider_message_id=record.provider_message_id,
        agent_id=record.agent_id,
        retry_of_message_id=record.retry_of_message_id,
        campaign_id=record.campaign_id,
        error_code=record.error_code,
        created_at=record.created_at,
    )


def to_window_item(decision: SessionWindowDecision) -> SessionWindowItem:
    return SessionWindowItem(open=decision.open, reason=decision.reason, expires_at=decision.expires_at)
