from __future__ import annotations

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ConversationState = Literal["open", "pending", "resolved"]
MessageDirection = Literal["inbound", "outbound"]
MessageKind = Literal["freeform", "template", "internal_note"]
DeliveryStatus = Literal["sent", "delivered", "read", "failed", "received"]
AgentRole = Literal["admin", "support", "marketing"]
LedgerOutcome = Literal["SUCCESS", "FAILURE", "SKIPPED"]
EventType = Literal[
    "booking_confirmed",
    "payment_pending",
    "payment_reminder",
    "payment_received",
    "trip_reminder",
]
ConversationMutationAction = Literal["assign", "status", "unread", "pin"]
ReceiptOutcome = Literal["applied", "ignored", "unmatched"]
CampaignStatus = Literal["sending", "completed"]

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_e164(value: str) -> str:
    normalized = "".join(str(value).split())
    if not E164_RE.match(normalized):
        raise ValueError("phone must be in E.164 format, e.g. +15551234567")
    return normalized


def _required_text(value: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError("text fields cannot be blank")
    return normalized


# ---------------------------------------------------------------------------
# Inbound business events
# ---------------------------------------------------------------------------


class _EventModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EventContact(_EventModel):
    phone: str
    name: str | None = Field(default=None, max_length=256)
    email: str | None = Field(default=None, max_length=256)

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return normalize_e164(value)

    @field_validator("name", "email")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class NamedEventContact(EventContact):
    name: str = Field(min_length=1, max_length=256)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _required_text(value)


class BookingTrip(_EventModel):
    booking_id: str = Field(alias="bookingId", min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    destination: str = Field(min_length=1, max_length=256)
    start_date: str = Field(alias="startDate", min_length=1, max_length=64)

    @field_validator("booking_id", "name", "destination", "start_date")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _required_text(value)


class BookingConfirmedEvent(_EventModel):
    contact: NamedEventContact
    trip: BookingTrip


class PendingPayment(_EventModel):
    invoice_id: str = Field(alias="invoiceId", min_length=1, max_length=128)
    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    due_date: str = Field(alias="dueDate", min_length=1, max_length=64)

    @field_validator("invoice_id", "due_date")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _required_text(value)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return value.strip().upper()


class PaymentPendingEvent(_EventModel):
    contact: EventContact
    payment: PendingPayment


class ReceivedPayment(_EventModel):
    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    receipt_id: str | None = Field(default=None, alias="receiptId", max_length=128)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("receipt_id")
    @classmethod
    def _normalize_receipt(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class PaymentReceivedEvent(_EventModel):
    contact: EventContact
    payment: ReceivedPayment


class ReminderTrip(_EventModel):
    name: str = Field(min_length=1, max_length=256)
    start_date: str = Field(alias="startDate", min_length=1, max_length=64)
    destination: str = Field(min_length=1, max_length=256)

    @field_validator("name", "start_date", "destination")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _required_text(value)


class TripReminderEvent(_EventModel):
    contact: EventContact
    trip: ReminderTrip


class EventIntakeResponse(BaseModel):
    success: bool
    message: str


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------


class SessionWindowItem(BaseModel):
    open: bool
    reason: str
    expires_at: datetime | None = None


class ConversationItem(BaseModel):
    conversation_id: str
    phone_masked: str
    display_name: str | None = None
    state: ConversationState
    assigned_agent_id: str | None = None
    unread_count: int
    pinned: bool
    last_message_preview: str | None = None
    last_customer_message_at: datetime | None = None
    last_agent_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]


class MessageItem(BaseModel):
    message_id: str
    conversation_id: str
    direction: MessageDirection
    kind: MessageKind
    body_text: str
    template_name: str | None = None
    template_variables: list[str] = Field(default_factory=list)
    delivery_status: DeliveryStatus | None = None
    provider_message_id: str | None = None
    agent_id: str | None = None
    retry_of_message_id: str | None = None
    campaign_id: str | None = None
    error_code: str | None = None
    created_at: datetime


class ConversationDetailResponse(BaseModel):
    conversation: ConversationItem
    window: SessionWindowItem
    messages: list[MessageItem]


class SendMessageRequest(BaseModel):
    kind: MessageKind = "freeform"
    content: str | None = Field(default=None, max_length=4096)
    template_name: str | None = Field(default=None, min_length=1, max_length=128)
    variables: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _validate_shape(self) -> SendMessageRequest:
        if self.kind == "template":
            if not self.template_name:
                raise ValueError("template_name is required for template messages")
        elif not self.content:
            raise ValueError("content is required for freeform messages and internal notes")
        return self


class SendMessageResponse(BaseModel):
    message_id: str
    conversation_id: str
    kind: MessageKind
    delivery_status: DeliveryStatus | None = None
    provider_message_id: str | None = None
    retry_of_message_id: str | None = None
    error_code: str | None = None


class ConversationUpdateRequest(BaseModel):
    action: ConversationMutationAction
    conversation_id: str = Field(alias="conversationId", min_length=1, max_length=64)
    value: str | bool | None = None

    model_config = ConfigDict(populate_by_name=True)


class ConversationUpdateResponse(BaseModel):
    success: bool
    conversation: ConversationItem


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def _optional_name(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class ContactItem(BaseModel):
    conversation_id: str
    name: str | None = None
    phone: str
    state: ConversationState
    last_activity_at: datetime


class ContactListResponse(BaseModel):
    items: list[ContactItem]


class ContactCreateRequest(BaseModel):
    phone: str = Field(min_length=1, max_length=32)
    name: str | None = Field(default=None, max_length=256)

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return normalize_e164(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str | None) -> str | None:
        return _optional_name(value)


class ContactUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=256)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str | None) -> str | None:
        return _optional_name(value)


class ContactSaveResponse(BaseModel):
    success: bool
    created: bool
    contact: ContactItem


# ---------------------------------------------------------------------------
# Webhook, audit log, stats
# ---------------------------------------------------------------------------


class WebhookProcessResponse(BaseModel):
    accepted: bool
    inbound_count: int = 0
    deduped_count: int = 0
    status_applied: int = 0
    status_ignored: int = 0
    status_unmatched: int = 0
    failed_count: int = 0


class LedgerEntryItem(BaseModel):
    entry_id: int
    idempotency_key: str | None = None
    event_type: str
    outcome: LedgerOutcome
    recipient: str | None = None
    detail: str | None = None
    error: str | None = None
    processed_at: datetime


class LedgerListResponse(BaseModel):
    items: list[LedgerEntryItem]


class LedgerTrimResponse(BaseModel):
    deleted_count: int
    cutoff: datetime


class UsageStatsResponse(BaseModel):
    total_outbound: int
    last_24h: int
    by_status: dict[str, int]


class TemplateItem(BaseModel):
    name: str
    category: str
    language: str
    body: str
    parameter_count: int


class TemplateListResponse(BaseModel):
    items: list[TemplateItem]


class TemplateSyncResponse(BaseModel):
    success: bool
    count: int


class AgentItem(BaseModel):
    agent_id: str
    display_name: str
    role: AgentRole
    read_only: bool


class TeamResponse(BaseModel):
    items: list[AgentItem]


class CampaignCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    template_name: str = Field(min_length=1, max_length=128)
    variables: list[str] = Field(default_factory=list, max_length=20)
    conversation_ids: list[str] | None = Field(default=None, max_length=5000)

    @field_validator("name", "template_name")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _required_text(value)


class CampaignItem(BaseModel):
    campaign_id: str
    name: str
    template_name: str
    variables: list[str]
    status: CampaignStatus
    audience_count: int
    sent_count: int
    failed_count: int
    created_at: datetime
    completed_at: datetime | None = None


class CampaignListResponse(BaseModel):
    items: list[CampaignItem]
