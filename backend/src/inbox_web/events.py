from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Mapping, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError

from .conversations import ConversationService
from .delivery import MessageDeliveryTracker
from .errors import DuplicateEventError
from .idempotency import IdempotencyLedger, LedgerEntry
from .models import (
    BookingConfirmedEvent,
    EventContact,
    LedgerOutcome,
    PaymentPendingEvent,
    PaymentReceivedEvent,
    TripReminderEvent,
)
from .whatsapp import mask_phone

logger = logging.getLogger(__name__)

EventModelT = TypeVar("EventModelT", bound=BaseModel)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_event_type(value: str) -> str:
    return value.strip().lower().replace("-", "_")


def _amount(value: float) -> str:
    return f"{value:.2f}"


@dataclass(frozen=True)
class EventDefinition(Generic[EventModelT]):
    event_type: str
    schema: type[EventModelT]
    template_name: str
    contact: Callable[[EventModelT], EventContact]
    variables: Callable[[EventModelT], list[str]]
    key_field: str | None = None
    key: Callable[[EventModelT], str | None] | None = None

    def idempotency_key(self, event: EventModelT) -> str | None:
        if self.key is None:
            return None
        return self.key(event)


def _booking_variables(event: BookingConfirmedEvent) -> list[str]:
    return [
        event.contact.name,
        event.trip.name,
        event.trip.destination,
        event.trip.booking_id,
        event.trip.start_date,
    ]


def _pending_variables(event: PaymentPendingEvent) -> list[str]:
    payment = event.payment
    return [_amount(payment.amount), payment.currency, payment.invoice_id, payment.due_date]


def _received_variables(event: PaymentReceivedEvent) -> list[str]:
    payment = event.payment
    return [_amount(payment.amount), payment.currency, payment.receipt_id or "N/A"]


def _trip_reminder_variables(event: TripReminderEvent) -> list[str]:
    return [event.trip.name, event.trip.destination, event.trip.start_date]


DEFAULT_EVENT_DEFINITIONS: tuple[EventDefinition[Any], ...] = (
    EventDefinition(
        event_type="booking_confirmed",
        schema=BookingConfirmedEvent,
        template_name="trip_confirmation",
        contact=lambda event: event.contact,
        variables=_booking_variables,
        key_field="bookingId",
        key=lambda event: event.trip.booking_id,
    ),
    EventDefinition(
        event_type="payment_pending",
        schema=PaymentPendingEvent,
        template_name="payment_pending",
        contact=lambda event: event.contact,
        variables=_pending_variables,
        key_field="invoiceId",
        key=lambda event: event.payment.invoice_id,
    ),
    EventDefinition(
        event_type="payment_reminder",
        schema=PaymentPendingEvent,
        template_name="payment_reminder",
        contact=lambda event: event.contact,
        variables=_pending_variables,
        key_field="invoiceId",
        key=lambda event: event.payment.invoice_id,
    ),
    EventDefinition(
        event_type="payment_received",
        schema=PaymentReceivedEvent,
        template_name="payment_received",
        contact=lambda event: event.contact,
        variables=_received_variables,
        key_field="receiptId",
        key=lambda event: event.payment.receipt_id,
    ),
    EventDefinition(
        event_type="trip_reminder",
        schema=TripReminderEvent,
        template_name="trip_reminder",
        contact=lambda event: event.contact,
        variables=_trip_reminder_variables,
    ),
)


@dataclass(frozen=True)
class EventIntakeResult:
    accepted: bool
    status_code: int
    message: str
    idempotency_key: str | None = None
    outcome: LedgerOutcome | None = None


def _missing_fields(exc: PayloadValidationError) -> str:
    fields = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        if location and location not in fields:
            fields.append(location)
    return ", ".join(fields) or "payload"


class EventIntakeService:
    """Validates business events, deduplicates them against the ledger and dispatches a template message."""

    def __init__(
        self,
        *,
        ledger: IdempotencyLedger,
        conversations: ConversationService,
        tracker: MessageDeliveryTracker,
        definitions: tuple[EventDefinition[Any], ...] = DEFAULT_EVENT_DEFINITIONS,
        retention: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._ledger = ledger
        self._conversations = conversations
        self._tracker = tracker
        self._definitions = {definition.event_type: definition for definition in definitions}
        self._retention = retention
        self._clock = clock

    def supported_event_types(self) -> list[str]:
        return sorted(self._definitions)

    def handle_event(self, event_type: str, payload: Mapping[str, Any] | Any) -> EventIntakeResult:
        normalized = normalize_event_type(event_type)
        definition = self._definitions.get(normalized)
        if definition is None:
            return EventIntakeResult(accepted=False, status_code=404, message=f"Unknown event type: {event_type}")

        try:
            event = definition.schema.model_validate(payload)
        except PayloadValidationError as exc:
            logger.info("event rejected: event_type=%s fields=%s", normalized, _missing_fields(exc))
            return EventIntakeResult(
                accepted=False,
                status_code=400,
                message=f"Validation Error: Missing or invalid fields ({_missing_fields(exc)})",
            )

        key: str | None = None
        try:
            key = definition.idempotency_key(event)
            contact = definition.contact(event)
            recipient = mask_phone(contact.phone)

            if key is not None and self._ledger.has_processed(key, normalized):
                return self._skip(definition, key, recipient)

            conversation = self._conversations.ensure_conversation(phone=contact.phone, display_name=contact.name)
            message = self._tracker.send(
                conversation.conversation_id,
                kind="template",
                template_name=definition.template_name,
                variables=definition.variables(event),
            )

            outcome: LedgerOutcome = "FAILURE" if message.delivery_status == "failed" else "SUCCESS"
            try:
                self._ledger.record(
                    key,
                    normalized,
                    outcome,
                    recipient=recipient,
                    detail=f"message={message.message_id} template={definition.template_name}",
                    error=message.error_code if outcome == "FAILURE" else None,
                    processed_at=self._clock(),
                )
            except DuplicateEventError:
                return self._skip(definition, key or "", recipient)

            if outcome == "FAILURE":
                logger.warning(
                    "event processed with delivery failure: event_type=%s key=%s recipient=%s error_code=%s",
                    normalized,
                    key,
                    recipient,
                    message.error_code,
                )
            else:
                logger.info("event processed: event_type=%s key=%s recipient=%s", normalized, key, recipient)
            return EventIntakeResult(
                accepted=True,
                status_code=200,
                message=f'Event "{normalized}" processed successfully.',
                idempotency_key=key,
                outcome=outcome,
            )
        except Exception:
            logger.exception("event processing failed: event_type=%s key=%s", normalized, key)
            return EventIntakeResult(
                accepted=False,
                status_code=500,
                message="An internal server error occurred.",
                idempotency_key=key,
            )

    def _skip(self, definition: EventDefinition[Any], key: str, recipient: str) -> EventIntakeResult:
        self._ledger.record(
            key,
            definition.event_type,
            "SKIPPED",
            recipient=recipient,
            detail="duplicate delivery",
            processed_at=self._clock(),
        )
        logger.info("duplicate event skipped: event_type=%s key=%s", definition.event_type, key)
        return EventIntakeResult(
            accepted=True,
            status_code=200,
            message=f"Duplicate event: {definition.key_field} {key}. Already processed.",
            idempotency_key=key,
            outcome="SKIPPED",
        )

    def audit_log(self, *, limit: int = 100, event_type: str | None = None) -> list[LedgerEntry]:
        normalized = normalize_event_type(event_type) if event_type else None
        return self._ledger.list_entries(limit=limit, event_type=normalized)

    def trim_ledger(self, *, now: datetime | None = None) -> tuple[int, datetime]:
        cutoff = (now or self._clock()) - self._retention
        deleted = self._ledger.trim(older_than=cutoff)
        logger.info("idempotency ledger trimmed: deleted=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted, cutoff
