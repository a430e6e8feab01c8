from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .errors import WindowClosedError

SESSION_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class SessionWindowDecision:
    open: bool
    reason: str
    expires_at: datetime | None = None


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def evaluate_session_window(
    last_customer_message_at: datetime | None,
    now: datetime,
    *,
    window: timedelta = SESSION_WINDOW,
) -> SessionWindowDecision:
    """Decide whether a freeform reply may be sent right now.

    The window is half-open: a reply sent exactly ``window`` after the last
    inbound message is already outside it.
    """
    if last_customer_message_at is None:
        return SessionWindowDecision(open=False, reason="no_inbound_message")

    last_inbound = _coerce_utc(last_customer_message_at)
    expires_at = last_inbound + window
    if _coerce_utc(now) < expires_at:
        return SessionWindowDecision(open=True, reason="window_open", expires_at=expires_at)
    return SessionWindowDecision(open=False, reason="window_expired", expires_at=expires_at)


def is_window_open(
    last_customer_message_at: datetime | None,
    now: datetime,
    *,
    window: timedelta = SESSION_WINDOW,
) -> bool:
    return evaluate_session_window(last_customer_message_at, now, window=window).open


def require_freeform_allowed(
    conversation_id: str,
    last_customer_message_at: datetime | None,
    now: datetime,
    *,
    window: timedelta = SESSION_WINDOW,
) -> SessionWindowDecision:
    decision = evaluate_session_window(last_customer_message_at, now, window=window)
    if not decision.open:
        raise WindowClosedError(conversation_id, decision.reason)
    return decision
