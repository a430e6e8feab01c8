"""Append-only ledger of processed business events.

Callers check ``has_processed`` before dispatching and then ``record`` the
outcome. The pair is best-effort at-most-once: two deliveries of the same
event arriving before either is recorded may both dispatch. The SQL backend
narrows that race with a partial unique index on ``(idempotency_key,
event_type)`` for SUCCESS rows, so the losing writer gets a
``DuplicateEventError`` instead of a second SUCCESS entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Index, Integer, String, Text, create_engine, delete, exists, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import DuplicateEventError
from .models import LedgerOutcome


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: int
    idempotency_key: str | None
    event_type: str
    outcome: LedgerOutcome
    recipient: str | None
    detail: str | None
    error: str | None
    processed_at: datetime


class IdempotencyLedger(Protocol):
    def reset(self) -> None: ...

    def has_processed(self, idempotency_key: str, event_type: str) -> bool: ...

    def record(
        self,
        idempotency_key: str | None,
        event_type: str,
        outcome: LedgerOutcome,
        *,
        recipient: str | None = None,
        detail: str | None = None,
        error: str | None = None,
        processed_at: datetime | None = None,
    ) -> LedgerEntry: ...

    def list_entries(self, *, limit: int, event_type: str | None = None) -> list[LedgerEntry]: ...

    def trim(self, *, older_than: datetime) -> int: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryIdempotencyLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._entries: list[LedgerEntry] = []
        self._succeeded: set[tuple[str, str]] = set()

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._entries.clear()
            self._succeeded.clear()

    def has_processed(self, idempotency_key: str, event_type: str) -> bool:
        with self._lock:
            return (idempotency_key, event_type) in self._succeeded

    def record(
        self,
        idempotency_key: str | None,
        event_type: str,
        outcome: LedgerOutcome,
        *,
        recipient: str | None = None,
        detail: str | None = None,
        error: str | None = None,
        processed_at: datetime | None = None,
    ) -> LedgerEntry:
        with self._lock:
            if outcome == "SUCCESS" and idempotency_key is not None:
                dedup_key = (idempotency_key, event_type)
                if dedup_key in self._succeeded:
                    raise DuplicateEventError(idempotency_key, event_type)
                self._succeeded.add(dedup_key)
            entry = LedgerEntry(
                entry_id=next(self._counter),
                idempotency_key=idempotency_key,
                event_type=event_type,
                outcome=outcome,
                recipient=recipient,
                detail=detail,
                error=error,
                processed_at=_coerce_utc(processed_at or _now_utc()),
            )
            self._entries.append(entry)
            return entry

    def list_entries(self, *, limit: int, event_type: str | None = None) -> list[LedgerEntry]:
        with self._lock:
            selected = [entry for entry in self._entries if event_type is None or entry.event_type == event_type]
        selected.sort(key=lambda value: (value.processed_at, value.entry_id), reverse=True)
        return selected[:limit]

    def trim(self, *, older_than: datetime) -> int:
        cutoff = _coerce_utc(older_than)
        with self._lock:
            kept = [
                entry
                for entry in self._entries
                if entry.outcome == "SUCCESS" or entry.processed_at >= cutoff
            ]
            removed = len(self._entries) - len(kept)
            self._entries = kept
            return removed


class LedgerBase(DeclarativeBase):
    pass


class _LedgerRow(LedgerBase):
    __tablename__ = "idempotency_ledger"
    __table_args__ = (
        Index(
            "uq_idempotency_ledger_success",
            "idempotency_key",
            "event_type",
            unique=True,
            postgresql_where=text("outcome = 'SUCCESS'"),
            sqlite_where=text("outcome = 'SUCCESS'"),
        ),
    )

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyIdempotencyLedger:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for LEDGER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_LedgerRow))

    def has_processed(self, idempotency_key: str, event_type: str) -> bool:
        with self._session() as session:
            return bool(
                session.scalar(
                    select(
                        exists()
                        .where(_LedgerRow.idempotency_key == idempotency_key)
                        .where(_LedgerRow.event_type == event_type)
                        .where(_LedgerRow.outcome == "SUCCESS")
                    )
                )
            )

    def record(
        self,
        idempotency_key: str | None,
        event_type: str,
        outcome: LedgerOutcome,
        *,
        recipient: str | None = None,
        detail: str | None = None,
        error: str | None = None,
        processed_at: datetime | None = None,
    ) -> LedgerEntry:
        row = _LedgerRow(
            idempotency_key=idempotency_key,
            event_type=event_type,
            outcome=outcome,
            recipient=recipient,
            detail=detail,
            error=error,
            processed_at=_coerce_utc(processed_at or _now_utc()),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                    session.flush()
                    return self._entry(row)
        except IntegrityError as exc:
            if outcome == "SUCCESS" and idempotency_key is not None:
                raise DuplicateEventError(idempotency_key, event_type) from exc
            raise

    def list_entries(self, *, limit: int, event_type: str | None = None) -> list[LedgerEntry]:
        query = select(_LedgerRow)
        if event_type is not None:
            query = query.where(_LedgerRow.event_type == event_type)
        query = query.order_by(_LedgerRow.processed_at.desc(), _LedgerRow.entry_id.desc()).limit(limit)
        with self._session() as session:
            return [self._entry(row) for row in session.scalars(query).all()]

    def trim(self, *, older_than: datetime) -> int:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_LedgerRow)
                    .where(_LedgerRow.outcome != "SUCCESS")
                    .where(_LedgerRow.processed_at < _coerce_utc(older_than))
                )
                return int(result.rowcount or 0)

    @staticmethod
    def _entry(row: _LedgerRow) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row.entry_id,
            idempotency_key=row.idempotency_key,
            event_type=row.event_type,
            outcome=row.outcome,  # type: ignore[arg-type]
            recipient=row.recipient,
            detail=row.detail,
            error=row.error,
            processed_at=_coerce_utc(row.processed_at),
        )


def create_idempotency_ledger(*, backend: str, database_url: str) -> IdempotencyLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyIdempotencyLedger(database_url)
    if normalized == "inmemory":
        return InMemoryIdempotencyLedger()
    raise RuntimeError(f"unsupported LEDGER_STORE_BACKEND: {backend}")
