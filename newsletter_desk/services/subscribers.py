"""Persistent subscriber store.

All status changes go through ``SubscriberStore``; it is the single source of
truth for ingestion dedup, the review loop, the HTTP API and the sender. The
store upholds ``approved_at is None`` iff ``status == pending`` on every write.
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from newsletter_desk.core.errors import DuplicateSubscriberError, SubscriberNotFoundError
from newsletter_desk.db.models import SubscriberRecord, SubscriberStatus
from newsletter_desk.db.session import SessionLocal, create_session_factory, init_db, session_scope
from newsletter_desk.utils.datetime import ensure_utc, utcnow
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Subscriber(BaseModel):
    """Immutable snapshot of one subscriber row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int | None = None
    email: str
    status: SubscriberStatus = SubscriberStatus.PENDING
    subscribed_at: datetime = Field(default_factory=utcnow)
    approved_at: datetime | None = None
    source_email_id: str | None = None
    notes: str | None = None

    @field_validator("subscribed_at", "approved_at")
    @classmethod
    def as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @classmethod
    def new(cls, email: str, source_email_id: str | None = None, notes: str | None = None) -> "Subscriber":
        return cls(email=normalize_email(email), source_email_id=source_email_id, notes=notes)


class SubscriberStore:
    """CRUD and status transitions over the ``subscribers`` table.

    Every operation opens its own short session, so a store can be shared by
    sequential CLI calls and concurrent HTTP handlers alike.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._factory = session_factory

    @classmethod
    def open(cls, database_url: str) -> "SubscriberStore":
        return cls(create_session_factory(database_url))

    def ensure_schema(self) -> None:
        init_db(self._factory.kw["bind"])

    def add(self, subscriber: Subscriber) -> int:
        """Insert and return the new id; raise ``DuplicateSubscriberError`` on a known email."""

        email = normalize_email(subscriber.email)
        status = subscriber.status
        approved_at = None
        if status is not SubscriberStatus.PENDING:
            approved_at = ensure_utc(subscriber.approved_at) or utcnow()

        with session_scope(self._factory) as db:
            if db.query(SubscriberRecord.id).filter(SubscriberRecord.email == email).first():
                raise DuplicateSubscriberError(email)
            record = SubscriberRecord(
                email=email,
                status=status.value,
                subscribed_at=ensure_utc(subscriber.subscribed_at),
                approved_at=approved_at,
                source_email_id=subscriber.source_email_id,
                notes=subscriber.notes,
            )
            db.add(record)
            try:
                db.flush()
            except IntegrityError as exc:
                raise DuplicateSubscriberError(email) from exc
            logger.debug("Inserted subscriber %s as %s", email, status.value)
            return record.id

    def get(self, subscriber_id: int) -> Subscriber | None:
        with session_scope(self._factory) as db:
            record = db.get(SubscriberRecord, subscriber_id)
            return Subscriber.model_validate(record) if record is not None else None

    def get_by_email(self, email: str) -> Subscriber | None:
        with session_scope(self._factory) as db:
            record = (
                db.query(SubscriberRecord)
                .filter(SubscriberRecord.email == normalize_email(email))
                .first()
            )
            return Subscriber.model_validate(record) if record is not None else None

    def exists(self, email: str) -> bool:
        with session_scope(self._factory) as db:
            found = (
                db.query(SubscriberRecord.id)
                .filter(SubscriberRecord.email == normalize_email(email))
                .first()
            )
            return found is not None

    def list(self, status: SubscriberStatus | None = None) -> list[Subscriber]:
        """Newest ``subscribed_at`` first; ties fall back to the newest id."""

        with session_scope(self._factory) as db:
            query = db.query(SubscriberRecord)
            if status is not None:
                query = query.filter(SubscriberRecord.status == status.value)
            records = query.order_by(
                SubscriberRecord.subscribed_at.desc(), SubscriberRecord.id.desc()
            ).all()
            return [Subscriber.model_validate(record) for record in records]

    def count(self, status: SubscriberStatus | None = None) -> int:
        with session_scope(self._factory) as db:
            query = db.query(func.count(SubscriberRecord.id))
            if status is not None:
                query = query.filter(SubscriberRecord.status == status.value)
            return int(query.scalar() or 0)

    def counts_by_status(self) -> dict[SubscriberStatus, int]:
        counts = {status: 0 for status in SubscriberStatus}
        with session_scope(self._factory) as db:
            rows = (
                db.query(SubscriberRecord.status, func.count(SubscriberRecord.id))
                .group_by(SubscriberRecord.status)
                .all()
            )
        for status, total in rows:
            counts[SubscriberStatus(status)] = int(total)
        return counts

    def update_status(self, subscriber_id: int, status: SubscriberStatus) -> Subscriber:
        """Move a subscriber to ``status`` and stamp ``approved_at`` accordingly.

        Entering Approved or Declined stamps the current time; re-applying the
        same reviewed status keeps the existing stamp. Returning to Pending
        clears it.
        """

        with session_scope(self._factory) as db:
            record = db.get(SubscriberRecord, subscriber_id)
            if record is None:
                raise SubscriberNotFoundError(subscriber_id)
            previous = record.status
            record.status = status.value
            if status is SubscriberStatus.PENDING:
                record.approved_at = None
            elif previous != status.value or record.approved_at is None:
                record.approved_at = utcnow()
            db.flush()
            logger.info("Subscriber %s: %s -> %s", record.email, previous, status.value)
            return Subscriber.model_validate(record)

    def update_notes(self, subscriber_id: int, notes: str | None) -> Subscriber:
        with session_scope(self._factory) as db:
            record = db.get(SubscriberRecord, subscriber_id)
            if record is None:
                raise SubscriberNotFoundError(subscriber_id)
            record.notes = notes
            db.flush()
            return Subscriber.model_validate(record)

    def remove(self, email: str) -> bool:
        """Delete permanently; True when a row was removed."""

        with session_scope(self._factory) as db:
            deleted = (
                db.query(SubscriberRecord)
                .filter(SubscriberRecord.email == normalize_email(email))
                .delete(synchronize_session=False)
            )
        if deleted:
            logger.info("Removed subscriber %s", normalize_email(email))
        return deleted > 0
