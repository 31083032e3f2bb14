"""
Event Log Repository - append-only source of truth

Every decision of the pipeline (due, allowed, suppressed, triggered, prompt
transitions, digest outcomes) is written here; stats and streaks are
recomputed from these rows, never from mutable state.
"""
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from followup.domain.events import EventSource, EventType, validate_payload
from followup.infrastructure.db.models import EventLog


def _type_values(event_types: Iterable[EventType | str] | None) -> list[str] | None:
    if not event_types:
        return None
    return [t.value if isinstance(t, EventType) else t for t in event_types]


class EventLogRepository:
    """
    Repository for the event log
    """

    def __init__(self, db: Session):
        self.db = db

    def append_event(
        self,
        user_id: int,
        event_type: EventType | str,
        payload: dict[str, Any] | None = None,
        occurred_at: Optional[datetime] = None,
        reminder_id: Optional[int] = None,
        contact_id: Optional[int] = None,
        source: EventSource | str = EventSource.APP,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """
        Validate and append an event.

        Args:
            user_id: owner of the event
            event_type: one of EventType
            payload: event data; validated against the schema for event_type
            occurred_at: when it happened (default: now, UTC)
            reminder_id / contact_id: optional references
            source: app | scheduler | system | external
            idempotency_key: unique key, second insert with the same key fails

        Returns:
            event_id of the new row (flushed, not committed)

        Raises:
            EventPayloadValidationError: unknown type or payload mismatch
            IntegrityError: idempotency_key already exists

        Example:
            >>> repo = EventLogRepository(db)
            >>> event_id = repo.append_event(
            ...     user_id=1,
            ...     event_type=EventType.REMINDER_COMPLETED,
            ...     payload={"completed_at": "2026-03-02T10:00:00+00:00"},
            ...     reminder_id=42,
            ...     idempotency_key="completed:42",
            ... )
        """
        normalized = validate_payload(event_type, payload)
        if occurred_at is None:
            occurred_at = datetime.now(timezone.utc)

        event = EventLog(
            user_id=user_id,
            event_type=event_type.value if isinstance(event_type, EventType) else event_type,
            payload_json=normalized,
            reminder_id=reminder_id,
            contact_id=contact_id,
            source=source.value if isinstance(source, EventSource) else source,
            occurred_at=occurred_at,
            idempotency_key=idempotency_key,
        )

        self.db.add(event)
        self.db.flush()  # get the id without committing

        return event.id

    def append_event_once(self, idempotency_key: str, **kwargs) -> Optional[int]:
        """
        Append unless an event with this idempotency key exists.

        Returns the new event id, or None when the key was already taken.
        Commits on success; on a concurrent duplicate the session is rolled
        back, so callers must commit their own pending work beforehand.
        """
        if self.find_by_idempotency_key(idempotency_key) is not None:
            return None
        try:
            event_id = self.append_event(idempotency_key=idempotency_key, **kwargs)
            self.db.commit()
            return event_id
        except IntegrityError:
            self.db.rollback()
            return None

    def get_event(self, event_id: int) -> Optional[EventLog]:
        return self.db.query(EventLog).filter(EventLog.id == event_id).first()

    def find_by_idempotency_key(self, key: str) -> Optional[EventLog]:
        return self.db.query(EventLog).filter(EventLog.idempotency_key == key).first()

    def list_events(
        self,
        user_id: int,
        event_types: Iterable[EventType | str] | None = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        contact_id: Optional[int] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[EventLog]:
        """
        Events of a user in the half-open window [since, until).

        Args:
            user_id: owner
            event_types: filter by type (optional)
            since / until: occurred_at bounds (optional)
            contact_id: restrict to one contact (optional)
            limit: maximum rows (optional)
            newest_first: order by occurred_at DESC instead of ASC
        """
        query = self.db.query(EventLog).filter(EventLog.user_id == user_id)

        types = _type_values(event_types)
        if types:
            query = query.filter(EventLog.event_type.in_(types))
        if since is not None:
            query = query.filter(EventLog.occurred_at >= since)
        if until is not None:
            query = query.filter(EventLog.occurred_at < until)
        if contact_id is not None:
            query = query.filter(EventLog.contact_id == contact_id)

        order = EventLog.occurred_at.desc() if newest_first else EventLog.occurred_at.asc()
        query = query.order_by(order, EventLog.id.desc() if newest_first else EventLog.id.asc())
        if limit is not None:
            query = query.limit(limit)

        return query.all()

    def count_events(
        self,
        user_id: int,
        event_types: Iterable[EventType | str] | None = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        query = self.db.query(EventLog).filter(EventLog.user_id == user_id)

        types = _type_values(event_types)
        if types:
            query = query.filter(EventLog.event_type.in_(types))
        if since is not None:
            query = query.filter(EventLog.occurred_at >= since)
        if until is not None:
            query = query.filter(EventLog.occurred_at < until)

        return query.count()

    def latest_event(
        self, user_id: int, event_types: Iterable[EventType | str] | None = None
    ) -> Optional[EventLog]:
        events = self.list_events(user_id, event_types=event_types, limit=1, newest_first=True)
        return events[0] if events else None
