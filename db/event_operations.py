"""
Database operations for the append-only event log.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select

from db.models import EventLog, EventOutcome, utcnow
from db.operations import BaseRepository

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 50


class EventLogRepository(BaseRepository):
    """Repository for EventLog database operations."""

    def log(
        self,
        event_type: str,
        outcome: EventOutcome,
        message: str,
        batch_id: int | None = None,
        photo_id: int | None = None,
        detail: dict[str, Any] | None = None,
        progress: int = 0,
    ) -> EventLog:
        """
        Append an event.

        Args:
            event_type: Event type (batch_start, ai_processing, ...).
            outcome: Event outcome.
            message: Human readable message.
            batch_id: Related batch (optional).
            photo_id: Related photo (optional).
            detail: Structured detail (optional).
            progress: Progress percentage at the time of the event.

        Returns:
            Created EventLog instance.
        """
        event = EventLog(
            batch_id=batch_id,
            photo_id=photo_id,
            event_type=event_type,
            outcome=outcome,
            message=message,
            detail=detail,
            progress=progress,
            created_at=utcnow(),
        )
        with self._scope() as session:
            session.add(event)
            session.flush()
        return event

    def get_batch_events(self, batch_id: int, limit: int = DEFAULT_EVENT_LIMIT) -> list[EventLog]:
        """
        Get the most recent events of a batch, newest first.

        Args:
            batch_id: Primary key of the batch.
            limit: Maximum number of events.

        Returns:
            List of EventLog instances.
        """
        stmt = (
            select(EventLog)
            .where(EventLog.batch_id == batch_id)
            .order_by(EventLog.created_at.desc(), EventLog.id.desc())
            .limit(limit)
        )
        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def get_photo_events(self, photo_id: int, limit: int = DEFAULT_EVENT_LIMIT) -> list[EventLog]:
        """
        Get the most recent events of a photo, newest first.

        Args:
            photo_id: Primary key of the photo.
            limit: Maximum number of events.

        Returns:
            List of EventLog instances.
        """
        stmt = (
            select(EventLog)
            .where(EventLog.photo_id == photo_id)
            .order_by(EventLog.created_at.desc(), EventLog.id.desc())
            .limit(limit)
        )
        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def cleanup_old_events(self, days: int) -> int:
        """
        Delete events older than the retention period.

        Args:
            days: Retention period in days.

        Returns:
            Number of deleted events.
        """
        cutoff = utcnow() - timedelta(days=days)
        with self._scope() as session:
            deleted = session.execute(
                delete(EventLog).where(EventLog.created_at < cutoff)
            ).rowcount

        logger.info(f"Removed {deleted} event(s) older than {days} day(s)")
        return deleted
