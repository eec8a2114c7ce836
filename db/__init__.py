"""
Database module for the photo stock pipeline.

This module provides database connectivity, models, and repositories
for batches, photos, upload destinations and the event log.
"""

from db.database import dispose_engine, get_engine, get_session, init_db, session_scope
from db.models import (
    Batch,
    BatchStatus,
    Classification,
    Destination,
    DestinationStatus,
    EventLog,
    EventOutcome,
    Photo,
    PhotoStatus,
)
from db.operations import BatchRepository, PhotoRepository
from db.destination_operations import DestinationRepository
from db.event_operations import EventLogRepository

__all__ = [
    "dispose_engine",
    "get_engine",
    "get_session",
    "init_db",
    "session_scope",
    "Batch",
    "BatchStatus",
    "Classification",
    "Destination",
    "DestinationStatus",
    "EventLog",
    "EventOutcome",
    "Photo",
    "PhotoStatus",
    "BatchRepository",
    "PhotoRepository",
    "DestinationRepository",
    "EventLogRepository",
]
