"""
SQLAlchemy models for the photo stock pipeline.

Database Schema:
----------------
batches table:
    - id: Primary key, auto-increment
    - name: Human readable label (defaults to batch_<timestamp>)
    - classification: Content classification (editorial, commercial)
    - description: Free-text description passed to the annotation service
    - folder_path: Source folder the photos were scanned from
    - status: Lifecycle status (pending, queued, processing, processed, failed, interrupted)
    - progress: Aggregate annotation progress percentage
    - concurrency: Photo worker count for this batch (NULL = default setting)

photos table:
    - id, batch_id (CASCADE), classification, filename, original_path
    - preview_path: Derived preview (NULL until prepared)
    - context_metadata: Extracted key-value metadata (JSON)
    - annotation: Annotation result (JSON, NULL until annotated)
    - upload_status: destination id -> destination status (JSON)
    - upload_status_version: Optimistic concurrency counter for upload_status
    - status: Photo lifecycle status

destinations table:
    - Upload targets (type, connection details, supported classifications, active flag)

event_logs table:
    - Append-only audit trail of pipeline actions
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching server-side CURRENT_TIMESTAMP."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Classification(PyEnum):
    """Mutually exclusive content category of a batch and its photos."""
    EDITORIAL = "editorial"
    COMMERCIAL = "commercial"


# Shared by batches and photos so PostgreSQL creates the type once
ClassificationType = Enum(Classification, name="classification_enum")


class BatchStatus(PyEnum):
    """Lifecycle status of a batch."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class PhotoStatus(PyEnum):
    """Lifecycle status of a photo across annotation, review and upload."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    APPROVED = "approved"
    REJECTED = "rejected"
    QUEUED = "queued"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PARTIALLY_UPLOADED = "partially_uploaded"
    UPLOAD_FAILED = "upload_failed"


class DestinationStatus(PyEnum):
    """Delivery status of a photo for a single destination."""
    PENDING = "pending"
    QUEUED = "queued"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class EventOutcome(PyEnum):
    """Outcome recorded on an event log entry."""
    STARTED = "started"
    PROGRESS = "progress"
    SUCCESS = "success"
    FAILED = "failed"
    WARNING = "warning"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Batch(Base):
    """
    SQLAlchemy model for the batches table.

    A batch owns its photos; deleting a batch deletes them.
    """
    __tablename__ = "batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    classification: Mapped[Classification] = mapped_column(
        ClassificationType, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    folder_path: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, name="batch_status_enum"),
        nullable=False,
        default=BatchStatus.PENDING
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    concurrency: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    photos: Mapped[List["Photo"]] = relationship(
        "Photo",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="Photo.id"
    )

    __table_args__ = (
        Index("idx_batches_status", "status"),
        Index("idx_batches_created_at", "created_at"),
    )
    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self) -> str:
        return (
            f"<Batch(id={self.id}, name='{self.name}', "
            f"status={self.status.value})>"
        )

    def to_dict(self, include_photos: bool = False) -> dict:
        """Convert model to dictionary for serialization."""
        data = {
            "id": self.id,
            "name": self.name,
            "classification": self.classification.value,
            "description": self.description,
            "folder_path": self.folder_path,
            "status": self.status.value,
            "progress": self.progress,
            "concurrency": self.concurrency,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_photos:
            data["photos"] = [photo.to_dict() for photo in self.photos]
        return data


class Photo(Base):
    """
    SQLAlchemy model for the photos table.

    The annotation result is only present once the photo has been
    annotated successfully; it is cleared when the photo is marked failed.
    """
    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False
    )

    classification: Mapped[Classification] = mapped_column(
        ClassificationType, nullable=False
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_path: Mapped[str] = mapped_column(Text, nullable=False)
    preview_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    context_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True, default=dict
    )
    annotation: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    upload_status: Mapped[Optional[dict[str, str]]] = mapped_column(
        JSONType, nullable=True, default=dict
    )
    upload_status_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[PhotoStatus] = mapped_column(
        Enum(PhotoStatus, name="photo_status_enum"),
        nullable=False,
        default=PhotoStatus.PENDING
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    batch: Mapped["Batch"] = relationship("Batch", back_populates="photos")

    __table_args__ = (
        Index("idx_photos_batch_id", "batch_id"),
        Index("idx_photos_status", "status"),
    )
    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self) -> str:
        return (
            f"<Photo(id={self.id}, filename='{self.filename}', "
            f"status={self.status.value})>"
        )

    def to_dict(self) -> dict:
        """Convert model to dictionary for serialization."""
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "classification": self.classification.value,
            "filename": self.filename,
            "original_path": self.original_path,
            "preview_path": self.preview_path,
            "context_metadata": self.context_metadata or {},
            "annotation": self.annotation,
            "upload_status": self.upload_status or {},
            "status": self.status.value,
            "error_message": self.error_message,
            "processed_at": _iso(self.processed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Destination(Base):
    """
    SQLAlchemy model for upload destinations.

    The type selects the uploader implementation from the registry;
    connection holds protocol-specific details (host, credentials, URLs).
    """
    __tablename__ = "destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)

    supported_classifications: Mapped[List[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    connection: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    settings: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_destinations_active", "active"),
    )
    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self) -> str:
        return (
            f"<Destination(id={self.id}, name='{self.name}', "
            f"type='{self.type}', active={self.active})>"
        )

    def supports(self, classification: Classification | str) -> bool:
        """Check whether this destination accepts the given classification."""
        value = classification.value if isinstance(classification, Classification) else classification
        return value in (self.supported_classifications or [])

    def to_dict(self, include_secrets: bool = False) -> dict:
        """Convert model to dictionary for serialization."""
        connection = dict(self.connection or {})
        if not include_secrets:
            for key in ("password", "api_key", "session_cookie"):
                if connection.get(key):
                    connection[key] = "***"
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "supported_classifications": self.supported_classifications or [],
            "connection": connection,
            "settings": self.settings or {},
            "active": self.active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class EventLog(Base):
    """
    SQLAlchemy model for the append-only event log.

    Rows are never updated; old rows are only removed by the retention sweep.
    """
    __tablename__ = "event_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    photo_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[EventOutcome] = mapped_column(
        Enum(EventOutcome, name="event_outcome_enum"),
        nullable=False
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    detail: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("idx_event_logs_batch_id", "batch_id"),
        Index("idx_event_logs_photo_id", "photo_id"),
        Index("idx_event_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventLog(id={self.id}, type='{self.event_type}', "
            f"outcome={self.outcome.value})>"
        )

    def to_dict(self) -> dict:
        """Convert model to dictionary for serialization."""
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "photo_id": self.photo_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "message": self.message,
            "detail": self.detail,
            "progress": self.progress,
            "created_at": _iso(self.created_at),
        }
