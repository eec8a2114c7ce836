"""
In-memory job records for live progress reporting.

ProcessingJob tracks one batch while it is being annotated; UploadJob
tracks one photo while it is delivered to its destinations. Neither is
persisted: the store remains the source of truth and these objects only
feed status queries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from db.models import Destination, DestinationStatus, Photo, utcnow


class PhotoStep:
    """Steps of the per-photo annotation pipeline."""
    WAITING = "waiting"
    PREPARATION = "preparation"
    AI_ANALYSIS = "ai_analysis"
    SAVING = "saving"
    EXIF_WRITING = "exif_writing"
    COMPLETED = "completed"
    FAILED = "failed"


# Progress reported when a step starts
STEP_PROGRESS = {
    PhotoStep.WAITING: 0,
    PhotoStep.PREPARATION: 10,
    PhotoStep.AI_ANALYSIS: 30,
    PhotoStep.SAVING: 70,
    PhotoStep.EXIF_WRITING: 90,
    PhotoStep.COMPLETED: 100,
}


@dataclass
class PhotoProgress:
    """Live progress of one photo inside a ProcessingJob."""
    photo_id: int
    filename: str
    status: str = "pending"
    step: str = PhotoStep.WAITING
    progress: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "photo_id": self.photo_id,
            "filename": self.filename,
            "status": self.status,
            "step": self.step,
            "progress": self.progress,
            "error": self.error,
        }


@dataclass
class ProcessingJob:
    """Live state of one batch being annotated."""
    batch_id: int
    batch_name: str
    total: int
    current_step: str = "initialization"
    status: str = "processing"
    progress: int = 0
    completed: int = 0
    failed: int = 0
    current_photo: str | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    photos: dict[int, PhotoProgress] = field(default_factory=dict)

    @classmethod
    def for_photos(cls, batch_id: int, batch_name: str, photos: Iterable[Photo]) -> "ProcessingJob":
        records = {photo.id: PhotoProgress(photo.id, photo.filename) for photo in photos}
        return cls(batch_id=batch_id, batch_name=batch_name, total=len(records), photos=records)

    def start_step(self, photo_id: int, step: str) -> None:
        record = self.photos.get(photo_id)
        if record is None:
            return
        record.status = "processing"
        record.step = step
        record.progress = STEP_PROGRESS.get(step, record.progress)
        self.current_photo = record.filename
        self.current_step = "ai_processing"

    def finish_photo(self, photo_id: int, error: Exception | None, done: int) -> None:
        """Record a drained result and recompute aggregate progress."""
        record = self.photos.get(photo_id)
        if record is not None:
            if error is None:
                record.status = "completed"
                record.step = PhotoStep.COMPLETED
                record.progress = 100
            else:
                record.status = "failed"
                record.step = PhotoStep.FAILED
                record.error = str(error)

        if error is None:
            self.completed += 1
        else:
            self.failed += 1
        self.progress = done * 100 // self.total if self.total else 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "batch_name": self.batch_name,
            "total": self.total,
            "current_step": self.current_step,
            "status": self.status,
            "progress": self.progress,
            "completed": self.completed,
            "failed": self.failed,
            "current_photo": self.current_photo,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "photos": [record.to_dict() for record in self.photos.values()],
        }


@dataclass
class UploadJob:
    """
    One photo's delivery to its destinations.

    destinations lists the targets still to attempt, in the order they
    were resolved; progress maps every destination id (as a string) to
    its status, including outcomes recorded before this job existed.
    """
    photo: Photo
    batch_id: int
    destinations: list[Destination]
    progress: dict[str, str]
    status: str = "queued"
    messages: dict[str, str] = field(default_factory=dict)
    urls: dict[str, str] = field(default_factory=dict)
    queued_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None

    @classmethod
    def build(
        cls,
        photo: Photo,
        destinations: Iterable[Destination],
        keep: Iterable[DestinationStatus] = (DestinationStatus.UPLOADED,)
    ) -> "UploadJob":
        """
        Create a job for a photo.

        Destinations whose recorded status is in keep are not attempted
        again; their status is carried into the job's progress map.

        Args:
            photo: Photo to deliver.
            destinations: Active destinations for the photo's classification.
            keep: Recorded statuses that count as already settled.

        Returns:
            New UploadJob.
        """
        recorded = photo.upload_status or {}
        settled = {status.value for status in keep}

        attempts = []
        progress = {}
        for destination in destinations:
            key = str(destination.id)
            if recorded.get(key) in settled:
                progress[key] = recorded[key]
            else:
                progress[key] = DestinationStatus.PENDING.value
                attempts.append(destination)

        return cls(photo=photo, batch_id=photo.batch_id, destinations=attempts, progress=progress)

    @property
    def photo_id(self) -> int:
        return self.photo.id

    def counts(self) -> tuple[int, int]:
        """Return (succeeded, failed) destination counts."""
        values = list(self.progress.values())
        return (
            values.count(DestinationStatus.UPLOADED.value),
            values.count(DestinationStatus.FAILED.value),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "photo_id": self.photo.id,
            "batch_id": self.batch_id,
            "filename": self.photo.filename,
            "status": self.status,
            "destinations": [
                {"id": destination.id, "name": destination.name, "type": destination.type}
                for destination in self.destinations
            ],
            "progress": dict(self.progress),
            "messages": dict(self.messages),
            "urls": dict(self.urls),
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }
