"""
Startup reconciliation of work interrupted by a crash or restart.

Live progress only exists in memory, so records left in an in-flight
status by a previous process are returned to a state the schedulers
can pick up again.
"""

import logging

from db.models import BatchStatus, DestinationStatus, EventOutcome, PhotoStatus
from db.operations import BatchRepository, PhotoRepository
from scheduler.progress import EventRecorder, EventType

logger = logging.getLogger(__name__)


class RecoverySweep:
    """Resets batches and photos stranded in processing or uploading."""

    def __init__(
        self,
        batch_repository: BatchRepository | None = None,
        photo_repository: PhotoRepository | None = None,
        events: EventRecorder | None = None,
    ):
        self.batches = batch_repository or BatchRepository()
        self.photos = photo_repository or PhotoRepository()
        self.events = events or EventRecorder()

    def recover_annotation(self) -> dict[str, int]:
        """
        Re-queue batches and reset photos left in processing.

        Returns:
            Counts of recovered batches and photos.
        """
        batches = self.batches.get_by_statuses([BatchStatus.PROCESSING])
        for batch in batches:
            self.batches.update_status(
                batch.id, BatchStatus.QUEUED, error_message="Recovered after restart"
            )
            self.events.record(
                EventType.RECOVERY,
                EventOutcome.WARNING,
                f"Batch '{batch.name}' was left processing and has been re-queued",
                batch_id=batch.id,
            )

        photos = self.photos.get_by_status([PhotoStatus.PROCESSING])
        for photo in photos:
            self.photos.update_status(photo.id, PhotoStatus.PENDING)

        if batches or photos:
            logger.info(
                f"Recovered {len(batches)} batch(es) and {len(photos)} photo(s) "
                f"left in processing"
            )
        return {"batches": len(batches), "photos": len(photos)}

    def recover_uploads(self) -> int:
        """
        Return photos stranded mid-upload to the upload queue.

        Destinations still marked uploading are recorded as failed; the
        photo becomes queued so a rescan delivers the remaining ones.

        Returns:
            Number of recovered photos.
        """
        photos = self.photos.get_by_status([PhotoStatus.UPLOADING])
        for photo in photos:
            self.photos.modify_upload_status(photo.id, _fail_in_flight)
            self.photos.update_status(photo.id, PhotoStatus.QUEUED)
            self.events.record(
                EventType.RECOVERY,
                EventOutcome.WARNING,
                f"Upload of {photo.filename} was interrupted and has been re-queued",
                batch_id=photo.batch_id,
                photo_id=photo.id,
            )

        if photos:
            logger.info(f"Recovered {len(photos)} photo(s) left uploading")
        return len(photos)

    def run(self) -> dict[str, int]:
        """Run both sweeps."""
        counts = self.recover_annotation()
        counts["uploads"] = self.recover_uploads()
        return counts


def _fail_in_flight(current: dict[str, str]) -> dict[str, str]:
    for key, status in current.items():
        if status == DestinationStatus.UPLOADING.value:
            current[key] = DestinationStatus.FAILED.value
    return current
