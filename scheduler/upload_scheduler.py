"""
Upload dispatch scheduler.

Approved photos are queued on a bounded in-memory channel and delivered
by a fixed set of worker threads. Each worker handles one photo at a
time and tries its destinations one after another; every destination
status change is flushed to the photo's persisted upload-status map.

A photo that could not be placed on a full channel stays queued in the
store and is picked up again by a rescan once a slot frees up.
"""

import logging
import queue
import threading
import time
from typing import Any, Iterable

from core.errors import (
    NoActiveDestinations,
    NotFoundError,
    UploadError,
)
from core.retry import call_with_retry
from core.settings import SchedulerSettings
from db.destination_operations import DestinationRepository
from db.models import (
    Batch,
    Destination,
    DestinationStatus,
    EventOutcome,
    Photo,
    PhotoStatus,
    utcnow,
)
from db.operations import BatchRepository, PhotoRepository
from scheduler.jobs import UploadJob
from scheduler.progress import ActiveJobRegistry, EventRecorder, EventType
from scheduler.recovery import RecoverySweep
from uploaders.base import UploaderRegistry, default_registry

logger = logging.getLogger(__name__)

# Seconds a worker waits on an empty channel before re-checking the stop flag
WORKER_POLL_INTERVAL = 0.2

ENQUEUEABLE_STATUSES = {
    PhotoStatus.APPROVED,
    PhotoStatus.QUEUED,
    PhotoStatus.UPLOAD_FAILED,
    PhotoStatus.PARTIALLY_UPLOADED,
}

UPLOAD_STATUSES = [
    PhotoStatus.APPROVED,
    PhotoStatus.QUEUED,
    PhotoStatus.UPLOADING,
    PhotoStatus.UPLOADED,
    PhotoStatus.PARTIALLY_UPLOADED,
    PhotoStatus.UPLOAD_FAILED,
]


class UploadScheduler:
    """Delivers approved photos to every active destination."""

    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        registry: UploaderRegistry | None = None,
        photo_repository: PhotoRepository | None = None,
        batch_repository: BatchRepository | None = None,
        destination_repository: DestinationRepository | None = None,
        events: EventRecorder | None = None,
    ):
        self.settings = settings or SchedulerSettings.from_env()
        self.registry = registry or default_registry()
        self.photos = photo_repository or PhotoRepository()
        self.batches = batch_repository or BatchRepository()
        self.destinations = destination_repository or DestinationRepository()
        self.events = events or EventRecorder()

        self.active: ActiveJobRegistry[int, UploadJob] = ActiveJobRegistry()
        self._channel: queue.Queue[UploadJob] = queue.Queue(maxsize=self.settings.upload_queue_size)
        # Photo ids on the channel or being uploaded
        self._tracked: set[int] = set()
        self._tracked_lock = threading.Lock()
        self._stranded = False
        # Photos already reported as left on a full channel
        self._stranded_ids: set[int] = set()

        self._stop_event = threading.Event()
        self._workers: list[threading.Thread] = []
        self._control_lock = threading.Lock()

    # ────────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ────────────────────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return any(worker.is_alive() for worker in self._workers)

    def start(self) -> bool:
        """
        Recover interrupted uploads and start the worker threads.

        Calling start() while running has no effect.

        Returns:
            True if workers were started, False if already running.
        """
        with self._control_lock:
            if self.is_running:
                logger.info("Upload processing is already running")
                return False

            RecoverySweep(self.batches, self.photos, self.events).recover_uploads()

            stop_event = self._stop_event
            self._workers = [
                threading.Thread(
                    target=self._worker,
                    args=(index + 1, stop_event),
                    name=f"upload-worker-{index + 1}",
                    daemon=True,
                )
                for index in range(self.settings.upload_workers)
            ]
            for worker in self._workers:
                worker.start()

        logger.info(f"Upload processing started with {self.settings.upload_workers} worker(s)")
        self.rescan_stranded()
        return True

    def stop(self) -> None:
        """
        Stop the workers and wait for in-flight uploads to finish.

        Jobs still on the channel stay there for the next start().
        """
        with self._control_lock:
            if not self.is_running:
                logger.debug("Upload processing is not running")
                return

            logger.info("Stopping upload processing")
            self._stop_event.set()
            for worker in self._workers:
                worker.join()
            while len(self.active):
                time.sleep(WORKER_POLL_INTERVAL)

            self._workers = []
            self._stop_event = threading.Event()

        logger.info("Upload processing stopped")

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """
        Wait until the channel is drained and no upload is in progress.

        Returns:
            True if idle, False if the timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._tracked_lock:
                if not self._tracked:
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    def _worker(self, worker_id: int, stop_event: threading.Event) -> None:
        logger.debug(f"Upload worker {worker_id} started")
        while not stop_event.is_set():
            try:
                job = self._channel.get(timeout=WORKER_POLL_INTERVAL)
            except queue.Empty:
                continue

            try:
                self.process_upload_job(job)
            except Exception as e:
                logger.error(f"Upload worker {worker_id} failed on photo {job.photo_id}: {e}")
            finally:
                self._untrack(job.photo_id)
                self._channel.task_done()

            if self._stranded:
                try:
                    self.rescan_stranded()
                except Exception as e:
                    logger.error(f"Rescan of queued photos failed: {e}")
        logger.debug(f"Upload worker {worker_id} stopped")

    # ────────────────────────────────────────────────────────────────────────────
    # Queueing
    # ────────────────────────────────────────────────────────────────────────────

    def queue_photos_for_upload(self, batch_id: int, photo_ids: Iterable[int]) -> list[int]:
        """
        Queue photos of a batch for delivery to every active destination.

        Photos that are not uploadable, already tracked or already
        delivered everywhere are skipped with a warning. A photo that
        does not fit on the channel stays queued for a later rescan.

        Args:
            batch_id: Batch the photos belong to.
            photo_ids: Photos to queue.

        Returns:
            Ids of the photos placed on the channel.

        Raises:
            NotFoundError: If the batch does not exist.
            NoActiveDestinations: If no active destination accepts the
                batch classification.
        """
        batch = self.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        destinations = self.destinations.get_active_for(batch.classification)
        if not destinations:
            raise NoActiveDestinations(
                f"No active destination accepts {batch.classification.value} photos"
            )

        queued = []
        for photo_id in photo_ids:
            photo = self.photos.get_by_id(photo_id)
            if photo is None or photo.batch_id != batch.id:
                logger.warning(f"Photo {photo_id} is not part of batch {batch.id}, skipping")
                continue
            if photo.status not in ENQUEUEABLE_STATUSES:
                logger.warning(
                    f"Photo {photo.filename} is {photo.status.value} and cannot be uploaded"
                )
                continue

            claimed = self._claim(photo.id, ENQUEUEABLE_STATUSES)
            if claimed is None:
                logger.warning(f"Photo {photo.filename} is already queued for upload")
                continue

            job = UploadJob.build(claimed, destinations)
            if not job.destinations:
                self._untrack(photo.id)
                logger.info(f"Photo {photo.filename} is already delivered to every destination")
                continue
            if self._enqueue(job):
                queued.append(photo.id)

        logger.info(f"Queued {len(queued)} photo(s) of batch {batch.id} for upload")
        return queued

    def queue_approved_photos(self, batch_id: int) -> list[int]:
        """
        Queue every approved photo of a batch.

        Raises:
            NotFoundError: If the batch does not exist.
            NoActiveDestinations: If no destination accepts the batch.
            ValueError: If the batch has no approved photos.
        """
        photos = self.photos.get_for_batch(batch_id, statuses=[PhotoStatus.APPROVED])
        if not photos:
            if self.batches.get_by_id(batch_id) is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            raise ValueError(f"Batch {batch_id} has no approved photos")
        return self.queue_photos_for_upload(batch_id, [photo.id for photo in photos])

    def rescan_stranded(self, batch_id: int | None = None) -> list[int]:
        """
        Re-enqueue photos left queued in the store but not on the channel.

        Destinations already recorded as uploaded or failed are not tried
        again. A photo with nothing left to try is finalized from its
        recorded outcomes.

        Args:
            batch_id: Restrict the rescan to one batch (optional).

        Returns:
            Ids of the photos placed on the channel.
        """
        self._stranded = False
        requeued = []
        batches: dict[int, Batch | None] = {}

        for photo in self.photos.get_by_status([PhotoStatus.QUEUED], batch_id):
            if self._is_tracked(photo.id):
                continue

            if photo.batch_id not in batches:
                batches[photo.batch_id] = self.batches.get_by_id(photo.batch_id)
            batch = batches[photo.batch_id]
            if batch is None:
                continue

            destinations = self.destinations.get_active_for(batch.classification)
            if not destinations:
                logger.warning(
                    f"Photo {photo.filename} is queued but no active destination accepts it"
                )
                continue

            # A worker may have finished the photo since it was listed
            claimed = self._claim(photo.id, {PhotoStatus.QUEUED})
            if claimed is None:
                continue

            job = UploadJob.build(
                claimed,
                destinations,
                keep=(DestinationStatus.UPLOADED, DestinationStatus.FAILED),
            )
            if not job.destinations:
                try:
                    self._finalize(job)
                finally:
                    self._untrack(photo.id)
                    self._clear_stranded(photo.id)
                continue
            if self._enqueue(job):
                requeued.append(photo.id)
            elif self._stranded:
                break

        if requeued:
            logger.info(f"Re-queued {len(requeued)} stranded photo(s)")
        return requeued

    def _claim(self, photo_id: int, statuses: set[PhotoStatus]) -> Photo | None:
        """
        Track a photo and re-read it from the store.

        Returns:
            The fresh photo, or None if it is already tracked or no longer
            in one of statuses (it is left untracked then).
        """
        if not self._track(photo_id):
            return None
        try:
            photo = self.photos.get_by_id(photo_id)
        except Exception:
            self._untrack(photo_id)
            raise
        if photo is None or photo.status not in statuses:
            self._untrack(photo_id)
            return None
        return photo

    def _enqueue(self, job: UploadJob) -> bool:
        photo = job.photo
        try:
            self._flush(
                self.photos.set_upload_entries,
                photo.id,
                [destination.id for destination in job.destinations],
                DestinationStatus.QUEUED.value,
            )
            self.photos.update_status(photo.id, PhotoStatus.QUEUED)
        except Exception:
            self._untrack(photo.id)
            raise

        for destination in job.destinations:
            job.progress[str(destination.id)] = DestinationStatus.QUEUED.value

        try:
            self._channel.put_nowait(job)
        except queue.Full:
            self._untrack(photo.id)
            self._stranded = True
            with self._tracked_lock:
                first = photo.id not in self._stranded_ids
                self._stranded_ids.add(photo.id)
            if first:
                self.events.record(
                    EventType.UPLOAD_QUEUE_FULL,
                    EventOutcome.WARNING,
                    f"Upload queue full, {photo.filename} stays queued for a later rescan",
                    batch_id=photo.batch_id,
                    photo_id=photo.id,
                )
            else:
                logger.debug(f"Upload queue still full, {photo.filename} stays queued")
            return False

        self._clear_stranded(photo.id)
        return True

    def _clear_stranded(self, photo_id: int) -> None:
        with self._tracked_lock:
            self._stranded_ids.discard(photo_id)

    def _track(self, photo_id: int) -> bool:
        with self._tracked_lock:
            if photo_id in self._tracked:
                return False
            self._tracked.add(photo_id)
            return True

    def _untrack(self, photo_id: int) -> None:
        with self._tracked_lock:
            self._tracked.discard(photo_id)

    def _is_tracked(self, photo_id: int) -> bool:
        with self._tracked_lock:
            return photo_id in self._tracked

    # ────────────────────────────────────────────────────────────────────────────
    # Delivery
    # ────────────────────────────────────────────────────────────────────────────

    def process_upload_job(self, job: UploadJob) -> PhotoStatus:
        """
        Deliver one photo to each of its destinations in turn.

        A destination failure is recorded and the next destination is
        still attempted. The photo's final status is aggregated from all
        destination outcomes.

        Args:
            job: Job taken from the channel.

        Returns:
            Final photo status.
        """
        photo = job.photo
        self.active.register(photo.id, job)
        try:
            job.status = PhotoStatus.UPLOADING.value
            job.started_at = utcnow()
            self.photos.update_status(photo.id, PhotoStatus.UPLOADING)
            self.events.record(
                EventType.STOCK_UPLOAD,
                EventOutcome.STARTED,
                f"Uploading {photo.filename} to {len(job.destinations)} destination(s)",
                batch_id=job.batch_id,
                photo_id=photo.id,
            )

            for destination in job.destinations:
                self._set_destination(job, destination, DestinationStatus.UPLOADING)
                status = self._deliver(job, destination)
                self._set_destination(job, destination, status)

            return self._finalize(job)
        finally:
            self.active.deregister(photo.id)

    def _deliver(self, job: UploadJob, destination: Destination) -> DestinationStatus:
        photo = job.photo
        key = str(destination.id)
        try:
            outcome = self.registry.upload(photo, destination)
            if not outcome.success:
                raise UploadError(outcome.message or "Upload rejected")
        except Exception as e:
            kind = getattr(e, "kind", None)
            job.messages[key] = str(e)
            self.events.record(
                EventType.STOCK_UPLOAD,
                EventOutcome.FAILED,
                f"Upload of {photo.filename} to {destination.name} failed: {e}",
                batch_id=job.batch_id,
                photo_id=photo.id,
                detail={"destination_id": destination.id, "kind": kind.value if kind else None},
            )
            return DestinationStatus.FAILED

        job.messages[key] = outcome.message
        if outcome.url:
            job.urls[key] = outcome.url
        self.events.record(
            EventType.STOCK_UPLOAD,
            EventOutcome.SUCCESS,
            f"Uploaded {photo.filename} to {destination.name}",
            batch_id=job.batch_id,
            photo_id=photo.id,
            detail={"destination_id": destination.id, **outcome.to_dict()},
        )
        return DestinationStatus.UPLOADED

    def _set_destination(
        self,
        job: UploadJob,
        destination: Destination,
        status: DestinationStatus
    ) -> None:
        key = str(destination.id)

        def apply(target: UploadJob) -> None:
            target.progress[key] = status.value

        if not self.active.update(job.photo_id, apply):
            apply(job)
        try:
            self.flush_destination_status(job.photo_id, destination.id, status.value)
        except Exception as e:
            logger.error(
                f"Could not record {status.value} for {job.photo.filename} "
                f"at {destination.name}: {e}"
            )

    def flush_destination_status(
        self,
        photo_id: int,
        destination_id: int | str,
        status: str
    ) -> dict[str, str]:
        """
        Persist one destination's status, retrying on write conflicts.

        Returns:
            The upload-status map as written.

        Raises:
            StoreConflictError: If every attempt conflicted.
        """
        return self._flush(self.photos.update_upload_status, photo_id, destination_id, status)

    def _flush(self, func, photo_id: int, *args) -> dict[str, str]:
        return call_with_retry(
            func,
            photo_id,
            *args,
            policy=self.settings.store_retry_policy,
            description=f"Upload status write for photo {photo_id}",
        )

    def _finalize(self, job: UploadJob) -> PhotoStatus:
        photo = job.photo
        succeeded, failed = job.counts()

        if failed == 0 and succeeded > 0:
            final, outcome = PhotoStatus.UPLOADED, EventOutcome.SUCCESS
        elif succeeded == 0:
            final, outcome = PhotoStatus.UPLOAD_FAILED, EventOutcome.FAILED
        else:
            final, outcome = PhotoStatus.PARTIALLY_UPLOADED, EventOutcome.WARNING

        settled = dict(job.progress)
        try:
            self._flush(self.photos.modify_upload_status, photo.id, lambda current: {**current, **settled})
        except Exception as e:
            logger.error(f"Could not record final upload status of {photo.filename}: {e}")

        self.photos.update_status(photo.id, final)
        job.status = final.value
        self.events.record(
            EventType.UPLOAD_COMPLETE,
            outcome,
            f"Upload of {photo.filename} finished: {succeeded} succeeded, {failed} failed",
            batch_id=job.batch_id,
            photo_id=photo.id,
            detail={"succeeded": succeeded, "failed": failed, "status": final.value},
        )
        return final

    # ────────────────────────────────────────────────────────────────────────────
    # Status Queries
    # ────────────────────────────────────────────────────────────────────────────

    def get_active_jobs(self) -> list[dict[str, Any]]:
        """Snapshots of the uploads in progress."""
        return self.active.snapshot()

    def get_upload_progress(self, batch_id: int) -> dict[str, Any]:
        """
        Upload state of every photo of a batch that entered the upload path.

        Raises:
            NotFoundError: If the batch does not exist.
        """
        if self.batches.get_by_id(batch_id) is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        photos = self.photos.get_by_status(UPLOAD_STATUSES, batch_id)
        counts: dict[str, int] = {}
        entries = []
        for photo in photos:
            counts[photo.status.value] = counts.get(photo.status.value, 0) + 1
            entries.append(self._photo_progress(photo))

        return {
            "batch_id": batch_id,
            "running": self.is_running,
            "queued_on_channel": self._channel.qsize(),
            "counts": counts,
            "photos": entries,
        }

    def _photo_progress(self, photo: Photo) -> dict[str, Any]:
        return {
            "id": photo.id,
            "filename": photo.filename,
            "status": photo.status.value,
            "upload_status": dict(photo.upload_status or {}),
            "job": self.active.get_snapshot(photo.id),
        }
