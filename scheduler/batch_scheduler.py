"""
Batch annotation scheduler.

A single dispatch loop picks the oldest queued batch and annotates its
pending photos with a bounded worker pool. Each photo runs through
preparation, annotation, saving and metadata embedding; workers report
one result per photo on a completion channel that the coordinator drains
in arrival order.

Usage:
    scheduler = BatchScheduler()
    scheduler.start()
    ...
    scheduler.stop()
    scheduler.wait_stopped(timeout=30)
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from core.errors import (
    AlreadyRunning,
    InvalidTransition,
    NotFoundError,
    ProcessingStopped,
)
from core.settings import AnnotationSettings, SchedulerSettings
from db.models import Batch, BatchStatus, EventOutcome, Photo, PhotoStatus
from db.operations import BatchRepository, PhotoRepository
from pipeline.annotator import Annotator
from pipeline.metadata_writer import MetadataWriter
from pipeline.preparer import PhotoPreparer
from pipeline.thumbnail_generator import ThumbnailGenerator
from scheduler.jobs import STEP_PROGRESS, PhotoStep, ProcessingJob
from scheduler.progress import ActiveJobRegistry, EventRecorder, EventType
from scheduler.recovery import RecoverySweep

logger = logging.getLogger(__name__)

# Seconds between stop-flag checks while waiting for worker results
RESULT_POLL_INTERVAL = 0.2

ACTIVE_BATCH_STATUSES = [BatchStatus.QUEUED, BatchStatus.PROCESSING, BatchStatus.INTERRUPTED]


class BatchScheduler:
    """
    Dispatches queued batches through the annotation pipeline.

    Only photos still pending are dispatched, so a re-queued or
    interrupted batch resumes without repeating finished work.
    """

    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        preparer: PhotoPreparer | None = None,
        annotator: Annotator | None = None,
        metadata_writer: MetadataWriter | None = None,
        batch_repository: BatchRepository | None = None,
        photo_repository: PhotoRepository | None = None,
        events: EventRecorder | None = None,
        annotation_settings: AnnotationSettings | None = None,
    ):
        self.settings = settings or SchedulerSettings.from_env()
        self.preparer = preparer or PhotoPreparer(
            ThumbnailGenerator(self.settings.thumbnail_dir, self.settings.thumbnail_width)
        )
        self.annotator = annotator or Annotator()
        self.metadata_writer = metadata_writer or MetadataWriter()
        self.batches = batch_repository or BatchRepository()
        self.photos = photo_repository or PhotoRepository()
        self.events = events or EventRecorder()
        self.annotation_settings = annotation_settings

        self.jobs: ActiveJobRegistry[int, ProcessingJob] = ActiveJobRegistry()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._control_lock = threading.Lock()

    # ────────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ────────────────────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, settings: SchedulerSettings | None = None) -> None:
        """
        Reconcile interrupted work and start the dispatch loop.

        Args:
            settings: Replacement settings for this run (optional).

        Raises:
            AlreadyRunning: If the dispatch loop is already active.
            ValueError: If the replacement settings are invalid.
        """
        with self._control_lock:
            if self.is_running:
                raise AlreadyRunning("Batch processing is already running")

            if settings is not None:
                settings.validate()
                self.settings = settings

            RecoverySweep(self.batches, self.photos, self.events).recover_annotation()

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop, name="batch-dispatch", daemon=True
            )
            self._thread.start()

        logger.info(
            f"Batch processing started "
            f"(max {self.settings.max_concurrent_batches} batch(es), "
            f"{self.settings.photo_workers} photo worker(s))"
        )

    def stop(self) -> None:
        """
        Request the dispatch loop to stop.

        Returns immediately. Photos already being annotated finish and are
        recorded before the loop exits; use wait_stopped() to wait for it.
        """
        if not self.is_running:
            logger.debug("Batch processing is not running")
            return
        logger.info("Stopping batch processing")
        self._stop_event.set()

    def wait_stopped(self, timeout: float | None = None) -> bool:
        """
        Wait for the dispatch loop to exit.

        Returns:
            True if the loop is no longer running.
        """
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.is_running

    def _run_loop(self) -> None:
        logger.debug("Batch dispatch loop running")
        while not self._stop_event.is_set():
            try:
                batch = self._next_batch()
            except Exception as e:
                logger.error(f"Failed to read the batch queue: {e}")
                self._stop_event.wait(self.settings.error_retry_delay)
                continue

            if batch is None:
                self._stop_event.wait(self.settings.poll_interval)
                continue

            try:
                self.process_batch(batch.id)
            except ProcessingStopped as e:
                logger.info(str(e))
            except Exception as e:
                logger.error(f"Batch {batch.id} could not be processed: {e}")
                self._stop_event.wait(self.settings.error_retry_delay)

        logger.info("Batch processing stopped")

    def _next_batch(self) -> Batch | None:
        if len(self.jobs) >= self.settings.max_concurrent_batches:
            return None
        return self.batches.get_oldest_queued()

    # ────────────────────────────────────────────────────────────────────────────
    # Batch Processing
    # ────────────────────────────────────────────────────────────────────────────

    def process_batch(self, batch_id: int) -> ProcessingJob:
        """
        Annotate the pending photos of one batch.

        Photo failures are recorded per photo and never fail the batch.
        The batch ends processed once every dispatched photo reported.

        Args:
            batch_id: Primary key of the batch.

        Returns:
            Final state of the processing job.

        Raises:
            NotFoundError: If the batch does not exist.
            ProcessingStopped: If a stop was requested before all results
                were collected (the batch is left interrupted).
        """
        batch = self.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        photos = self.photos.get_for_batch(batch.id, statuses=[PhotoStatus.PENDING])
        job = ProcessingJob.for_photos(batch.id, batch.name, photos)
        self.jobs.register(batch.id, job)

        try:
            self.batches.update_status(batch.id, BatchStatus.PROCESSING, progress=0)
            self.events.record(
                EventType.BATCH_START,
                EventOutcome.STARTED,
                f"Started processing batch '{batch.name}' ({len(photos)} photo(s))",
                batch_id=batch.id,
                detail={"photos": len(photos), "classification": batch.classification.value},
            )

            self._run_photos(batch, photos)

            self.batches.update_status(batch.id, BatchStatus.PROCESSED, progress=100)
            self.jobs.update(batch.id, _mark_job_done)
            self.events.record(
                EventType.BATCH_COMPLETE,
                EventOutcome.SUCCESS if job.failed == 0 else EventOutcome.WARNING,
                f"Batch '{batch.name}' processed: {job.completed} succeeded, {job.failed} failed",
                batch_id=batch.id,
                detail={"completed": job.completed, "failed": job.failed},
                progress=100,
            )
            return job

        except ProcessingStopped as e:
            self._mark_interrupted(batch, job, e)
            raise

        except Exception as e:
            self._mark_failed(batch, e)
            raise

        finally:
            self.jobs.deregister(batch.id)

    def _run_photos(self, batch: Batch, photos: list[Photo]) -> None:
        total = len(photos)
        if total == 0:
            return

        workers = min(batch.concurrency or self.settings.photo_workers, total)
        results: queue.Queue = queue.Queue()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"batch-{batch.id}")

        try:
            for photo in photos:
                executor.submit(self._photo_worker, batch, photo, results)

            done = 0
            while done < total:
                if self._stop_event.is_set():
                    # Photos not yet started stay pending for the next run
                    executor.shutdown(wait=True, cancel_futures=True)
                    done = self._drain_results(batch, results, done, total)
                    if done < total:
                        raise ProcessingStopped(batch.id, done, total)
                    break
                try:
                    photo, error = results.get(timeout=RESULT_POLL_INTERVAL)
                except queue.Empty:
                    continue
                done += 1
                self._record_result(batch, photo, error, done, total)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _drain_results(self, batch: Batch, results: queue.Queue, done: int, total: int) -> int:
        while True:
            try:
                photo, error = results.get_nowait()
            except queue.Empty:
                return done
            done += 1
            self._record_result(batch, photo, error, done, total)

    def _photo_worker(self, batch: Batch, photo: Photo, results: queue.Queue) -> None:
        try:
            self._annotate_photo(batch, photo)
        except Exception as e:
            results.put((photo, e))
        else:
            results.put((photo, None))

    def _annotate_photo(self, batch: Batch, photo: Photo) -> None:
        """
        Run the per-photo pipeline.

        Raises:
            CollaboratorError: If preparation, annotation or saving fails.
        """
        self._enter_step(batch, photo, PhotoStep.PREPARATION, f"Preparing {photo.filename}")
        self.preparer.prepare(photo)
        try:
            self.photos.update_preparation(photo.id, photo.preview_path, photo.context_metadata)
        except Exception as e:
            logger.warning(f"Could not store preview of {photo.filename}: {e}")

        self._enter_step(batch, photo, PhotoStep.AI_ANALYSIS, f"Annotating {photo.filename}")
        result = self.annotator.annotate(
            photo, batch.description, batch.classification, self.annotation_settings
        )

        self._enter_step(batch, photo, PhotoStep.SAVING, f"Saving annotation of {photo.filename}")
        if not self.photos.save_annotation(photo.id, result.to_dict()):
            raise NotFoundError(f"Photo {photo.id} no longer exists")

        self._enter_step(
            batch, photo, PhotoStep.EXIF_WRITING, f"Embedding metadata into {photo.filename}"
        )
        try:
            self.metadata_writer.embed(photo.original_path, result)
        except Exception as e:
            self.events.record(
                EventType.AI_PROCESSING,
                EventOutcome.WARNING,
                f"Metadata not embedded into {photo.filename}: {e}",
                batch_id=batch.id,
                photo_id=photo.id,
                progress=STEP_PROGRESS[PhotoStep.EXIF_WRITING],
            )

    def _enter_step(self, batch: Batch, photo: Photo, step: str, message: str) -> None:
        self.jobs.update(batch.id, lambda job: job.start_step(photo.id, step))
        self.events.record(
            EventType.AI_PROCESSING,
            EventOutcome.PROGRESS,
            message,
            batch_id=batch.id,
            photo_id=photo.id,
            detail={"step": step},
            progress=STEP_PROGRESS[step],
        )

    def _record_result(
        self,
        batch: Batch,
        photo: Photo,
        error: Exception | None,
        done: int,
        total: int
    ) -> None:
        progress = done * 100 // total

        if error is None:
            self.photos.mark_processed(photo.id)
            self.events.record(
                EventType.AI_PROCESSING,
                EventOutcome.SUCCESS,
                f"Processed {photo.filename} ({done}/{total})",
                batch_id=batch.id,
                photo_id=photo.id,
                progress=progress,
            )
        else:
            self.photos.mark_failed(photo.id, str(error))
            kind = getattr(error, "kind", None)
            self.events.record(
                EventType.AI_PROCESSING,
                EventOutcome.FAILED,
                f"Failed to process {photo.filename}: {error}",
                batch_id=batch.id,
                photo_id=photo.id,
                detail={"error": str(error), "kind": kind.value if kind else None},
                progress=progress,
            )

        self.jobs.update(batch.id, lambda job: job.finish_photo(photo.id, error, done))
        self.batches.update_progress(batch.id, progress)

    def _mark_interrupted(self, batch: Batch, job: ProcessingJob, error: ProcessingStopped) -> None:
        try:
            self.batches.update_status(
                batch.id, BatchStatus.INTERRUPTED, error_message=str(error), progress=job.progress
            )
        except Exception as e:
            logger.error(f"Could not mark batch {batch.id} interrupted: {e}")
        self.events.record(
            EventType.BATCH_INTERRUPTED,
            EventOutcome.WARNING,
            f"Batch '{batch.name}' interrupted after {error.completed}/{error.total} photo(s)",
            batch_id=batch.id,
            detail={"completed": error.completed, "total": error.total},
            progress=job.progress,
        )

    def _mark_failed(self, batch: Batch, error: Exception) -> None:
        try:
            self.batches.update_status(batch.id, BatchStatus.FAILED, error_message=str(error))
        except Exception as e:
            logger.error(f"Could not mark batch {batch.id} failed: {e}")
        self.events.record(
            EventType.BATCH_FAILED,
            EventOutcome.FAILED,
            f"Batch '{batch.name}' failed: {error}",
            batch_id=batch.id,
            detail={"error": str(error)},
        )

    # ────────────────────────────────────────────────────────────────────────────
    # Queue Management
    # ────────────────────────────────────────────────────────────────────────────

    def requeue_batch(self, batch_id: int, retry_failed: bool = True) -> Batch:
        """
        Put a finished, failed or interrupted batch back on the queue.

        Raises:
            NotFoundError: If the batch does not exist.
            InvalidTransition: If the batch is being processed right now.
        """
        if batch_id in self.jobs:
            raise InvalidTransition(f"Batch {batch_id} is being processed")

        batch = self.batches.requeue(batch_id, retry_failed=retry_failed)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        self.events.record(
            EventType.BATCH_START,
            EventOutcome.STARTED,
            f"Batch '{batch.name}' re-queued",
            batch_id=batch.id,
            detail={"retry_failed": retry_failed},
        )
        return batch

    # ────────────────────────────────────────────────────────────────────────────
    # Status Queries
    # ────────────────────────────────────────────────────────────────────────────

    def get_processing_progress(self, batch_id: int) -> dict[str, Any] | None:
        """Snapshot of the live job for a batch, or None if not active."""
        return self.jobs.get_snapshot(batch_id)

    def get_queue_status(self) -> dict[str, Any]:
        """
        Summarize the work queue.

        Returns:
            Dictionary with the running flag, the number of active jobs
            and every queued, processing or interrupted batch.
        """
        batches = []
        for batch in self.batches.get_by_statuses(ACTIVE_BATCH_STATUSES):
            data = batch.to_dict()
            snapshot = self.jobs.get_snapshot(batch.id)
            if snapshot is not None:
                data["progress"] = snapshot["progress"]
                data["job"] = snapshot
            batches.append(data)

        return {
            "running": self.is_running,
            "active_jobs": len(self.jobs),
            "max_concurrent_batches": self.settings.max_concurrent_batches,
            "batches": batches,
        }

    def is_idle(self) -> bool:
        """True when nothing is queued and no batch is being processed."""
        return len(self.jobs) == 0 and self.batches.get_oldest_queued() is None

    def get_batch_details(self, batch_id: int) -> dict[str, Any]:
        """
        Full view of a batch with its photos, counts and live progress.

        Raises:
            NotFoundError: If the batch does not exist.
        """
        batch = self.batches.get_by_id(batch_id, with_photos=True)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        data = batch.to_dict(include_photos=True)
        data["counts"] = self.photos.count_by_status(batch_id)
        data["job"] = self.jobs.get_snapshot(batch_id)
        return data


def _mark_job_done(job: ProcessingJob) -> None:
    job.status = "completed"
    job.current_step = "completed"
    job.current_photo = None
    job.progress = 100
