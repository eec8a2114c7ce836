"""
Application wiring shared by the CLI and the web API.
"""

from dataclasses import dataclass

from core.settings import AnnotationSettings, SchedulerSettings
from db.destination_operations import DestinationRepository
from db.event_operations import EventLogRepository
from db.operations import BatchRepository, PhotoRepository
from pipeline.annotator import Annotator
from pipeline.intake import BatchIntake
from pipeline.metadata_writer import MetadataWriter
from scheduler.batch_scheduler import BatchScheduler
from scheduler.progress import EventRecorder
from scheduler.recovery import RecoverySweep
from scheduler.review import PhotoReview
from scheduler.upload_scheduler import UploadScheduler
from uploaders.base import UploaderRegistry, default_registry


@dataclass
class Services:
    """Repositories, schedulers and review operations of one process."""
    settings: SchedulerSettings
    batches: BatchRepository
    photos: PhotoRepository
    destinations: DestinationRepository
    event_log: EventLogRepository
    events: EventRecorder
    registry: UploaderRegistry
    intake: BatchIntake
    batch_scheduler: BatchScheduler
    upload_scheduler: UploadScheduler
    review: PhotoReview
    recovery: RecoverySweep


def build_services(
    settings: SchedulerSettings | None = None,
    annotation_settings: AnnotationSettings | None = None,
    annotator: Annotator | None = None,
    registry: UploaderRegistry | None = None,
) -> Services:
    """
    Create the services with default collaborators.

    Args:
        settings: Scheduler settings (read from the environment if None).
        annotation_settings: Annotation settings (from the environment if None).
        annotator: Annotation client override.
        registry: Uploader registry override.

    Returns:
        Services sharing one set of repositories.
    """
    settings = settings or SchedulerSettings.from_env()
    annotation_settings = annotation_settings or AnnotationSettings.from_env()

    batches = BatchRepository()
    photos = PhotoRepository()
    destinations = DestinationRepository()
    event_log = EventLogRepository()
    events = EventRecorder(event_log)
    registry = registry or default_registry()
    metadata_writer = MetadataWriter()

    batch_scheduler = BatchScheduler(
        settings=settings,
        annotator=annotator or Annotator(annotation_settings),
        metadata_writer=metadata_writer,
        batch_repository=batches,
        photo_repository=photos,
        events=events,
    )
    upload_scheduler = UploadScheduler(
        settings=settings,
        registry=registry,
        photo_repository=photos,
        batch_repository=batches,
        destination_repository=destinations,
        events=events,
    )

    return Services(
        settings=settings,
        batches=batches,
        photos=photos,
        destinations=destinations,
        event_log=event_log,
        events=events,
        registry=registry,
        intake=BatchIntake(repository=batches),
        batch_scheduler=batch_scheduler,
        upload_scheduler=upload_scheduler,
        review=PhotoReview(
            photos,
            metadata_writer,
            events,
            batch_repository=batches,
            preparer=batch_scheduler.preparer,
            annotator=batch_scheduler.annotator,
        ),
        recovery=RecoverySweep(batches, photos, events),
    )
