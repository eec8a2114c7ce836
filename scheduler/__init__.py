from scheduler.batch_scheduler import BatchScheduler
from scheduler.jobs import PhotoProgress, PhotoStep, ProcessingJob, UploadJob
from scheduler.progress import ActiveJobRegistry, EventRecorder, EventType
from scheduler.recovery import RecoverySweep
from scheduler.review import PhotoReview
from scheduler.services import Services, build_services
from scheduler.upload_scheduler import UploadScheduler

__all__ = [
    "ActiveJobRegistry",
    "BatchScheduler",
    "EventRecorder",
    "EventType",
    "PhotoProgress",
    "PhotoReview",
    "PhotoStep",
    "ProcessingJob",
    "RecoverySweep",
    "Services",
    "UploadJob",
    "UploadScheduler",
    "build_services",
]
