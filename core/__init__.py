"""
Shared building blocks for the photo stock pipeline.

Provides the typed error taxonomy, the retry policy used by collaborators
and the store flush, and settings loaded from environment variables.
"""

from core.errors import (
    AlreadyRunning,
    AnnotationError,
    CollaboratorError,
    EmbedError,
    ErrorKind,
    InvalidTransition,
    NoActiveDestinations,
    NotFoundError,
    PipelineError,
    PreparationError,
    ProcessingStopped,
    SchedulerError,
    StoreConflictError,
    UploadError,
)
from core.retry import RetryPolicy, call_with_retry
from core.settings import AnnotationSettings, SchedulerSettings

__all__ = [
    "AlreadyRunning",
    "AnnotationError",
    "CollaboratorError",
    "EmbedError",
    "ErrorKind",
    "InvalidTransition",
    "NoActiveDestinations",
    "NotFoundError",
    "PipelineError",
    "PreparationError",
    "ProcessingStopped",
    "SchedulerError",
    "StoreConflictError",
    "UploadError",
    "RetryPolicy",
    "call_with_retry",
    "AnnotationSettings",
    "SchedulerSettings",
]
