"""
Error taxonomy for the photo stock pipeline.

Collaborators (preparation, annotation, embedding, upload) classify their
own failures with an ErrorKind so callers can decide whether to retry
without inspecting error messages.
"""

from enum import Enum


class ErrorKind(Enum):
    """How a failure should be treated by retry logic."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED})


class PipelineError(Exception):
    """Base exception for all pipeline errors."""
    pass


# ────────────────────────────────────────────────────────────────────────────────
# Collaborator Errors
# ────────────────────────────────────────────────────────────────────────────────

class CollaboratorError(PipelineError):
    """
    Failure reported by an external collaborator.

    Attributes:
        kind: Classification used by the retry policy.
        retry_after: Seconds the remote side asked us to wait, if known.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.PERMANENT,
        retry_after: float | None = None
    ):
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class PreparationError(CollaboratorError):
    """Preview generation or metadata extraction failed."""
    pass


class AnnotationError(CollaboratorError):
    """The annotation service call failed or returned an unusable response."""
    pass


class EmbedError(CollaboratorError):
    """Writing metadata into the image file failed."""
    pass


class UploadError(CollaboratorError):
    """Delivery to a destination failed."""
    pass


class StoreConflictError(PipelineError):
    """A concurrent writer changed the record between read and write."""

    kind = ErrorKind.TRANSIENT
    retry_after = None


# ────────────────────────────────────────────────────────────────────────────────
# Scheduler Errors
# ────────────────────────────────────────────────────────────────────────────────

class SchedulerError(PipelineError):
    """Base exception for scheduler control errors."""
    pass


class AlreadyRunning(SchedulerError):
    """Start was called while the dispatch loop is active."""
    pass


class NoActiveDestinations(SchedulerError):
    """No active destination supports the batch classification."""
    pass


class ProcessingStopped(SchedulerError):
    """Processing was interrupted by an operator stop request."""

    def __init__(self, batch_id: int, completed: int, total: int):
        super().__init__(
            f"Processing of batch {batch_id} stopped after "
            f"{completed}/{total} photo(s)"
        )
        self.batch_id = batch_id
        self.completed = completed
        self.total = total


# ────────────────────────────────────────────────────────────────────────────────
# Lookup / Validation Errors
# ────────────────────────────────────────────────────────────────────────────────

class NotFoundError(PipelineError, LookupError):
    """A batch, photo or destination does not exist."""
    pass


class InvalidTransition(PipelineError, ValueError):
    """The requested status change is not allowed from the current status."""
    pass
