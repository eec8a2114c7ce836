"""
Human review of annotated photos.

Approve and reject are idempotent: repeating the current decision is a
no-op. Approval re-embeds the (possibly edited) annotation into the
original file so FTP destinations receive up-to-date metadata. A single
photo can also be annotated again without re-queuing its batch.
"""

import logging
from typing import Any

from core.errors import InvalidTransition, NotFoundError
from core.settings import AnnotationSettings
from db.models import EventOutcome, Photo, PhotoStatus
from db.operations import BatchRepository, PhotoRepository
from pipeline.annotator import AnnotationResult, Annotator
from pipeline.metadata_writer import MetadataWriter
from pipeline.preparer import PhotoPreparer
from scheduler.progress import EventRecorder, EventType

logger = logging.getLogger(__name__)

APPROVABLE_STATUSES = {
    PhotoStatus.PROCESSED,
    PhotoStatus.REJECTED,
    PhotoStatus.UPLOAD_FAILED,
    PhotoStatus.PARTIALLY_UPLOADED,
}
REJECTABLE_STATUSES = {PhotoStatus.PROCESSED, PhotoStatus.APPROVED}
EDITABLE_STATUSES = {PhotoStatus.PROCESSED, PhotoStatus.APPROVED, PhotoStatus.REJECTED}
REGENERATABLE_STATUSES = EDITABLE_STATUSES | {
    PhotoStatus.FAILED,
    PhotoStatus.UPLOAD_FAILED,
    PhotoStatus.PARTIALLY_UPLOADED,
}

# Statuses an operator may force with set_status
MANUAL_STATUSES = {
    PhotoStatus.PENDING,
    PhotoStatus.PROCESSED,
    PhotoStatus.APPROVED,
    PhotoStatus.REJECTED,
}


class PhotoReview:
    """Review decisions and annotation edits for individual photos."""

    def __init__(
        self,
        photo_repository: PhotoRepository | None = None,
        metadata_writer: MetadataWriter | None = None,
        events: EventRecorder | None = None,
        batch_repository: BatchRepository | None = None,
        preparer: PhotoPreparer | None = None,
        annotator: Annotator | None = None,
        annotation_settings: AnnotationSettings | None = None,
    ):
        self.photos = photo_repository or PhotoRepository()
        self.metadata_writer = metadata_writer or MetadataWriter()
        self.events = events or EventRecorder()
        self.batches = batch_repository or BatchRepository()
        self.preparer = preparer or PhotoPreparer()
        self.annotator = annotator or Annotator()
        self.annotation_settings = annotation_settings

    def _get(self, photo_id: int) -> Photo:
        photo = self.photos.get_by_id(photo_id)
        if photo is None:
            raise NotFoundError(f"Photo {photo_id} not found")
        return photo

    def approve(self, photo_id: int) -> Photo:
        """
        Approve a photo for upload.

        Args:
            photo_id: Primary key of the photo.

        Returns:
            The approved photo.

        Raises:
            NotFoundError: If the photo does not exist.
            InvalidTransition: If the photo has no annotation or is not
                in a reviewable status.
        """
        photo = self._get(photo_id)
        if photo.status == PhotoStatus.APPROVED:
            return photo
        if photo.status not in APPROVABLE_STATUSES:
            raise InvalidTransition(
                f"Photo {photo_id} cannot be approved while {photo.status.value}"
            )
        if not photo.annotation:
            raise InvalidTransition(f"Photo {photo_id} has no annotation to approve")

        previous = photo.status
        photo = self.photos.update_status(photo_id, PhotoStatus.APPROVED)
        self._embed(photo)
        self._record_change(photo, previous)
        return photo

    def reject(self, photo_id: int, reason: str | None = None) -> Photo:
        """
        Reject a photo so it is never uploaded.

        Raises:
            NotFoundError: If the photo does not exist.
            InvalidTransition: If the photo is not processed or approved.
        """
        photo = self._get(photo_id)
        if photo.status == PhotoStatus.REJECTED:
            return photo
        if photo.status not in REJECTABLE_STATUSES:
            raise InvalidTransition(
                f"Photo {photo_id} cannot be rejected while {photo.status.value}"
            )

        previous = photo.status
        photo = self.photos.update_status(photo_id, PhotoStatus.REJECTED, error_message=reason)
        self._record_change(photo, previous, reason)
        return photo

    def reset_to_processed(self, photo_id: int) -> Photo:
        """
        Undo a review decision or a failed upload.

        Raises:
            NotFoundError: If the photo does not exist.
            InvalidTransition: If the photo has no annotation or is queued
                or uploading.
        """
        photo = self._get(photo_id)
        if photo.status == PhotoStatus.PROCESSED:
            return photo
        allowed = APPROVABLE_STATUSES | {PhotoStatus.APPROVED}
        if photo.status not in allowed or not photo.annotation:
            raise InvalidTransition(
                f"Photo {photo_id} cannot be reset while {photo.status.value}"
            )

        previous = photo.status
        photo = self.photos.update_status(photo_id, PhotoStatus.PROCESSED)
        self._record_change(photo, previous)
        return photo

    def update_annotation(self, photo_id: int, **fields: Any) -> Photo:
        """
        Edit annotation fields (title, description, keywords, category).

        Raises:
            NotFoundError: If the photo does not exist.
            InvalidTransition: If the photo is not awaiting or past review.
            ValueError: If the edited annotation is invalid.
        """
        photo = self._get(photo_id)
        if photo.status not in EDITABLE_STATUSES or not photo.annotation:
            raise InvalidTransition(
                f"Annotation of photo {photo_id} cannot be edited while {photo.status.value}"
            )

        merged = {**photo.annotation, **{k: v for k, v in fields.items() if v is not None}}
        result = AnnotationResult.from_dict(merged)
        photo = self.photos.update_annotation(photo_id, result.to_dict())
        if photo.status == PhotoStatus.APPROVED:
            self._embed(photo)
        logger.info(f"Annotation of {photo.filename} updated ({', '.join(sorted(fields))})")
        return photo

    def set_status(self, photo_id: int, status: PhotoStatus | str) -> Photo:
        """
        Force a photo into a status (operator override).

        Setting pending clears the annotation so the photo is annotated
        again when its batch is re-queued.

        Raises:
            NotFoundError: If the photo does not exist.
            InvalidTransition: If the status is unknown, not settable by
                hand, or requires an annotation the photo lacks.
        """
        try:
            status = PhotoStatus(status)
        except ValueError as e:
            raise InvalidTransition(f"Unknown photo status: {status}") from e
        if status not in MANUAL_STATUSES:
            raise InvalidTransition(f"Status {status.value} cannot be set by hand")

        photo = self._get(photo_id)
        previous = photo.status
        if status == previous:
            return photo

        if status == PhotoStatus.PENDING:
            photo = self.photos.reset_for_reprocessing(photo_id)
        else:
            if not photo.annotation:
                raise InvalidTransition(f"Photo {photo_id} has no annotation")
            photo = self.photos.update_status(photo_id, status)

        self._record_change(photo, previous)
        return photo

    def regenerate(self, photo_id: int, description: str | None = None) -> Photo:
        """
        Annotate one photo again and send it back to review.

        The photo is prepared, annotated with its batch description (plus
        the optional extra description) and saved as processed. The
        previous annotation is kept if annotation fails.

        Args:
            photo_id: Primary key of the photo.
            description: Extra guidance for the annotation (optional).

        Returns:
            The photo with its new annotation.

        Raises:
            NotFoundError: If the photo or its batch does not exist.
            InvalidTransition: If the photo is pending, queued or uploading.
            CollaboratorError: If preparation or annotation fails.
        """
        photo = self._get(photo_id)
        if photo.status not in REGENERATABLE_STATUSES:
            raise InvalidTransition(
                f"Photo {photo_id} cannot be annotated again while {photo.status.value}"
            )
        batch = self.batches.get_by_id(photo.batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {photo.batch_id} not found")

        guidance = "\n".join(part for part in (batch.description, description) if part)
        previous = photo.status
        try:
            self.preparer.prepare(photo)
            self.photos.update_preparation(photo.id, photo.preview_path, photo.context_metadata)
            result = self.annotator.annotate(
                photo, guidance or None, batch.classification, self.annotation_settings
            )
        except Exception as e:
            self.events.record(
                EventType.AI_PROCESSING,
                EventOutcome.FAILED,
                f"Could not annotate {photo.filename} again: {e}",
                batch_id=photo.batch_id,
                photo_id=photo.id,
                detail={"error": str(e), "regenerate": True},
            )
            raise

        if not self.photos.save_annotation(photo.id, result.to_dict()):
            raise NotFoundError(f"Photo {photo_id} not found")
        photo = self._get(photo_id)
        self._embed(photo)
        self.events.record(
            EventType.AI_PROCESSING,
            EventOutcome.SUCCESS,
            f"Annotated {photo.filename} again",
            batch_id=photo.batch_id,
            photo_id=photo.id,
            detail={"regenerate": True, "description": description},
        )
        if previous != photo.status:
            self._record_change(photo, previous)
        return photo

    def _embed(self, photo: Photo) -> None:
        try:
            self.metadata_writer.embed(photo.original_path, AnnotationResult.from_dict(photo.annotation))
        except Exception as e:
            logger.warning(f"Could not embed metadata into {photo.filename}: {e}")

    def _record_change(self, photo: Photo, previous: PhotoStatus, reason: str | None = None) -> None:
        message = f"{photo.filename}: {previous.value} -> {photo.status.value}"
        if reason:
            message += f" ({reason})"
        self.events.record(
            EventType.PHOTO_STATUS_CHANGED,
            EventOutcome.SUCCESS,
            message,
            batch_id=photo.batch_id,
            photo_id=photo.id,
            detail={"from": previous.value, "to": photo.status.value},
        )
