"""
Database operations for batches and photos.

Provides BatchRepository and PhotoRepository with methods for:
- Creating batches together with their photos
- Querying the work queue (oldest queued batch first)
- Status transitions written with statement-level atomicity
- Optimistic read-modify-write of a photo's upload-status map
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from core.errors import StoreConflictError
from db.database import session_scope
from db.models import (
    Batch,
    BatchStatus,
    Classification,
    Photo,
    PhotoStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TERMINAL_BATCH_STATUSES = {BatchStatus.PROCESSED, BatchStatus.FAILED}


class BaseRepository:
    """
    Shared session handling for repositories.

    Can be used with a provided session or create its own per operation.
    """

    def __init__(self, session: Session | None = None):
        """
        Initialize repository with optional session.

        Args:
            session: SQLAlchemy session. If None, operations will
                    create their own sessions using session_scope().
        """
        self._session = session

    @contextmanager
    def _scope(self) -> Generator[Session, None, None]:
        if self._session:
            yield self._session
        else:
            with session_scope() as session:
                yield session


class BatchRepository(BaseRepository):
    """Repository for Batch database operations."""

    # ────────────────────────────────────────────────────────────────────────────
    # Create Operations
    # ────────────────────────────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        classification: Classification,
        folder_path: str,
        photo_paths: Iterable[str | Path],
        description: str | None = None,
        concurrency: int | None = None,
        status: BatchStatus = BatchStatus.QUEUED,
    ) -> Batch:
        """
        Create a batch and one pending photo per file.

        Args:
            name: Human readable batch label.
            classification: Content classification, inherited by the photos.
            folder_path: Source folder of the photos.
            photo_paths: Paths of the image files in the batch.
            description: Free-text description for the annotation service.
            concurrency: Photo worker count for this batch (None = default).
            status: Initial batch status.

        Returns:
            Created Batch instance with photos loaded.
        """
        batch = Batch(
            name=name,
            classification=classification,
            folder_path=str(folder_path),
            description=description,
            concurrency=concurrency,
            status=status,
            progress=0,
        )
        for path in photo_paths:
            path = Path(path)
            batch.photos.append(
                Photo(
                    classification=classification,
                    filename=path.name,
                    original_path=str(path),
                    status=PhotoStatus.PENDING,
                    context_metadata={},
                    upload_status={},
                    upload_status_version=0,
                )
            )

        with self._scope() as session:
            session.add(batch)
            session.flush()
            session.refresh(batch)
            # Load photos before the session closes
            _ = list(batch.photos)

        logger.debug(f"Created batch record: {batch} with {len(batch.photos)} photo(s)")
        return batch

    # ────────────────────────────────────────────────────────────────────────────
    # Read Operations
    # ────────────────────────────────────────────────────────────────────────────

    def get_by_id(self, batch_id: int, with_photos: bool = False) -> Batch | None:
        """
        Get batch by ID.

        Args:
            batch_id: Primary key of the batch.
            with_photos: Eagerly load the batch photos.

        Returns:
            Batch instance or None if not found.
        """
        stmt = select(Batch).where(Batch.id == batch_id)
        if with_photos:
            stmt = stmt.options(selectinload(Batch.photos))

        with self._scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    def get_oldest_queued(self) -> Batch | None:
        """
        Get the oldest queued batch (FIFO by creation time).

        Returns:
            Batch instance or None if the queue is empty.
        """
        stmt = (
            select(Batch)
            .where(Batch.status == BatchStatus.QUEUED)
            .order_by(Batch.created_at.asc(), Batch.id.asc())
            .limit(1)
        )
        with self._scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    def get_by_statuses(self, statuses: Iterable[BatchStatus]) -> list[Batch]:
        """
        Get batches in any of the given statuses, oldest first.

        Args:
            statuses: Statuses to match.

        Returns:
            List of Batch instances.
        """
        stmt = (
            select(Batch)
            .where(Batch.status.in_(list(statuses)))
            .order_by(Batch.created_at.asc(), Batch.id.asc())
        )
        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def get_all(
        self,
        status: BatchStatus | None = None,
        limit: int | None = None
    ) -> list[Batch]:
        """
        Get batches, newest first.

        Args:
            status: Filter by status (optional).
            limit: Maximum number of batches to return.

        Returns:
            List of Batch instances.
        """
        stmt = select(Batch).order_by(Batch.created_at.desc(), Batch.id.desc())
        if status:
            stmt = stmt.where(Batch.status == status)
        if limit:
            stmt = stmt.limit(limit)

        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    # ────────────────────────────────────────────────────────────────────────────
    # Update Operations
    # ────────────────────────────────────────────────────────────────────────────

    def update_status(
        self,
        batch_id: int,
        status: BatchStatus,
        error_message: str | None = None,
        progress: int | None = None
    ) -> Batch | None:
        """
        Update batch status.

        Args:
            batch_id: Primary key of the batch.
            status: New status.
            error_message: Error details (cleared when None).
            progress: New aggregate progress (unchanged when None).

        Returns:
            Updated Batch instance or None if not found.
        """
        with self._scope() as session:
            batch = session.get(Batch, batch_id)
            if not batch:
                return None

            batch.status = status
            batch.error_message = error_message
            if progress is not None:
                batch.progress = progress
            if status in TERMINAL_BATCH_STATUSES:
                batch.completed_at = utcnow()
            session.flush()
            return batch

    def update_progress(self, batch_id: int, progress: int) -> None:
        """
        Persist the aggregate progress percentage of a batch.

        Args:
            batch_id: Primary key of the batch.
            progress: Percentage between 0 and 100.
        """
        stmt = update(Batch).where(Batch.id == batch_id).values(progress=progress)
        with self._scope() as session:
            session.execute(stmt)

    def requeue(self, batch_id: int, retry_failed: bool = True) -> Batch | None:
        """
        Put a batch back on the queue.

        Photos that were already processed are kept; with retry_failed,
        failed photos are reset to pending so they are annotated again.

        Args:
            batch_id: Primary key of the batch.
            retry_failed: Reset failed photos to pending.

        Returns:
            Updated Batch instance or None if not found.
        """
        with self._scope() as session:
            batch = session.get(Batch, batch_id)
            if not batch:
                return None

            if retry_failed:
                session.execute(
                    update(Photo)
                    .where(Photo.batch_id == batch_id)
                    .where(Photo.status == PhotoStatus.FAILED)
                    .values(status=PhotoStatus.PENDING, error_message=None)
                )

            batch.status = BatchStatus.QUEUED
            batch.error_message = None
            batch.completed_at = None
            session.flush()
            logger.info(f"Batch {batch_id} re-queued (retry_failed={retry_failed})")
            return batch

    # ────────────────────────────────────────────────────────────────────────────
    # Delete Operations
    # ────────────────────────────────────────────────────────────────────────────

    def delete(self, batch_id: int) -> bool:
        """
        Delete a batch and, by cascade, its photos.

        Args:
            batch_id: Primary key of the batch.

        Returns:
            True if deleted, False if not found.
        """
        with self._scope() as session:
            batch = session.get(Batch, batch_id)
            if batch:
                session.delete(batch)
                return True
            return False


class PhotoRepository(BaseRepository):
    """Repository for Photo database operations."""

    # ────────────────────────────────────────────────────────────────────────────
    # Read Operations
    # ────────────────────────────────────────────────────────────────────────────

    def get_by_id(self, photo_id: int) -> Photo | None:
        """
        Get photo by ID.

        Args:
            photo_id: Primary key of the photo.

        Returns:
            Photo instance or None if not found.
        """
        with self._scope() as session:
            return session.get(Photo, photo_id)

    def get_for_batch(
        self,
        batch_id: int,
        statuses: Iterable[PhotoStatus] | None = None
    ) -> list[Photo]:
        """
        Get a batch's photos in stable id order.

        Args:
            batch_id: Primary key of the batch.
            statuses: Restrict to these statuses (optional).

        Returns:
            List of Photo instances.
        """
        stmt = select(Photo).where(Photo.batch_id == batch_id).order_by(Photo.id)
        if statuses is not None:
            stmt = stmt.where(Photo.status.in_(list(statuses)))

        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def get_by_status(
        self,
        statuses: Iterable[PhotoStatus],
        batch_id: int | None = None
    ) -> list[Photo]:
        """
        Get photos in any of the given statuses.

        Args:
            statuses: Statuses to match.
            batch_id: Restrict to one batch (optional).

        Returns:
            List of Photo instances ordered by id.
        """
        stmt = select(Photo).where(Photo.status.in_(list(statuses))).order_by(Photo.id)
        if batch_id is not None:
            stmt = stmt.where(Photo.batch_id == batch_id)

        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def count_by_status(self, batch_id: int | None = None) -> dict[str, int]:
        """
        Count photos grouped by status.

        Args:
            batch_id: Restrict to one batch (optional).

        Returns:
            Mapping of status value to count.
        """
        stmt = select(Photo.status, func.count(Photo.id)).group_by(Photo.status)
        if batch_id is not None:
            stmt = stmt.where(Photo.batch_id == batch_id)

        with self._scope() as session:
            return {status.value: count for status, count in session.execute(stmt).all()}

    # ────────────────────────────────────────────────────────────────────────────
    # Update Operations
    # ────────────────────────────────────────────────────────────────────────────

    def update_status(
        self,
        photo_id: int,
        status: PhotoStatus,
        error_message: str | None = None
    ) -> Photo | None:
        """
        Update photo status.

        Args:
            photo_id: Primary key of the photo.
            status: New status.
            error_message: Error details (cleared when None).

        Returns:
            Updated Photo instance or None if not found.
        """
        with self._scope() as session:
            photo = session.get(Photo, photo_id)
            if not photo:
                return None

            photo.status = status
            photo.error_message = error_message
            session.flush()
            return photo

    def update_preparation(
        self,
        photo_id: int,
        preview_path: str | None,
        context_metadata: dict | None
    ) -> None:
        """
        Store the preview path and contextual metadata of a prepared photo.

        Args:
            photo_id: Primary key of the photo.
            preview_path: Path of the generated preview.
            context_metadata: Extracted key-value metadata.
        """
        stmt = (
            update(Photo)
            .where(Photo.id == photo_id)
            .values(preview_path=preview_path, context_metadata=context_metadata or {})
        )
        with self._scope() as session:
            session.execute(stmt)

    def save_annotation(self, photo_id: int, annotation: dict) -> bool:
        """
        Store an annotation result and mark the photo processed.

        Both columns are written in one statement so a photo never holds
        a result without being processed.

        Args:
            photo_id: Primary key of the photo.
            annotation: Annotation result as a dictionary.

        Returns:
            True if the photo was updated, False if not found.
        """
        stmt = (
            update(Photo)
            .where(Photo.id == photo_id)
            .values(
                annotation=annotation,
                status=PhotoStatus.PROCESSED,
                error_message=None,
                processed_at=utcnow(),
            )
        )
        with self._scope() as session:
            return session.execute(stmt).rowcount > 0

    def mark_processed(self, photo_id: int) -> Photo | None:
        """Mark photo as processed."""
        with self._scope() as session:
            photo = session.get(Photo, photo_id)
            if not photo:
                return None

            photo.status = PhotoStatus.PROCESSED
            photo.error_message = None
            if photo.processed_at is None:
                photo.processed_at = utcnow()
            session.flush()
            return photo

    def mark_failed(self, photo_id: int, error_message: str) -> Photo | None:
        """
        Mark photo as failed and drop any annotation result.

        Args:
            photo_id: Primary key of the photo.
            error_message: Error details.

        Returns:
            Updated Photo instance or None if not found.
        """
        with self._scope() as session:
            photo = session.get(Photo, photo_id)
            if not photo:
                return None

            photo.status = PhotoStatus.FAILED
            photo.error_message = error_message
            photo.annotation = None
            session.flush()
            return photo

    def update_annotation(self, photo_id: int, annotation: dict) -> Photo | None:
        """
        Replace a photo's annotation result (reviewer edits).

        Args:
            photo_id: Primary key of the photo.
            annotation: New annotation result.

        Returns:
            Updated Photo instance or None if not found.
        """
        with self._scope() as session:
            photo = session.get(Photo, photo_id)
            if not photo:
                return None

            photo.annotation = dict(annotation)
            session.flush()
            return photo

    def reset_for_reprocessing(self, photo_id: int) -> Photo | None:
        """Return a photo to pending and clear its annotation result."""
        with self._scope() as session:
            photo = session.get(Photo, photo_id)
            if not photo:
                return None

            photo.status = PhotoStatus.PENDING
            photo.annotation = None
            photo.error_message = None
            photo.processed_at = None
            session.flush()
            return photo

    # ────────────────────────────────────────────────────────────────────────────
    # Upload Status Map
    # ────────────────────────────────────────────────────────────────────────────

    def update_upload_status(
        self,
        photo_id: int,
        destination_id: int | str,
        status: str
    ) -> dict[str, str]:
        """
        Set one destination's entry in the photo's upload-status map.

        Performs a single optimistic read-modify-write; callers retry on
        StoreConflictError.

        Args:
            photo_id: Primary key of the photo.
            destination_id: Destination whose entry is written.
            status: Destination status value.

        Returns:
            The upload-status map as written.

        Raises:
            StoreConflictError: If another writer changed the map first or
                the store reported a transient write failure.
        """
        key = str(destination_id)

        def mutate(current: dict[str, str]) -> dict[str, str]:
            current[key] = status
            return current

        return self.modify_upload_status(photo_id, mutate)

    def set_upload_entries(
        self,
        photo_id: int,
        destination_ids: Iterable[int | str],
        status: str
    ) -> dict[str, str]:
        """Set several destinations' entries to the same status in one write."""
        keys = [str(destination_id) for destination_id in destination_ids]

        def mutate(current: dict[str, str]) -> dict[str, str]:
            for key in keys:
                current[key] = status
            return current

        return self.modify_upload_status(photo_id, mutate)

    def modify_upload_status(
        self,
        photo_id: int,
        mutate: Callable[[dict[str, str]], dict[str, str]]
    ) -> dict[str, str]:
        """
        Apply a change to the upload-status map guarded by its version.

        Args:
            photo_id: Primary key of the photo.
            mutate: Receives a copy of the current map and returns the new one.

        Returns:
            The upload-status map as written.

        Raises:
            StoreConflictError: If the version moved or the write failed
                transiently.
            LookupError: If the photo does not exist.
        """
        try:
            with self._scope() as session:
                row = session.execute(
                    select(Photo.upload_status, Photo.upload_status_version)
                    .where(Photo.id == photo_id)
                ).one_or_none()
                if row is None:
                    raise LookupError(f"Photo {photo_id} not found")

                current, version = row
                new_map = mutate(dict(current or {}))

                result = session.execute(
                    update(Photo)
                    .where(Photo.id == photo_id)
                    .where(Photo.upload_status_version == version)
                    .values(upload_status=new_map, upload_status_version=version + 1)
                )
                if result.rowcount == 0:
                    raise StoreConflictError(
                        f"Upload status of photo {photo_id} changed concurrently "
                        f"(version {version})"
                    )
                return new_map

        except OperationalError as e:
            raise StoreConflictError(
                f"Transient store error writing upload status of photo {photo_id}: {e}"
            ) from e
