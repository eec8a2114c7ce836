"""
Batch intake: turns a folder of images into a queued batch.
"""

import logging
from datetime import datetime
from pathlib import Path

from db.models import Batch, BatchStatus, Classification
from db.operations import BatchRepository
from pipeline.file_scanner import FileScanner

logger = logging.getLogger(__name__)


def parse_classification(value: Classification | str) -> Classification:
    """
    Convert a classification name to the enum.

    Raises:
        ValueError: If the value is not a known classification.
    """
    if isinstance(value, Classification):
        return value
    try:
        return Classification(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(c.value for c in Classification)
        raise ValueError(f"Unknown classification '{value}' (expected one of: {valid})") from None


class BatchIntake:
    """Creates batches from source folders."""

    def __init__(
        self,
        repository: BatchRepository | None = None,
        scanner: FileScanner | None = None
    ):
        self.repository = repository or BatchRepository()
        self.scanner = scanner or FileScanner()

    def submit_folder(
        self,
        folder: str | Path,
        classification: Classification | str,
        description: str | None = None,
        name: str | None = None,
        concurrency: int | None = None,
    ) -> Batch:
        """
        Scan a folder and persist it as a queued batch.

        Args:
            folder: Folder containing the images.
            classification: editorial or commercial.
            description: Free-text description for annotation.
            name: Batch label (defaults to batch_<timestamp>).
            concurrency: Photo worker count for this batch.

        Returns:
            The created batch, with its photos in pending status.

        Raises:
            ValueError: If the folder is invalid or holds no images, the
                classification is unknown, or concurrency is not positive.
        """
        classification = parse_classification(classification)
        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        folder = Path(folder).expanduser().resolve()
        photos = self.scanner.scan(folder)
        if not photos:
            raise ValueError(f"No images found in {folder}")

        batch = self.repository.create(
            name=name or f"batch_{datetime.now():%Y%m%d_%H%M%S}",
            classification=classification,
            folder_path=str(folder),
            photo_paths=photos,
            description=description,
            concurrency=concurrency,
            status=BatchStatus.QUEUED,
        )

        logger.info(
            f"Queued batch {batch.id} ({batch.name}): {len(photos)} "
            f"{classification.value} photo(s) from {folder}"
        )
        return batch
