"""
Photo preparation before annotation.

Creates the preview that is sent to the annotation service and collects
contextual metadata. Results are set on the photo object in place; the
scheduler persists them.
"""

import logging

from PIL import UnidentifiedImageError

from core.errors import ErrorKind, PreparationError
from db.models import Photo
from pipeline.metadata_extractor import MetadataExtractor
from pipeline.thumbnail_generator import ThumbnailGenerator

logger = logging.getLogger(__name__)


class PhotoPreparer:
    """Runs preview generation and metadata extraction for a photo."""

    def __init__(
        self,
        thumbnails: ThumbnailGenerator | None = None,
        extractor: MetadataExtractor | None = None
    ):
        self.thumbnails = thumbnails or ThumbnailGenerator()
        self.extractor = extractor or MetadataExtractor()

    def prepare(self, photo: Photo) -> None:
        """
        Populate preview_path and context_metadata on the photo.

        Args:
            photo: Photo to prepare (modified in place).

        Raises:
            PreparationError: If the original is missing or unreadable.
        """
        try:
            photo.preview_path = self.thumbnails.generate(photo.original_path, photo.id)
        except FileNotFoundError as e:
            raise PreparationError(str(e), kind=ErrorKind.PERMANENT) from e
        except UnidentifiedImageError as e:
            raise PreparationError(
                f"Not a readable image: {photo.original_path}", kind=ErrorKind.PERMANENT
            ) from e
        except OSError as e:
            raise PreparationError(
                f"Failed to create preview for {photo.filename}: {e}",
                kind=ErrorKind.TRANSIENT
            ) from e

        try:
            photo.context_metadata = self.extractor.extract(photo.original_path)
        except Exception as e:
            # Metadata only enriches the prompt; a preview is enough to annotate
            logger.warning(f"Metadata extraction failed for {photo.filename}: {e}")
            photo.context_metadata = {}

        logger.debug(
            f"Prepared {photo.filename}: preview={photo.preview_path}, "
            f"{len(photo.context_metadata)} metadata field(s)"
        )
