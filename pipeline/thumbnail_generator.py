"""
Preview generation for annotation and review.

Previews are downscaled JPEG copies sent to the annotation service instead
of full-size originals. They are stored in subfolders derived from the
photo id to keep directory sizes small (previews/000/042/photo_42.jpg).
"""

import logging
from pathlib import Path

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 512
DEFAULT_QUALITY = 85


class ThumbnailGenerator:
    """
    Generates JPEG previews for photos.

    Attributes:
        output_dir: Root folder for previews.
        width: Longest-side target in pixels; smaller images are not upscaled.
        quality: JPEG quality (1-100).
    """

    def __init__(
        self,
        output_dir: str | Path = "thumbnails",
        width: int = DEFAULT_WIDTH,
        quality: int = DEFAULT_QUALITY
    ):
        self.output_dir = Path(output_dir)
        self.width = width
        self.quality = quality

    def preview_path(self, photo_id: int, filename: str) -> Path:
        """
        Location of the preview for a photo.

        Args:
            photo_id: Database ID of the photo.
            filename: Original filename, used for a readable name.

        Returns:
            Path of the preview file.
        """
        id_str = f"{photo_id:06d}"
        stem = Path(filename).stem
        return self.output_dir / id_str[:3] / id_str[3:] / f"{stem}_{photo_id}.jpg"

    def generate(self, source_path: str | Path, photo_id: int) -> str:
        """
        Create (or overwrite) the preview of an image.

        Args:
            source_path: Original image file.
            photo_id: Database ID of the photo.

        Returns:
            Path of the written preview.

        Raises:
            FileNotFoundError: If the source image is missing.
            OSError: If the image cannot be decoded or written.
        """
        source_path = Path(source_path)
        if not source_path.exists():
            raise FileNotFoundError(f"Source image not found: {source_path}")

        target = self.preview_path(photo_id, source_path.name)
        target.parent.mkdir(parents=True, exist_ok=True)

        with Image.open(source_path) as img:
            # Respect camera orientation before resizing
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")

            img.thumbnail((self.width, self.width), Image.Resampling.LANCZOS)
            img.save(target, format="JPEG", quality=self.quality, optimize=True)

        logger.debug(f"Generated preview: {target}")
        return str(target)
