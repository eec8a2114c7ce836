"""
Folder scanning for batch intake.

Finds the image files a batch is built from. Only formats accepted by
stock agencies are picked up; hidden files and empty files are skipped.
"""

import logging
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

# Formats accepted for submission
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".tif", ".tiff"}


class FileScanner:
    """
    Discovers image files in a source folder.

    Attributes:
        extensions: File extensions to include (lowercase, with dot).
        recursive: Whether to descend into subfolders.
    """

    def __init__(
        self,
        extensions: set[str] | None = None,
        recursive: bool = False
    ):
        self.extensions = {ext.lower() for ext in (extensions or IMAGE_EXTENSIONS)}
        self.recursive = recursive

    def scan(self, folder: str | Path) -> list[Path]:
        """
        List the image files of a folder.

        Args:
            folder: Folder to scan.

        Returns:
            Resolved image paths sorted case-insensitively by name.

        Raises:
            ValueError: If the folder doesn't exist or isn't a directory.
        """
        folder = Path(folder).expanduser()

        if not folder.exists():
            raise ValueError(f"Folder does not exist: {folder}")

        if not folder.is_dir():
            raise ValueError(f"Path is not a directory: {folder}")

        images = sorted(self._iter_images(folder), key=lambda p: p.name.lower())
        logger.info(f"Found {len(images)} image(s) in {folder}")
        return images

    def _iter_images(self, folder: Path) -> Iterator[Path]:
        entries = folder.rglob("*") if self.recursive else folder.iterdir()
        for path in entries:
            if self.is_image(path):
                yield path.resolve()

    def is_image(self, path: Path) -> bool:
        """Check whether a path is a non-empty, visible image file."""
        return (
            path.is_file()
            and path.suffix.lower() in self.extensions
            and not path.name.startswith(".")
            and path.stat().st_size > 0
        )
