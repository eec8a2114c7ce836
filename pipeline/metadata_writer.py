"""
Embedding annotation metadata into image files.

Writes the title, description, keywords and category into the EXIF block
of the original JPEG so the file carries its metadata to FTP-based
destinations. Windows XP* tags are used for keywords, which most stock
agencies read alongside IPTC.
"""

import logging
from pathlib import Path

import piexif

from core.errors import EmbedError, ErrorKind
from pipeline.annotator import AnnotationResult

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".jpg", ".jpeg"}


def _xp(text: str) -> bytes:
    """Encode text for the XP* tags (UTF-16LE, null terminated)."""
    return (text + "\x00").encode("utf-16le")


class MetadataWriter:
    """Writes AnnotationResult fields into image EXIF."""

    def embed(self, original_path: str | Path, result: AnnotationResult) -> None:
        """
        Embed annotation metadata into an image file in place.

        Args:
            original_path: Image file to modify.
            result: Annotation to write.

        Raises:
            EmbedError: If the file is missing, unsupported or cannot be written.
        """
        path = Path(original_path)
        if not path.exists():
            raise EmbedError(f"File not found: {path}", kind=ErrorKind.PERMANENT)
        if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise EmbedError(
                f"Embedding metadata is not supported for {path.suffix} files",
                kind=ErrorKind.PERMANENT
            )

        try:
            exif = piexif.load(str(path))
        except Exception as e:
            raise EmbedError(f"Cannot read EXIF from {path.name}: {e}", kind=ErrorKind.PERMANENT) from e

        ifd_0 = exif.setdefault("0th", {})
        ifd_0[piexif.ImageIFD.ImageDescription] = (result.description or result.title).encode("utf-8")
        ifd_0[piexif.ImageIFD.XPTitle] = _xp(result.title)
        ifd_0[piexif.ImageIFD.XPComment] = _xp(result.description)
        ifd_0[piexif.ImageIFD.XPKeywords] = _xp(";".join(result.keywords))
        if result.category:
            ifd_0[piexif.ImageIFD.XPSubject] = _xp(result.category)

        # Embedded thumbnails often break re-serialisation
        exif.pop("thumbnail", None)
        exif["1st"] = {}

        try:
            piexif.insert(piexif.dump(exif), str(path))
        except PermissionError as e:
            raise EmbedError(f"No permission to write {path.name}", kind=ErrorKind.PERMANENT) from e
        except OSError as e:
            raise EmbedError(f"Failed to write {path.name}: {e}", kind=ErrorKind.TRANSIENT) from e
        except Exception as e:
            raise EmbedError(f"Failed to encode EXIF for {path.name}: {e}", kind=ErrorKind.PERMANENT) from e

        logger.debug(
            f"Embedded metadata into {path.name}: title='{result.title}', "
            f"{len(result.keywords)} keyword(s)"
        )
