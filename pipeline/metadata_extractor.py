"""
Contextual metadata extraction.

Collects the facts about a photo that help the annotation service write
accurate editorial captions: dimensions, camera, capture date and, when
GPS data is present, the country and place name (offline reverse
geocoding).
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import piexif
import pycountry
import reverse_geocoder as rg
from PIL import Image

logger = logging.getLogger(__name__)

EXIF_DATE_FORMATS = ("%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S")


class MetadataExtractor:
    """
    Extracts contextual metadata from image files.

    All returned values are JSON serialisable so the result can be stored
    on the photo record as-is.
    """

    def __init__(self, geocode: bool = True):
        """
        Args:
            geocode: Resolve GPS coordinates to country/location names.
        """
        self.geocode = geocode

    def extract(self, filepath: str | Path) -> dict[str, Any]:
        """
        Extract contextual metadata from an image.

        Args:
            filepath: Path to the image file.

        Returns:
            Dictionary of metadata; keys are omitted when unknown.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            OSError: If the file is not a decodable image.
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        context: dict[str, Any] = {"file_size": filepath.stat().st_size}

        with Image.open(filepath) as img:
            context["width"] = img.width
            context["height"] = img.height
            context["format"] = img.format
            exif_bytes = img.info.get("exif")

        if exif_bytes:
            try:
                self._read_exif(piexif.load(exif_bytes), context)
            except Exception as e:
                logger.debug(f"Could not parse EXIF of {filepath.name}: {e}")

        if self.geocode and "gps_latitude" in context and "gps_longitude" in context:
            self._reverse_geocode(context)

        logger.debug(f"Extracted {len(context)} metadata field(s) from {filepath.name}")
        return {key: value for key, value in context.items() if value not in (None, "")}

    def _read_exif(self, exif: dict, context: dict[str, Any]) -> None:
        ifd_0 = exif.get("0th", {})
        context["camera_make"] = _decode(ifd_0.get(piexif.ImageIFD.Make))
        context["camera_model"] = _decode(ifd_0.get(piexif.ImageIFD.Model))
        context["artist"] = _decode(ifd_0.get(piexif.ImageIFD.Artist))
        context["copyright"] = _decode(ifd_0.get(piexif.ImageIFD.Copyright))

        exif_ifd = exif.get("Exif", {})
        taken = _parse_date(_decode(exif_ifd.get(piexif.ExifIFD.DateTimeOriginal)))
        if taken:
            context["date_taken"] = taken.isoformat()

        gps = exif.get("GPS", {})
        if gps:
            lat = _dms_to_decimal(
                gps.get(piexif.GPSIFD.GPSLatitude),
                gps.get(piexif.GPSIFD.GPSLatitudeRef, b"N")
            )
            lon = _dms_to_decimal(
                gps.get(piexif.GPSIFD.GPSLongitude),
                gps.get(piexif.GPSIFD.GPSLongitudeRef, b"E")
            )
            if lat is not None and lon is not None:
                context["gps_latitude"] = lat
                context["gps_longitude"] = lon

    def _reverse_geocode(self, context: dict[str, Any]) -> None:
        lat, lon = context["gps_latitude"], context["gps_longitude"]
        try:
            results = rg.search((lat, lon), mode=1)
        except Exception as e:
            logger.debug(f"Reverse geocoding failed for ({lat}, {lon}): {e}")
            return

        if not results:
            return

        place = results[0]
        country_code = place.get("cc", "")
        if country_code:
            country = pycountry.countries.get(alpha_2=country_code)
            context["location_country"] = country.name if country else country_code

        parts = [part for part in (place.get("name"), place.get("admin1")) if part]
        if parts:
            context["location_name"] = ", ".join(parts)


def _decode(value: bytes | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        try:
            text = value.decode("utf-8")
        except UnicodeDecodeError:
            text = value.decode("latin-1")
    else:
        text = str(value)
    return text.strip().rstrip("\x00") or None


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    for fmt in EXIF_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    logger.debug(f"Could not parse date: {value}")
    return None


def _dms_to_decimal(dms: tuple | None, ref: bytes | str) -> float | None:
    """Convert EXIF (degrees, minutes, seconds) rationals to decimal degrees."""
    if not dms:
        return None
    try:
        degrees, minutes, seconds = (num / den for num, den in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None

    if isinstance(ref, bytes):
        ref = ref.decode("ascii", errors="ignore")
    sign = -1 if ref in ("S", "W") else 1
    return round(sign * (degrees + minutes / 60 + seconds / 3600), 7)
