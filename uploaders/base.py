"""
Upload capability interface and destination-type registry.

Every destination type (FTP, HTTP API, Shutterstock, ...) implements
BaseUploader. The upload scheduler only talks to UploaderRegistry, so
adding a destination type means registering a new uploader.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core.errors import ErrorKind, UploadError
from db.models import Destination, Photo

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────────────────────
# Result Types
# ────────────────────────────────────────────────────────────────────────────────

@dataclass
class UploadOutcome:
    """Result of delivering one photo to one destination."""
    success: bool
    message: str = ""
    url: str | None = None
    remote_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "url": self.url,
            "remote_id": self.remote_id,
        }


@dataclass
class UploaderInfo:
    """Description of an uploader implementation."""
    type: str
    name: str
    description: str
    required_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "required_fields": list(self.required_fields),
        }


# ────────────────────────────────────────────────────────────────────────────────
# Uploader Interface
# ────────────────────────────────────────────────────────────────────────────────

class BaseUploader(ABC):
    """Capability interface implemented by every destination type."""

    info: UploaderInfo

    @abstractmethod
    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        """
        Deliver a photo and its annotation to a destination.

        Raises:
            UploadError: Classified delivery failure.
        """

    @abstractmethod
    def test_connection(self, destination: Destination) -> UploadOutcome:
        """Check that the destination is reachable with its credentials."""

    def validate_config(self, destination: Destination) -> None:
        """
        Check that the destination has every required connection field.

        Raises:
            UploadError: PERMANENT error listing the missing fields.
        """
        connection = destination.connection or {}
        missing = [name for name in self.info.required_fields if not connection.get(name)]
        if missing:
            raise UploadError(
                f"Destination '{destination.name}' is missing: {', '.join(missing)}",
                kind=ErrorKind.PERMANENT
            )

    def describe(self) -> UploaderInfo:
        return self.info

    # Shared helpers

    @staticmethod
    def source_file(photo: Photo) -> Path:
        """
        Resolve the original file of a photo.

        Raises:
            UploadError: PERMANENT if the file is missing.
        """
        path = Path(photo.original_path)
        if not path.exists():
            raise UploadError(f"File not found: {path}", kind=ErrorKind.PERMANENT)
        return path

    @staticmethod
    def annotation_of(photo: Photo) -> dict[str, Any]:
        """Annotation fields with defaults for photos lacking some of them."""
        annotation = photo.annotation or {}
        return {
            "title": annotation.get("title") or Path(photo.original_path).stem,
            "description": annotation.get("description") or "",
            "keywords": list(annotation.get("keywords") or []),
            "category": annotation.get("category") or "",
        }


# ────────────────────────────────────────────────────────────────────────────────
# Registry
# ────────────────────────────────────────────────────────────────────────────────

class UploaderRegistry:
    """Maps destination types to uploader implementations."""

    def __init__(self):
        self._uploaders: dict[str, BaseUploader] = {}

    def register(self, destination_type: str, uploader: BaseUploader) -> None:
        """Register (or replace) the uploader for a destination type."""
        self._uploaders[destination_type] = uploader
        logger.debug(f"Registered uploader for '{destination_type}'")

    def get(self, destination_type: str) -> BaseUploader:
        """
        Get the uploader for a destination type.

        Raises:
            UploadError: PERMANENT if no uploader is registered.
        """
        uploader = self._uploaders.get(destination_type)
        if uploader is None:
            raise UploadError(
                f"No uploader registered for destination type '{destination_type}'",
                kind=ErrorKind.PERMANENT
            )
        return uploader

    def supported_types(self) -> list[str]:
        return sorted(self._uploaders)

    def available(self) -> list[UploaderInfo]:
        return [self._uploaders[key].describe() for key in self.supported_types()]

    def validate(self, destination: Destination) -> None:
        """Validate a destination's configuration with its uploader."""
        self.get(destination.type).validate_config(destination)

    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        """
        Validate the destination, then deliver the photo.

        Raises:
            UploadError: On invalid configuration or a failed delivery.
        """
        uploader = self.get(destination.type)
        uploader.validate_config(destination)
        return uploader.upload(photo, destination)

    def test_connection(self, destination: Destination) -> UploadOutcome:
        """Validate a destination and check connectivity."""
        uploader = self.get(destination.type)
        try:
            uploader.validate_config(destination)
            return uploader.test_connection(destination)
        except UploadError as e:
            return UploadOutcome(success=False, message=str(e))


def default_registry() -> UploaderRegistry:
    """
    Build a registry with the built-in destination types.

    Returns:
        UploaderRegistry with ftp, sftp, api and shutterstock uploaders.
    """
    # Protocol modules import this one
    from uploaders.api_uploader import APIUploader
    from uploaders.ftp_uploader import FTPUploader
    from uploaders.sftp_uploader import SFTPUploader
    from uploaders.shutterstock import ShutterstockUploader

    registry = UploaderRegistry()
    registry.register("ftp", FTPUploader())
    registry.register("sftp", SFTPUploader())
    registry.register("api", APIUploader())
    registry.register("shutterstock", ShutterstockUploader())
    return registry
