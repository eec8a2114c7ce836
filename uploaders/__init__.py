"""
Upload destinations for the photo stock pipeline.

Provides the uploader capability interface, the destination-type
registry and the built-in FTP, SFTP, HTTP API and Shutterstock
uploaders.
"""

from uploaders.base import (
    BaseUploader,
    UploaderInfo,
    UploaderRegistry,
    UploadOutcome,
    default_registry,
)

__all__ = [
    "BaseUploader",
    "UploaderInfo",
    "UploaderRegistry",
    "UploadOutcome",
    "default_registry",
]
