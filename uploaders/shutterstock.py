"""
Shutterstock contributor uploader using session cookie authentication.

This module provides:
- ShutterstockClient: upload a file and set its metadata
- ShutterstockUploader: destination adapter for the upload scheduler

Note: This uses an unofficial API approach with session cookies.
Session cookies must be obtained manually from browser dev tools and are
stored in the destination's connection (session_cookie) or the
SHUTTERSTOCK_SESSION_COOKIE environment variable.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from core.errors import ErrorKind, UploadError
from db.models import Classification, Destination, Photo
from uploaders.base import BaseUploader, UploaderInfo, UploadOutcome

load_dotenv()

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
}


# ────────────────────────────────────────────────────────────────────────────────
# Exceptions
# ────────────────────────────────────────────────────────────────────────────────

class ShutterstockError(UploadError):
    """Base exception for Shutterstock API errors."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSIENT, retry_after: float | None = None):
        super().__init__(message, kind=kind, retry_after=retry_after)


class ShutterstockAuthError(ShutterstockError):
    """Authentication failure - session cookie invalid or expired."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.PERMANENT)


class ShutterstockRateLimitError(ShutterstockError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, kind=ErrorKind.RATE_LIMITED, retry_after=retry_after)


# ────────────────────────────────────────────────────────────────────────────────
# Client Implementation
# ────────────────────────────────────────────────────────────────────────────────

class ShutterstockClient:
    """
    Client for Shutterstock contributor operations.

    Usage:
        with ShutterstockClient(session_cookie="...") as client:
            media = client.upload_photo("/path/to/photo.jpg")
            client.set_metadata(media["id"], description="...", keywords=[...])
    """

    BASE_URL = "https://submit.shutterstock.com"
    UPLOAD_URL = "https://media-upload.shutterstock.com/v1/media/asset"

    def __init__(
        self,
        session_cookie: str | None = None,
        max_retries: int = 3,
        timeout: int = 60,
    ):
        """
        Initialize Shutterstock client.

        Args:
            session_cookie: Session cookie from browser. If None, reads from
                           SHUTTERSTOCK_SESSION_COOKIE environment variable.
            max_retries: Transport-level retries for 5xx responses.
            timeout: Request timeout in seconds.
        """
        self.session_cookie = session_cookie or os.getenv("SHUTTERSTOCK_SESSION_COOKIE")
        self.timeout = timeout
        self._jwt_token: str | None = None

        self._session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[500, 502, 503, 504],
        )
        adapter = HTTPAdapter(pool_connections=2, pool_maxsize=4, max_retries=retry_strategy)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def _get_headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "Cookie": f"session={self.session_cookie}",
            "User-Agent": USER_AGENT,
            "Accept": "application/json, text/plain, */*",
        }
        headers.update(extra)
        return headers

    def _make_request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Make an authenticated HTTP request.

        Raises:
            ShutterstockAuthError: If authentication fails.
            ShutterstockRateLimitError: If rate limited.
            ShutterstockError: For other HTTP or network errors.
        """
        if not url.startswith("http"):
            url = f"{self.BASE_URL}/{url.lstrip('/')}"

        kwargs.setdefault("headers", self._get_headers())
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self._session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ShutterstockError(f"Request to {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise ShutterstockAuthError(
                "Session cookie expired or invalid. Please refresh your cookie."
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "60")
            raise ShutterstockRateLimitError(
                f"Rate limited. Retry after {retry_after} seconds.",
                retry_after=float(retry_after) if retry_after.isdigit() else None,
            )

        if response.status_code >= 400:
            kind = ErrorKind.TRANSIENT if response.status_code >= 500 else ErrorKind.PERMANENT
            raise ShutterstockError(f"HTTP {response.status_code} from {url}", kind=kind)

        return response

    def is_authenticated(self) -> bool:
        """Check if the session cookie is valid."""
        if not self.session_cookie:
            return False
        try:
            self._make_request("GET", "/upload/portfolio")
            return True
        except ShutterstockError:
            return False

    def _ensure_jwt_token(self) -> str:
        """Fetch the upload JWT embedded in the portfolio page."""
        if self._jwt_token:
            return self._jwt_token

        response = self._make_request("GET", "/upload/portfolio")
        patterns = [
            r'"uploadJwt"\s*:\s*"([^"]+)"',
            r'"jwt"\s*:\s*"([^"]+)"',
        ]
        for pattern in patterns:
            match = re.search(pattern, response.text)
            if match:
                self._jwt_token = match.group(1)
                return self._jwt_token

        raise ShutterstockError(
            "Could not extract upload token from portfolio page. "
            "Session may be invalid or page structure changed.",
            kind=ErrorKind.PERMANENT,
        )

    def upload_photo(self, filepath: str | Path) -> dict[str, Any]:
        """
        Upload a photo file.

        Args:
            filepath: Path to the image file.

        Returns:
            Upload result including the media ID.
        """
        filepath = Path(filepath)
        jwt_token = self._ensure_jwt_token()
        content_type = CONTENT_TYPES.get(filepath.suffix.lower(), "image/jpeg")

        response = self._make_request(
            "POST",
            self.UPLOAD_URL,
            data=filepath.read_bytes(),
            headers=self._get_headers(**{
                "X-shutterstock-upload-jwt": jwt_token,
                "Content-Type": content_type,
            }),
            timeout=self.timeout * 2,  # Longer timeout for uploads
        )
        logger.debug(f"Uploaded {filepath.name} to Shutterstock")
        return response.json()

    def set_metadata(
        self,
        media_id: str,
        description: str | None = None,
        keywords: list[str] | None = None,
        editorial: bool = False,
    ) -> dict[str, Any]:
        """
        Set metadata for an uploaded image.

        Args:
            media_id: Shutterstock media ID from upload result.
            description: Image description/title.
            keywords: List of keywords.
            editorial: Whether this is editorial content.

        Returns:
            Updated media data.
        """
        data: dict[str, Any] = {"id": media_id, "editorial": editorial}
        if description:
            data["description"] = description
        if keywords:
            data["keywords"] = keywords

        response = self._make_request(
            "PATCH",
            "/api/content_editor",
            json=data,
            headers=self._get_headers(**{"Content-Type": "application/json"}),
        )
        return response.json()

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ────────────────────────────────────────────────────────────────────────────────
# Destination Adapter
# ────────────────────────────────────────────────────────────────────────────────

class ShutterstockUploader(BaseUploader):
    """Delivers photos to a Shutterstock contributor account."""

    info = UploaderInfo(
        type="shutterstock",
        name="Shutterstock",
        description="Contributor upload with session cookie, metadata set after upload",
    )

    def _client(self, destination: Destination) -> ShutterstockClient:
        connection = destination.connection or {}
        return ShutterstockClient(
            session_cookie=connection.get("session_cookie"),
            timeout=int(connection.get("timeout") or 60),
        )

    def validate_config(self, destination: Destination) -> None:
        if not ((destination.connection or {}).get("session_cookie")
                or os.getenv("SHUTTERSTOCK_SESSION_COOKIE")):
            raise UploadError(
                f"Destination '{destination.name}' has no Shutterstock session cookie",
                kind=ErrorKind.PERMANENT,
            )

    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        path = self.source_file(photo)
        annotation = self.annotation_of(photo)

        with self._client(destination) as client:
            media = client.upload_photo(path)
            media_id = str(media.get("id") or "")
            if not media_id:
                raise ShutterstockError("Upload response had no media id", kind=ErrorKind.PERMANENT)

            description = annotation["description"] or annotation["title"]
            client.set_metadata(
                media_id,
                description=description,
                keywords=annotation["keywords"],
                editorial=photo.classification == Classification.EDITORIAL,
            )

        logger.info(f"Uploaded {path.name} to Shutterstock as media {media_id}")
        return UploadOutcome(success=True, message="Uploaded, awaiting submission", remote_id=media_id)

    def test_connection(self, destination: Destination) -> UploadOutcome:
        with self._client(destination) as client:
            if client.is_authenticated():
                return UploadOutcome(success=True, message="Session cookie accepted")
        return UploadOutcome(success=False, message="Session cookie rejected")
