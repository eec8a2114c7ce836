"""
Generic HTTP API destination uploader.

Posts the original file as multipart/form-data together with the
annotation fields to a destination's api_url, authenticating with a
Bearer token. Responses are expected to be JSON; a "url" field, if
present, is recorded as the delivered asset URL.
"""

import json
import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from core.errors import ErrorKind, UploadError
from db.models import Destination, Photo
from uploaders.base import BaseUploader, UploaderInfo, UploadOutcome

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


def classify_http_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500 or status_code in (408, 409):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


class APIUploader(BaseUploader):
    """Uploads photos to an HTTP endpoint."""

    info = UploaderInfo(
        type="api",
        name="HTTP API",
        description="Multipart POST of the file and metadata with Bearer authentication",
        required_fields=("api_url",),
    )

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[502, 503, 504],
            allowed_methods=None,  # Retry POST as well
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _headers(self, destination: Destination) -> dict[str, str]:
        connection = destination.connection or {}
        headers = {"Accept": "application/json"}
        if connection.get("api_key"):
            headers["Authorization"] = f"Bearer {connection['api_key']}"
        headers.update(connection.get("headers") or {})
        return headers

    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        path = self.source_file(photo)
        connection = destination.connection or {}
        annotation = self.annotation_of(photo)
        timeout = int(connection.get("timeout") or DEFAULT_TIMEOUT)

        form: dict[str, Any] = {
            "title": annotation["title"],
            "description": annotation["description"],
            "keywords": json.dumps(annotation["keywords"]),
            "category": annotation["category"],
            "classification": photo.classification.value,
        }
        form.update({key: str(value) for key, value in (connection.get("params") or {}).items()})

        try:
            with self._build_session() as session, open(path, "rb") as f:
                response = session.post(
                    connection["api_url"],
                    data=form,
                    files={"file": (path.name, f, "image/jpeg")},
                    headers=self._headers(destination),
                    timeout=timeout,
                )
        except requests.exceptions.RequestException as e:
            raise UploadError(
                f"Request to {destination.name} failed: {e}", kind=ErrorKind.TRANSIENT
            ) from e

        if not response.ok:
            retry_after = response.headers.get("Retry-After")
            raise UploadError(
                f"{destination.name} returned HTTP {response.status_code}: {response.text[:200]}",
                kind=classify_http_status(response.status_code),
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        url = body.get("url") if isinstance(body, dict) else None
        remote_id = body.get("id") if isinstance(body, dict) else None
        logger.info(f"Uploaded {path.name} to {destination.name}")
        return UploadOutcome(
            success=True,
            message=f"HTTP {response.status_code}",
            url=url,
            remote_id=str(remote_id) if remote_id is not None else None,
        )

    def test_connection(self, destination: Destination) -> UploadOutcome:
        connection = destination.connection or {}
        url = connection.get("test_url") or connection["api_url"]
        try:
            with self._build_session() as session:
                response = session.get(url, headers=self._headers(destination), timeout=10)
        except requests.exceptions.RequestException as e:
            return UploadOutcome(success=False, message=f"Connection failed: {e}")

        if response.status_code in (401, 403):
            return UploadOutcome(success=False, message="Authentication rejected")
        return UploadOutcome(success=True, message=f"HTTP {response.status_code}")
