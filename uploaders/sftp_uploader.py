"""
SFTP destination uploader.

Transfers the original image over SSH with password or private key
authentication. Like FTP, the agency reads the metadata embedded in the
file.
"""

import logging
import posixpath

import paramiko

from core.errors import ErrorKind, UploadError
from core.retry import RetryPolicy, call_with_retry
from db.models import Destination, Photo
from uploaders.base import BaseUploader, UploaderInfo, UploadOutcome

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
DEFAULT_TIMEOUT = 30

SFTP_ERRORS = (paramiko.SSHException, OSError, EOFError)


def classify_sftp_error(error: Exception) -> UploadError:
    """Map paramiko / socket errors to an UploadError with its kind."""
    if isinstance(error, (paramiko.AuthenticationException, paramiko.BadHostKeyException)):
        return UploadError(f"SFTP login refused: {error}", kind=ErrorKind.PERMANENT)
    if isinstance(error, PermissionError):
        return UploadError(f"SFTP rejected the request: {error}", kind=ErrorKind.PERMANENT)
    return UploadError(f"SFTP transfer failed: {error}", kind=ErrorKind.TRANSIENT)


class SFTPUploader(BaseUploader):
    """Uploads originals to an SFTP server."""

    info = UploaderInfo(
        type="sftp",
        name="SFTP",
        description="Upload originals over SFTP (metadata travels in EXIF)",
        required_fields=("host", "username"),
    )

    def __init__(self, retry_policy: RetryPolicy | None = None):
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=2.0)

    def validate_config(self, destination: Destination) -> None:
        """
        Check the connection fields; a password or a key file is required.

        Raises:
            UploadError: PERMANENT error naming what is missing.
        """
        super().validate_config(destination)
        connection = destination.connection or {}
        if not connection.get("password") and not connection.get("key_file"):
            raise UploadError(
                f"Destination '{destination.name}' is missing: password or key_file",
                kind=ErrorKind.PERMANENT
            )

    def _connect(self, destination: Destination) -> paramiko.SSHClient:
        connection = destination.connection or {}
        timeout = int(connection.get("timeout") or DEFAULT_TIMEOUT)

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if connection.get("strict_host_key"):
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                connection["host"],
                port=int(connection.get("port") or DEFAULT_PORT),
                username=connection["username"],
                password=connection.get("password") or None,
                key_filename=connection.get("key_file") or None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        return client

    def _make_dirs(self, sftp: paramiko.SFTPClient, remote_dir: str) -> None:
        """Create remote_dir and its missing parents."""
        current = "/" if remote_dir.startswith("/") else ""
        for part in [p for p in remote_dir.split("/") if p]:
            current = posixpath.join(current, part) if current else part
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def _transfer(self, photo: Photo, destination: Destination) -> UploadOutcome:
        path = self.source_file(photo)
        connection = destination.connection or {}
        remote_dir = connection.get("path") or ""
        remote_path = posixpath.join(remote_dir, path.name) if remote_dir else path.name

        try:
            client = self._connect(destination)
            try:
                with client.open_sftp() as sftp:
                    self._make_dirs(sftp, remote_dir)
                    sftp.put(str(path), remote_path)
            finally:
                client.close()
        except SFTP_ERRORS as e:
            raise classify_sftp_error(e) from e

        url = f"sftp://{connection['host']}{posixpath.join('/', remote_path)}"
        logger.info(f"Uploaded {path.name} to {destination.name} ({url})")
        return UploadOutcome(success=True, message=f"Stored as {remote_path}", url=url)

    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        return call_with_retry(
            self._transfer,
            photo,
            destination,
            policy=self.retry_policy,
            description=f"SFTP upload of {photo.filename} to {destination.name}",
        )

    def test_connection(self, destination: Destination) -> UploadOutcome:
        remote_dir = (destination.connection or {}).get("path") or ""
        try:
            client = self._connect(destination)
            try:
                with client.open_sftp() as sftp:
                    self._make_dirs(sftp, remote_dir)
                    cwd = sftp.normalize(remote_dir or ".")
            finally:
                client.close()
        except SFTP_ERRORS as e:
            return UploadOutcome(success=False, message=str(classify_sftp_error(e)))
        return UploadOutcome(success=True, message=f"Connected, remote directory {cwd}")
