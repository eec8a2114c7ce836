"""
FTP / FTPS destination uploader.

Most stock agencies accept contributor uploads over FTP and read the
metadata embedded in the file, so this uploader only transfers the
original image.
"""

import ftplib
import logging
import posixpath

from core.errors import ErrorKind, UploadError
from core.retry import RetryPolicy, call_with_retry
from db.models import Destination, Photo
from uploaders.base import BaseUploader, UploaderInfo, UploadOutcome

logger = logging.getLogger(__name__)

DEFAULT_PORT = 21
DEFAULT_TIMEOUT = 30


def classify_ftp_error(error: Exception) -> UploadError:
    """Map ftplib / socket errors to an UploadError with its kind."""
    if isinstance(error, ftplib.error_perm):
        return UploadError(f"FTP rejected the request: {error}", kind=ErrorKind.PERMANENT)
    return UploadError(f"FTP transfer failed: {error}", kind=ErrorKind.TRANSIENT)


class FTPUploader(BaseUploader):
    """Uploads originals to an FTP or explicit-TLS FTP server."""

    info = UploaderInfo(
        type="ftp",
        name="FTP",
        description="Upload originals over FTP/FTPS (metadata travels in EXIF)",
        required_fields=("host", "username", "password"),
    )

    def __init__(self, retry_policy: RetryPolicy | None = None):
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=2.0)

    def _connect(self, destination: Destination) -> ftplib.FTP:
        connection = destination.connection or {}
        ftp_class = ftplib.FTP_TLS if connection.get("use_tls") else ftplib.FTP
        ftp = ftp_class(timeout=int(connection.get("timeout") or DEFAULT_TIMEOUT))

        try:
            ftp.connect(connection["host"], int(connection.get("port") or DEFAULT_PORT))
            ftp.login(connection["username"], connection["password"])
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            ftp.set_pasv(connection.get("passive", True))
        except Exception:
            ftp.close()
            raise
        return ftp

    def _change_dir(self, ftp: ftplib.FTP, remote_dir: str) -> None:
        """Change into remote_dir, creating missing components."""
        if not remote_dir or remote_dir == "/":
            return
        if remote_dir.startswith("/"):
            ftp.cwd("/")
        for part in [p for p in remote_dir.split("/") if p]:
            try:
                ftp.cwd(part)
            except ftplib.error_perm:
                ftp.mkd(part)
                ftp.cwd(part)

    def _transfer(self, photo: Photo, destination: Destination) -> UploadOutcome:
        path = self.source_file(photo)
        connection = destination.connection or {}
        remote_dir = connection.get("path") or ""

        try:
            ftp = self._connect(destination)
            try:
                self._change_dir(ftp, remote_dir)
                with open(path, "rb") as f:
                    ftp.storbinary(f"STOR {path.name}", f)
            finally:
                try:
                    ftp.quit()
                except ftplib.all_errors:
                    ftp.close()
        except ftplib.all_errors as e:
            raise classify_ftp_error(e) from e

        remote_path = posixpath.join("/", remote_dir.strip("/"), path.name)
        url = f"ftp://{connection['host']}{remote_path}"
        logger.info(f"Uploaded {path.name} to {destination.name} ({url})")
        return UploadOutcome(success=True, message=f"Stored as {remote_path}", url=url)

    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        return call_with_retry(
            self._transfer,
            photo,
            destination,
            policy=self.retry_policy,
            description=f"FTP upload of {photo.filename} to {destination.name}",
        )

    def test_connection(self, destination: Destination) -> UploadOutcome:
        try:
            ftp = self._connect(destination)
            try:
                self._change_dir(ftp, (destination.connection or {}).get("path") or "")
                cwd = ftp.pwd()
            finally:
                ftp.close()
        except ftplib.all_errors as e:
            return UploadOutcome(success=False, message=str(classify_ftp_error(e)))
        return UploadOutcome(success=True, message=f"Connected, working directory {cwd}")
