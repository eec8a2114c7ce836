"""Tests for the destination uploaders and the registry."""

import ftplib
from unittest.mock import MagicMock

import paramiko
import pytest
import requests

from conftest import make_jpeg
from core.errors import ErrorKind, UploadError
from core.retry import RetryPolicy
from db.models import Classification, Destination, Photo
from uploaders.api_uploader import APIUploader, classify_http_status
from uploaders.base import UploaderRegistry, default_registry
from uploaders.ftp_uploader import FTPUploader, classify_ftp_error
from uploaders.sftp_uploader import SFTPUploader, classify_sftp_error
from uploaders.shutterstock import ShutterstockUploader


@pytest.fixture
def photo(tmp_path):
    source = make_jpeg(tmp_path / "lake.jpg")
    return Photo(
        id=3,
        filename="lake.jpg",
        original_path=str(source),
        classification=Classification.COMMERCIAL,
        annotation={"title": "Alpine lake", "keywords": ["lake", "alps"]},
    )


def fake_session(response=None, error=None):
    session = MagicMock()
    session.__enter__.return_value = session
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    return session


# ── Registry ────────────────────────────────────────────────────

class TestRegistry:

    def test_default_types(self):
        assert default_registry().supported_types() == ["api", "ftp", "sftp", "shutterstock"]

    def test_unknown_type_is_permanent(self):
        with pytest.raises(UploadError) as exc_info:
            UploaderRegistry().get("sftp")
        assert exc_info.value.kind == ErrorKind.PERMANENT

    def test_validate_lists_missing_fields(self):
        destination = Destination(name="agency", type="ftp", connection={"host": "ftp.example.com"})

        with pytest.raises(UploadError, match="username, password"):
            default_registry().validate(destination)

    def test_connection_check_reports_invalid_config(self):
        destination = Destination(name="agency", type="api", connection={})

        outcome = default_registry().test_connection(destination)

        assert not outcome.success
        assert "api_url" in outcome.message

    def test_annotation_defaults(self, tmp_path):
        photo = Photo(filename="x.jpg", original_path=str(tmp_path / "sunset.jpg"))

        assert APIUploader.annotation_of(photo) == {
            "title": "sunset", "description": "", "keywords": [], "category": "",
        }


# ── HTTP API ────────────────────────────────────────────────────

class TestAPIUploader:

    @pytest.fixture
    def destination(self):
        return Destination(
            name="agency",
            type="api",
            connection={"api_url": "https://agency.example.com/upload", "api_key": "secret"},
        )

    def test_upload(self, photo, destination, monkeypatch):
        response = MagicMock(ok=True, status_code=201)
        response.json.return_value = {"url": "https://agency.example.com/p/9", "id": 9}
        session = fake_session(response)
        uploader = APIUploader()
        monkeypatch.setattr(uploader, "_build_session", lambda: session)

        outcome = uploader.upload(photo, destination)

        assert outcome.success
        assert outcome.url == "https://agency.example.com/p/9"
        assert outcome.remote_id == "9"
        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["data"]["title"] == "Alpine lake"
        assert kwargs["data"]["classification"] == "commercial"

    def test_rate_limited(self, photo, destination, monkeypatch):
        response = MagicMock(ok=False, status_code=429, text="slow down", headers={"Retry-After": "3"})
        uploader = APIUploader()
        monkeypatch.setattr(uploader, "_build_session", lambda: fake_session(response))

        with pytest.raises(UploadError) as exc_info:
            uploader.upload(photo, destination)
        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 3.0

    def test_rejected(self, photo, destination, monkeypatch):
        response = MagicMock(ok=False, status_code=400, text="bad keywords", headers={})
        uploader = APIUploader()
        monkeypatch.setattr(uploader, "_build_session", lambda: fake_session(response))

        with pytest.raises(UploadError) as exc_info:
            uploader.upload(photo, destination)
        assert exc_info.value.kind == ErrorKind.PERMANENT

    def test_network_error_is_transient(self, photo, destination, monkeypatch):
        uploader = APIUploader()
        monkeypatch.setattr(
            uploader, "_build_session",
            lambda: fake_session(error=requests.exceptions.ConnectionError("refused")),
        )

        with pytest.raises(UploadError) as exc_info:
            uploader.upload(photo, destination)
        assert exc_info.value.kind == ErrorKind.TRANSIENT

    def test_missing_file(self, tmp_path, destination):
        photo = Photo(filename="gone.jpg", original_path=str(tmp_path / "gone.jpg"))

        with pytest.raises(UploadError) as exc_info:
            APIUploader().upload(photo, destination)
        assert exc_info.value.kind == ErrorKind.PERMANENT

    @pytest.mark.parametrize("status, kind", [
        (429, ErrorKind.RATE_LIMITED),
        (503, ErrorKind.TRANSIENT),
        (408, ErrorKind.TRANSIENT),
        (401, ErrorKind.PERMANENT),
        (413, ErrorKind.PERMANENT),
    ])
    def test_classify_http_status(self, status, kind):
        assert classify_http_status(status) == kind


# ── FTP ─────────────────────────────────────────────────────────

class TestFTPUploader:

    @pytest.fixture
    def destination(self):
        return Destination(
            name="agency-ftp",
            type="ftp",
            connection={
                "host": "ftp.example.com",
                "username": "contributor",
                "password": "hunter2",
                "path": "uploads",
            },
        )

    @pytest.fixture
    def ftp(self, monkeypatch):
        client = MagicMock()
        monkeypatch.setattr(ftplib, "FTP", MagicMock(return_value=client))
        return client

    def test_upload(self, photo, destination, ftp):
        outcome = FTPUploader().upload(photo, destination)

        assert outcome.success
        assert outcome.url == "ftp://ftp.example.com/uploads/lake.jpg"
        ftp.connect.assert_called_once_with("ftp.example.com", 21)
        ftp.login.assert_called_once_with("contributor", "hunter2")
        ftp.cwd.assert_called_once_with("uploads")
        assert ftp.storbinary.call_args.args[0] == "STOR lake.jpg"
        ftp.quit.assert_called_once()

    def test_rejected_transfer_is_not_retried(self, photo, destination, ftp):
        ftp.storbinary.side_effect = ftplib.error_perm("553 Could not create file")

        with pytest.raises(UploadError) as exc_info:
            FTPUploader(RetryPolicy(max_attempts=3, base_delay=0)).upload(photo, destination)
        assert exc_info.value.kind == ErrorKind.PERMANENT
        assert ftp.storbinary.call_count == 1

    def test_dropped_connection_is_retried(self, photo, destination, ftp):
        ftp.storbinary.side_effect = [ConnectionResetError("reset"), None]

        outcome = FTPUploader(RetryPolicy(max_attempts=2, base_delay=0)).upload(photo, destination)

        assert outcome.success
        assert ftp.storbinary.call_count == 2

    def test_connection_check(self, destination, ftp):
        ftp.pwd.return_value = "/uploads"

        outcome = FTPUploader().test_connection(destination)

        assert outcome.success
        assert "/uploads" in outcome.message

    def test_classify_ftp_error(self):
        assert classify_ftp_error(ftplib.error_perm("530 Login incorrect")).kind == ErrorKind.PERMANENT
        assert classify_ftp_error(ftplib.error_temp("421 Busy")).kind == ErrorKind.TRANSIENT


# ── SFTP ────────────────────────────────────────────────────────

class TestSFTPUploader:

    @pytest.fixture
    def destination(self):
        return Destination(
            name="agency-sftp",
            type="sftp",
            connection={
                "host": "sftp.example.com",
                "username": "contributor",
                "password": "hunter2",
                "path": "uploads/2024",
            },
        )

    @pytest.fixture
    def ssh(self, monkeypatch):
        client = MagicMock()
        monkeypatch.setattr(paramiko, "SSHClient", MagicMock(return_value=client))
        return client

    @pytest.fixture
    def sftp(self, ssh):
        session = MagicMock()
        session.stat.side_effect = FileNotFoundError("no such file")
        ssh.open_sftp.return_value.__enter__.return_value = session
        return session

    def test_upload(self, photo, destination, ssh, sftp):
        outcome = SFTPUploader().upload(photo, destination)

        assert outcome.success
        assert outcome.url == "sftp://sftp.example.com/uploads/2024/lake.jpg"
        assert ssh.connect.call_args.args == ("sftp.example.com",)
        assert ssh.connect.call_args.kwargs["port"] == 22
        assert ssh.connect.call_args.kwargs["password"] == "hunter2"
        assert [c.args[0] for c in sftp.mkdir.call_args_list] == ["uploads", "uploads/2024"]
        sftp.put.assert_called_once_with(photo.original_path, "uploads/2024/lake.jpg")
        ssh.close.assert_called_once()

    def test_existing_directories_are_kept(self, photo, destination, ssh, sftp):
        sftp.stat.side_effect = None

        SFTPUploader().upload(photo, destination)

        sftp.mkdir.assert_not_called()

    def test_failed_login_is_not_retried(self, photo, destination, ssh, sftp):
        ssh.connect.side_effect = paramiko.AuthenticationException("bad password")

        with pytest.raises(UploadError) as exc_info:
            SFTPUploader(RetryPolicy(max_attempts=3, base_delay=0)).upload(photo, destination)
        assert exc_info.value.kind == ErrorKind.PERMANENT
        assert ssh.connect.call_count == 1

    def test_dropped_connection_is_retried(self, photo, destination, ssh, sftp):
        sftp.put.side_effect = [paramiko.SSHException("channel closed"), None]

        outcome = SFTPUploader(RetryPolicy(max_attempts=2, base_delay=0)).upload(photo, destination)

        assert outcome.success
        assert sftp.put.call_count == 2

    def test_requires_password_or_key(self, destination):
        destination.connection = {"host": "sftp.example.com", "username": "contributor"}

        with pytest.raises(UploadError, match="password or key_file"):
            SFTPUploader().validate_config(destination)

        destination.connection["key_file"] = "/home/contributor/.ssh/id_ed25519"
        SFTPUploader().validate_config(destination)

    def test_connection_check(self, destination, ssh, sftp):
        sftp.normalize.return_value = "/home/contributor/uploads/2024"

        outcome = SFTPUploader().test_connection(destination)

        assert outcome.success
        assert "/home/contributor/uploads/2024" in outcome.message

    def test_unreachable_host(self, destination, ssh):
        ssh.connect.side_effect = TimeoutError("timed out")

        outcome = SFTPUploader().test_connection(destination)

        assert not outcome.success
        assert "timed out" in outcome.message

    def test_classify_sftp_error(self):
        assert classify_sftp_error(paramiko.AuthenticationException("denied")).kind == ErrorKind.PERMANENT
        assert classify_sftp_error(PermissionError("read-only")).kind == ErrorKind.PERMANENT
        assert classify_sftp_error(ConnectionResetError("reset")).kind == ErrorKind.TRANSIENT


# ── Shutterstock ────────────────────────────────────────────────

class TestShutterstockUploader:

    def test_requires_session_cookie(self, monkeypatch):
        monkeypatch.delenv("SHUTTERSTOCK_SESSION_COOKIE", raising=False)
        destination = Destination(name="sstk", type="shutterstock", connection={})

        with pytest.raises(UploadError) as exc_info:
            ShutterstockUploader().validate_config(destination)
        assert exc_info.value.kind == ErrorKind.PERMANENT

    def test_cookie_from_environment(self, monkeypatch):
        monkeypatch.setenv("SHUTTERSTOCK_SESSION_COOKIE", "abc")

        ShutterstockUploader().validate_config(Destination(name="sstk", type="shutterstock"))
