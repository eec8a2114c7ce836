"""Shared fixtures: a throwaway SQLite database and fake collaborators."""

import threading
import time
from pathlib import Path

import pytest
from PIL import Image

from core.errors import AnnotationError, ErrorKind, UploadError
from core.settings import SchedulerSettings
from db.database import dispose_engine, init_db
from db.destination_operations import DestinationRepository
from db.models import Classification, Destination, Photo
from pipeline.annotator import AnnotationResult
from pipeline.intake import BatchIntake
from scheduler.batch_scheduler import BatchScheduler
from scheduler.upload_scheduler import UploadScheduler
from uploaders.base import BaseUploader, UploaderInfo, UploaderRegistry, UploadOutcome


# ── Database ────────────────────────────────────────────────────

@pytest.fixture
def database(tmp_path, monkeypatch):
    """Point the engine at a fresh SQLite file and create the tables."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'pipeline.db'}")
    dispose_engine()
    assert init_db()
    yield
    dispose_engine()


@pytest.fixture
def settings(tmp_path):
    return SchedulerSettings(
        max_concurrent_batches=2,
        photo_workers=2,
        upload_workers=2,
        upload_queue_size=100,
        poll_interval=0.05,
        error_retry_delay=0.05,
        store_retry_attempts=5,
        store_retry_delay=0.0,
        thumbnail_dir=str(tmp_path / "thumbnails"),
        thumbnail_width=64,
    )


# ── Helpers ─────────────────────────────────────────────────────

def wait_for(condition, timeout=10.0):
    """Poll condition until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


# ── Images ──────────────────────────────────────────────────────

def make_jpeg(path: Path, size: tuple[int, int] = (120, 80), color: str = "red") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, "JPEG")
    return path


@pytest.fixture
def photo_folder(tmp_path):
    """Folder with five small JPEGs named p1.jpg .. p5.jpg."""
    folder = tmp_path / "photos"
    for index in range(1, 6):
        make_jpeg(folder / f"p{index}.jpg")
    return folder


@pytest.fixture
def submit_batch(database, photo_folder):
    """Submit the photo folder as a queued batch."""
    def submit(classification=Classification.COMMERCIAL, concurrency=None, folder=None):
        return BatchIntake().submit_folder(
            folder or photo_folder,
            classification,
            description="Mountain lake at sunrise",
            concurrency=concurrency,
        )
    return submit


# ── Fake collaborators ──────────────────────────────────────────

class FakePreparer:
    """Uses the original file as preview and skips metadata extraction."""

    def prepare(self, photo: Photo) -> None:
        photo.preview_path = photo.original_path
        photo.context_metadata = {"source": "test"}


class FakeAnnotator:
    """
    Returns a canned annotation per photo.

    fail maps filenames to the error kind raised for them; hooks maps
    filenames to callables run before answering.
    """

    def __init__(self, fail=None, hooks=None):
        self.fail = fail or {}
        self.hooks = hooks or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def annotate(self, photo, description, classification, settings=None):
        with self._lock:
            self.calls.append(photo.filename)
        hook = self.hooks.get(photo.filename)
        if hook is not None:
            hook()
        if photo.filename in self.fail:
            raise AnnotationError(f"cannot annotate {photo.filename}", kind=self.fail[photo.filename])
        stem = Path(photo.filename).stem
        return AnnotationResult(
            title=f"Title {stem}",
            description=f"{description} ({stem})",
            keywords=["lake", "sunrise", stem],
            category="Nature",
            quality=7,
        )


class FakeWriter:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.embedded: list[str] = []

    def embed(self, original_path, result):
        if self.error is not None:
            raise self.error
        self.embedded.append(Path(original_path).name)


class FakeUploader(BaseUploader):
    """
    Records deliveries.

    Raises UploadError for destinations named in fail_for and a plain
    RuntimeError for those named in crash_for.
    """

    info = UploaderInfo(type="fake", name="Fake", description="In-memory test uploader")

    def __init__(self, fail_for=(), gate: threading.Event | None = None, crash_for=()):
        self.fail_for = set(fail_for)
        self.crash_for = set(crash_for)
        self.gate = gate
        self.started = threading.Event()
        self.delivered: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def upload(self, photo: Photo, destination: Destination) -> UploadOutcome:
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if destination.name in self.fail_for:
            raise UploadError(f"{destination.name} refused the file", kind=ErrorKind.PERMANENT)
        if destination.name in self.crash_for:
            raise RuntimeError(f"{destination.name} connection dropped")
        with self._lock:
            self.delivered.append((photo.filename, destination.name))
        return UploadOutcome(success=True, message="stored", url=f"fake://{destination.name}/{photo.filename}")

    def test_connection(self, destination: Destination) -> UploadOutcome:
        return UploadOutcome(success=True, message="ok")


@pytest.fixture
def annotator():
    return FakeAnnotator()


@pytest.fixture
def writer():
    return FakeWriter()


@pytest.fixture
def batch_scheduler(database, settings, annotator, writer):
    scheduler = BatchScheduler(
        settings=settings,
        preparer=FakePreparer(),
        annotator=annotator,
        metadata_writer=writer,
    )
    yield scheduler
    scheduler.stop()
    scheduler.wait_stopped(timeout=5)


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def registry(uploader):
    registry = UploaderRegistry()
    registry.register("fake", uploader)
    return registry


@pytest.fixture
def upload_scheduler(database, settings, registry):
    scheduler = UploadScheduler(settings=settings, registry=registry)
    yield scheduler
    scheduler.stop()


@pytest.fixture
def destinations(database):
    """Two active fake destinations accepting both classifications."""
    repository = DestinationRepository()
    both = [c.value for c in Classification]
    return [
        repository.create(name="alpha", type="fake", supported_classifications=both),
        repository.create(name="beta", type="fake", supported_classifications=both),
    ]
