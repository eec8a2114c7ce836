"""Tests for the command line entry points."""

import pytest

import init_db
import run_pipeline
from conftest import FakeAnnotator
from core.settings import AnnotationSettings
from db.destination_operations import DestinationRepository
from db.models import BatchStatus, PhotoStatus
from db.operations import BatchRepository, PhotoRepository
from scheduler.services import build_services
from uploaders.base import default_registry


@pytest.fixture
def registry(uploader):
    """Built-in uploaders plus the fake one used by the test destinations."""
    registry = default_registry()
    registry.register("fake", uploader)
    return registry


@pytest.fixture
def services(database, settings, registry):
    services = build_services(
        settings=settings,
        annotation_settings=AnnotationSettings(),
        annotator=FakeAnnotator(),
        registry=registry,
    )
    yield services
    services.upload_scheduler.stop()
    services.batch_scheduler.stop()
    services.batch_scheduler.wait_stopped(timeout=5)


@pytest.fixture
def run(services):
    def run(*argv):
        return run_pipeline.main(list(argv), services=services)
    return run


@pytest.fixture
def processed_batch(services, submit_batch):
    batch = submit_batch()
    services.batch_scheduler.process_batch(batch.id)
    return batch


class TestBatchCommands:

    def test_submit(self, run, photo_folder, capsys):
        assert run("submit", str(photo_folder), "--type", "editorial", "--name", "market") == 0

        assert "'market' queued with 5 photo(s)" in capsys.readouterr().out
        batch = BatchRepository().get_oldest_queued()
        assert batch.name == "market"

    def test_submit_empty_folder_fails(self, run, tmp_path, capsys):
        assert run("submit", str(tmp_path), "--type", "commercial") == 1
        assert "No images found" in capsys.readouterr().out

    def test_process_until_idle(self, run, submit_batch, monkeypatch):
        monkeypatch.setattr(run_pipeline, "WATCH_INTERVAL", 0.05)
        batch = submit_batch()

        assert run("process", "--until-idle") == 0

        assert BatchRepository().get_by_id(batch.id).status == BatchStatus.PROCESSED

    def test_status_lists_queue(self, run, submit_batch, capsys):
        batch = submit_batch()

        assert run("status") == 0

        out = capsys.readouterr().out
        assert "STATUS" in out
        assert batch.name in out

    def test_status_of_batch(self, run, processed_batch, capsys):
        assert run("status", str(processed_batch.id)) == 0

        out = capsys.readouterr().out
        assert "Status: processed (100%)" in out
        assert "processed            5" in out

    def test_status_of_unknown_batch(self, run, capsys):
        assert run("status", "999") == 1
        assert "not found" in capsys.readouterr().out

    def test_events(self, run, processed_batch, capsys):
        assert run("events", "--batch", str(processed_batch.id), "--limit", "1") == 0

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        assert "batch_complete" in lines[0]

    def test_recover(self, run, submit_batch, capsys):
        batch = submit_batch()
        BatchRepository().update_status(batch.id, BatchStatus.PROCESSING)

        assert run("recover") == 0

        assert "Recovered 1 batch(es)" in capsys.readouterr().out
        assert BatchRepository().get_by_id(batch.id).status == BatchStatus.QUEUED


class TestReviewCommands:

    def test_approve_and_reject(self, run, processed_batch):
        first, second = PhotoRepository().get_for_batch(processed_batch.id)[:2]

        assert run("approve", str(first.id)) == 0
        assert run("reject", str(second.id), "--reason", "blurry") == 0

        assert PhotoRepository().get_by_id(first.id).status == PhotoStatus.APPROVED
        rejected = PhotoRepository().get_by_id(second.id)
        assert rejected.status == PhotoStatus.REJECTED
        assert rejected.error_message == "blurry"

    def test_approve_reports_failures(self, run, processed_batch, capsys):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]

        assert run("approve", str(photo.id), "4242") == 1

        assert "Photo 4242:" in capsys.readouterr().out
        assert PhotoRepository().get_by_id(photo.id).status == PhotoStatus.APPROVED

    def test_regenerate(self, run, processed_batch, capsys):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]

        assert run("regenerate", str(photo.id), "--description", "Wide angle view") == 0

        out = capsys.readouterr().out
        assert f"Photo {photo.id} ({photo.filename}): processed" in out
        assert f"Title:    Title {photo.filename[:-4]}" in out
        stored = PhotoRepository().get_by_id(photo.id)
        assert "Wide angle view" in stored.annotation["description"]

    def test_regenerate_pending_photo_fails(self, run, submit_batch, capsys):
        photo = PhotoRepository().get_for_batch(submit_batch().id)[0]

        assert run("regenerate", str(photo.id)) == 1
        assert "cannot be annotated again" in capsys.readouterr().out

    def test_upload_approved_photos(self, run, processed_batch, destinations, capsys):
        for photo in PhotoRepository().get_for_batch(processed_batch.id):
            PhotoRepository().update_status(photo.id, PhotoStatus.APPROVED)

        assert run("upload", str(processed_batch.id)) == 0

        out = capsys.readouterr().out
        assert "Queued 5 photo(s) for upload" in out
        assert "uploaded             5" in out

    def test_upload_without_approved_photos(self, run, processed_batch, destinations, capsys):
        assert run("upload", str(processed_batch.id), "--no-wait") == 1
        assert "no approved photos" in capsys.readouterr().out

    def test_upload_without_destinations(self, run, processed_batch, capsys):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]
        PhotoRepository().update_status(photo.id, PhotoStatus.APPROVED)

        assert run("upload", str(processed_batch.id), "--no-wait") == 1
        assert "No active destination" in capsys.readouterr().out


class TestDestinationCommands:

    def test_add_and_list(self, run, capsys):
        assert run(
            "destinations", "add", "agency", "--type", "api",
            "--classifications", "commercial",
            "--connection", "api_url=https://agency.example.com/upload",
            "--connection", "api_key=secret",
        ) == 0

        destination = DestinationRepository().get_all()[0]
        assert destination.connection == {
            "api_url": "https://agency.example.com/upload", "api_key": "secret",
        }
        assert destination.supported_classifications == ["commercial"]

        assert run("destinations", "list") == 0
        assert "agency" in capsys.readouterr().out

    def test_add_rejects_incomplete_connection(self, run, capsys):
        assert run("destinations", "add", "agency", "--type", "ftp", "--connection", "host=x") == 1

        assert "missing: username, password" in capsys.readouterr().out
        assert DestinationRepository().get_all() == []

    def test_add_rejects_malformed_pair(self, run):
        assert run("destinations", "add", "agency", "--type", "api", "--connection", "api_url") == 1

    def test_disable_and_test(self, run, destinations, capsys):
        alpha = destinations[0]

        assert run("destinations", "disable", str(alpha.id)) == 0
        assert not DestinationRepository().get_by_id(alpha.id).active

        assert run("destinations", "test", str(alpha.id)) == 0
        assert "alpha: OK" in capsys.readouterr().out

    def test_add_rejects_duplicate_name(self, run, destinations, capsys):
        assert run("destinations", "add", "alpha", "--type", "fake") == 1
        assert "already exists" in capsys.readouterr().out

    def test_remove(self, run, destinations):
        assert run("destinations", "remove", str(destinations[1].id)) == 0

        assert [d.name for d in DestinationRepository().get_all()] == ["alpha"]

    def test_unknown_destination(self, run):
        assert run("destinations", "enable", "99") == 1


class TestInitDb:

    def test_creates_tables(self, database, capsys):
        assert init_db.main([]) == 0

        out = capsys.readouterr().out
        assert "- batches" in out
        assert "- photos" in out

    def test_check_only(self, database, capsys):
        assert init_db.main(["--check"]) == 0
        assert "Check-only mode" in capsys.readouterr().out

    def test_drop_requires_confirmation(self, database, monkeypatch, capsys):
        monkeypatch.setattr("builtins.input", lambda prompt: "no")

        assert init_db.main(["--drop"]) == 0

        assert "Aborted." in capsys.readouterr().out
