"""Tests for the Flask JSON API."""

from pathlib import Path

import pytest

from conftest import FakeAnnotator, wait_for
from core.errors import ErrorKind
from core.settings import AnnotationSettings
from db.destination_operations import DestinationRepository
from db.models import PhotoStatus
from db.operations import PhotoRepository
from scheduler.services import build_services
from web.app import create_app


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
def client(services):
    app = create_app(services)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def processed_batch(services, submit_batch):
    batch = submit_batch()
    services.batch_scheduler.process_batch(batch.id)
    return batch


class TestBatches:

    def test_submit_batch(self, client, photo_folder):
        response = client.post("/api/batches", json={
            "folder": str(photo_folder),
            "classification": "editorial",
            "name": "market",
            "concurrency": 2,
        })

        assert response.status_code == 201
        data = response.get_json()
        assert data["name"] == "market"
        assert data["status"] == "queued"
        assert data["concurrency"] == 2
        assert len(data["photos"]) == 5

    def test_submit_requires_folder(self, client):
        response = client.post("/api/batches", json={"classification": "editorial"})

        assert response.status_code == 400
        assert response.get_json()["error"] == "folder is required"

    def test_submit_unknown_classification(self, client, photo_folder):
        response = client.post("/api/batches", json={
            "folder": str(photo_folder), "classification": "lifestyle",
        })

        assert response.status_code == 400

    def test_queue_status(self, client, submit_batch):
        batch = submit_batch()

        data = client.get("/api/queue").get_json()

        assert data["running"] is False
        assert [b["id"] for b in data["batches"]] == [batch.id]

    def test_batch_details(self, client, processed_batch):
        data = client.get(f"/api/batches/{processed_batch.id}").get_json()

        assert data["status"] == "processed"
        assert data["counts"] == {"processed": 5}

    def test_unknown_batch(self, client):
        assert client.get("/api/batches/999").status_code == 404

    def test_batch_events_limit(self, client, processed_batch):
        events = client.get(f"/api/batches/{processed_batch.id}/events?limit=2").get_json()

        assert len(events) == 2
        assert events[0]["event_type"] == "batch_complete"

    def test_thumbnail_is_served(self, client, services, processed_batch):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]
        relative = Path(photo.preview_path).relative_to(services.settings.thumbnail_dir)

        response = client.get(f"/thumbnails/{relative.as_posix()}")

        assert response.status_code == 200
        assert response.mimetype == "image/jpeg"


class TestReview:

    def test_approve(self, client, processed_batch):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]

        response = client.post(f"/api/photos/{photo.id}/approve")

        assert response.status_code == 200
        assert response.get_json()["status"] == "approved"
        events = client.get(f"/api/photos/{photo.id}/events").get_json()
        assert events[0]["event_type"] == "photo_status_changed"

    def test_reject_with_reason(self, client, processed_batch):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[1]

        data = client.post(f"/api/photos/{photo.id}/reject", json={"reason": "out of focus"}).get_json()

        assert data["status"] == "rejected"
        assert data["error_message"] == "out of focus"

    def test_edit_annotation(self, client, processed_batch):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]

        response = client.patch(
            f"/api/photos/{photo.id}/annotation",
            json={"title": "Misty lake", "keywords": ["Mist", "lake"], "ignored": True},
        )

        assert response.status_code == 200
        annotation = response.get_json()["annotation"]
        assert annotation["title"] == "Misty lake"
        assert annotation["keywords"] == ["mist", "lake"]

    def test_regenerate(self, client, processed_batch):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]

        response = client.post(
            f"/api/photos/{photo.id}/regenerate", json={"description": "Golden hour light"}
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "processed"
        assert "Golden hour light" in data["annotation"]["description"]

    def test_regenerate_annotation_failure(self, client, services, processed_batch):
        photo = PhotoRepository().get_for_batch(processed_batch.id)[0]
        services.review.annotator = FakeAnnotator(fail={photo.filename: ErrorKind.PERMANENT})

        response = client.post(f"/api/photos/{photo.id}/regenerate")

        assert response.status_code == 502
        assert response.get_json()["kind"] == "permanent"

    def test_invalid_transition(self, client, submit_batch):
        photo = PhotoRepository().get_for_batch(submit_batch().id)[0]

        assert client.post(f"/api/photos/{photo.id}/approve").status_code == 400

    def test_unknown_photo(self, client):
        assert client.post("/api/photos/4242/reject").status_code == 404


class TestUploads:

    @pytest.fixture
    def approved_batch(self, processed_batch):
        repository = PhotoRepository()
        for photo in repository.get_for_batch(processed_batch.id):
            repository.update_status(photo.id, PhotoStatus.APPROVED)
        return processed_batch

    def test_upload_without_destinations(self, client, approved_batch):
        response = client.post(f"/api/batches/{approved_batch.id}/upload")

        assert response.status_code == 409

    def test_upload_batch(self, client, approved_batch, destinations):
        response = client.post(f"/api/batches/{approved_batch.id}/upload")
        assert response.status_code == 202
        assert len(response.get_json()["queued"]) == 5

        assert client.post("/api/uploads/start").get_json()["started"] is True

        def all_uploaded():
            counts = client.get(f"/api/batches/{approved_batch.id}/uploads").get_json()["counts"]
            return counts == {"uploaded": 5}

        assert wait_for(all_uploaded)
        assert client.post("/api/uploads/stop").get_json() == {"running": False}

    def test_upload_selected_photos(self, client, approved_batch, destinations):
        photo = PhotoRepository().get_for_batch(approved_batch.id)[0]

        response = client.post(
            f"/api/batches/{approved_batch.id}/upload", json={"photo_ids": [photo.id]}
        )

        assert response.get_json()["queued"] == [photo.id]

    def test_destinations_hide_secrets(self, client, database):
        DestinationRepository().create(
            name="agency", type="ftp", supported_classifications=["commercial"],
            connection={"host": "ftp.example.com", "password": "hunter2"},
        )

        data = client.get("/api/destinations").get_json()

        assert data[0]["connection"]["password"] == "***"


class TestSchedulerControl:

    def test_start_twice_conflicts(self, client, services):
        assert client.post("/api/processing/start").status_code == 200
        assert client.post("/api/processing/start").status_code == 409

        response = client.post("/api/processing/stop")

        assert response.get_json()["stopping"] is True
        assert services.batch_scheduler.wait_stopped(timeout=5)
