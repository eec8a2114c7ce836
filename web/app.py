"""
Flask JSON API for submitting batches, reviewing photos and controlling
the schedulers.
"""

from pathlib import Path

from flask import Flask, jsonify, request, send_from_directory

from core.errors import (
    AlreadyRunning,
    CollaboratorError,
    InvalidTransition,
    NoActiveDestinations,
    NotFoundError,
)
from db.event_operations import DEFAULT_EVENT_LIMIT
from scheduler.services import Services, build_services

PROJECT_ROOT = Path(__file__).parent.parent.resolve()


def _limit() -> int:
    return request.args.get("limit", DEFAULT_EVENT_LIMIT, type=int)


def create_app(services: Services | None = None) -> Flask:
    """
    Build the Flask application.

    Args:
        services: Wired services (built from the environment if None).

    Returns:
        Configured Flask app.
    """
    services = services or build_services()
    app = Flask(__name__)
    app.config["SERVICES"] = services

    thumbnail_dir = Path(services.settings.thumbnail_dir)
    if not thumbnail_dir.is_absolute():
        thumbnail_dir = PROJECT_ROOT / thumbnail_dir

    # ────────────────────────────────────────────────────────────────────────────
    # Error Handlers
    # ────────────────────────────────────────────────────────────────────────────

    @app.errorhandler(NotFoundError)
    def not_found(error):
        return jsonify(error=str(error)), 404

    @app.errorhandler(AlreadyRunning)
    @app.errorhandler(NoActiveDestinations)
    def conflict(error):
        return jsonify(error=str(error)), 409

    @app.errorhandler(InvalidTransition)
    @app.errorhandler(ValueError)
    def bad_request(error):
        return jsonify(error=str(error)), 400

    @app.errorhandler(CollaboratorError)
    def collaborator_failed(error):
        return jsonify(error=str(error), kind=error.kind.value), 502

    # ────────────────────────────────────────────────────────────────────────────
    # Batches
    # ────────────────────────────────────────────────────────────────────────────

    @app.get("/api/queue")
    def queue_status():
        return jsonify(services.batch_scheduler.get_queue_status())

    @app.post("/api/batches")
    def submit_batch():
        data = request.get_json(silent=True) or {}
        if not data.get("folder"):
            raise ValueError("folder is required")
        if not data.get("classification"):
            raise ValueError("classification is required")

        batch = services.intake.submit_folder(
            data["folder"],
            data["classification"],
            description=data.get("description"),
            name=data.get("name"),
            concurrency=data.get("concurrency"),
        )
        return jsonify(batch.to_dict(include_photos=True)), 201

    @app.get("/api/batches/<int:batch_id>")
    def batch_details(batch_id):
        return jsonify(services.batch_scheduler.get_batch_details(batch_id))

    @app.post("/api/batches/<int:batch_id>/requeue")
    def requeue_batch(batch_id):
        data = request.get_json(silent=True) or {}
        batch = services.batch_scheduler.requeue_batch(
            batch_id, retry_failed=bool(data.get("retry_failed", True))
        )
        return jsonify(batch.to_dict())

    @app.get("/api/batches/<int:batch_id>/events")
    def batch_events(batch_id):
        events = services.event_log.get_batch_events(batch_id, limit=_limit())
        return jsonify([event.to_dict() for event in events])

    # ────────────────────────────────────────────────────────────────────────────
    # Photos
    # ────────────────────────────────────────────────────────────────────────────

    @app.get("/api/photos/<int:photo_id>/events")
    def photo_events(photo_id):
        events = services.event_log.get_photo_events(photo_id, limit=_limit())
        return jsonify([event.to_dict() for event in events])

    @app.post("/api/photos/<int:photo_id>/approve")
    def approve_photo(photo_id):
        return jsonify(services.review.approve(photo_id).to_dict())

    @app.post("/api/photos/<int:photo_id>/reject")
    def reject_photo(photo_id):
        data = request.get_json(silent=True) or {}
        return jsonify(services.review.reject(photo_id, reason=data.get("reason")).to_dict())

    @app.patch("/api/photos/<int:photo_id>/annotation")
    def edit_annotation(photo_id):
        data = request.get_json(silent=True) or {}
        fields = {
            key: data[key]
            for key in ("title", "description", "keywords", "category")
            if key in data
        }
        return jsonify(services.review.update_annotation(photo_id, **fields).to_dict())

    @app.post("/api/photos/<int:photo_id>/regenerate")
    def regenerate_annotation(photo_id):
        data = request.get_json(silent=True) or {}
        photo = services.review.regenerate(photo_id, description=data.get("description"))
        return jsonify(photo.to_dict())

    @app.get("/thumbnails/<path:filepath>")
    def serve_thumbnail(filepath):
        return send_from_directory(thumbnail_dir, filepath)

    # ────────────────────────────────────────────────────────────────────────────
    # Uploads
    # ────────────────────────────────────────────────────────────────────────────

    @app.post("/api/batches/<int:batch_id>/upload")
    def upload_batch(batch_id):
        data = request.get_json(silent=True) or {}
        photo_ids = data.get("photo_ids")
        if photo_ids:
            queued = services.upload_scheduler.queue_photos_for_upload(batch_id, photo_ids)
        else:
            queued = services.upload_scheduler.queue_approved_photos(batch_id)
        return jsonify(queued=queued), 202

    @app.get("/api/batches/<int:batch_id>/uploads")
    def upload_progress(batch_id):
        return jsonify(services.upload_scheduler.get_upload_progress(batch_id))

    @app.get("/api/uploads/active")
    def active_uploads():
        return jsonify(services.upload_scheduler.get_active_jobs())

    @app.get("/api/destinations")
    def list_destinations():
        return jsonify([d.to_dict() for d in services.destinations.get_all()])

    # ────────────────────────────────────────────────────────────────────────────
    # Scheduler Control
    # ────────────────────────────────────────────────────────────────────────────

    @app.post("/api/processing/start")
    def start_processing():
        services.batch_scheduler.start()
        return jsonify(running=True)

    @app.post("/api/processing/stop")
    def stop_processing():
        services.batch_scheduler.stop()
        return jsonify(running=services.batch_scheduler.is_running, stopping=True)

    @app.post("/api/uploads/start")
    def start_uploads():
        started = services.upload_scheduler.start()
        return jsonify(running=True, started=started)

    @app.post("/api/uploads/stop")
    def stop_uploads():
        services.upload_scheduler.stop()
        return jsonify(running=False)

    return app


if __name__ == "__main__":
    print("Starting photo stock API...")
    print("Open http://127.0.0.1:5000/api/queue in your browser")
    create_app().run(debug=True, host="127.0.0.1", port=5000)
