"""Tests for the batch annotation scheduler."""

import threading

import pytest

from conftest import FakeAnnotator, FakePreparer, FakeWriter, wait_for
from core.errors import (
    AlreadyRunning,
    EmbedError,
    ErrorKind,
    InvalidTransition,
    NotFoundError,
)
from db.event_operations import EventLogRepository
from db.models import BatchStatus, EventOutcome, PhotoStatus
from db.operations import BatchRepository, PhotoRepository
from scheduler.batch_scheduler import BatchScheduler
from scheduler.jobs import ProcessingJob


def photos_by_name(batch_id):
    return {photo.filename: photo for photo in PhotoRepository().get_for_batch(batch_id)}


def events_of(batch_id, event_type=None):
    events = EventLogRepository().get_batch_events(batch_id, limit=500)
    return [e for e in events if event_type is None or e.event_type == event_type]


class TestProcessBatch:
    """Direct process_batch runs."""

    def test_all_photos_succeed(self, batch_scheduler, submit_batch, writer):
        batch = submit_batch(concurrency=2)

        job = batch_scheduler.process_batch(batch.id)

        stored = BatchRepository().get_by_id(batch.id)
        assert stored.status == BatchStatus.PROCESSED
        assert stored.progress == 100
        assert stored.completed_at is not None
        assert job.completed == 5
        assert job.failed == 0

        photos = photos_by_name(batch.id)
        assert all(p.status == PhotoStatus.PROCESSED for p in photos.values())
        assert photos["p1.jpg"].annotation["title"] == "Title p1"
        assert photos["p1.jpg"].processed_at is not None
        assert sorted(writer.embedded) == [f"p{i}.jpg" for i in range(1, 6)]

        successes = [
            e for e in events_of(batch.id, "ai_processing")
            if e.outcome == EventOutcome.SUCCESS
        ]
        assert len(successes) == 5
        assert len(events_of(batch.id, "batch_complete")) == 1

    def test_photo_failure_does_not_fail_batch(self, database, settings, submit_batch):
        annotator = FakeAnnotator(fail={"p3.jpg": ErrorKind.PERMANENT})
        scheduler = BatchScheduler(
            settings=settings,
            preparer=FakePreparer(),
            annotator=annotator,
            metadata_writer=FakeWriter(),
        )
        batch = submit_batch(concurrency=2)

        job = scheduler.process_batch(batch.id)

        assert BatchRepository().get_by_id(batch.id).status == BatchStatus.PROCESSED
        assert job.completed == 4
        assert job.failed == 1

        photos = photos_by_name(batch.id)
        assert photos["p3.jpg"].status == PhotoStatus.FAILED
        assert photos["p3.jpg"].annotation is None
        assert "cannot annotate" in photos["p3.jpg"].error_message
        for name in ("p1.jpg", "p2.jpg", "p4.jpg", "p5.jpg"):
            assert photos[name].status == PhotoStatus.PROCESSED

        failures = [
            e for e in events_of(batch.id, "ai_processing")
            if e.outcome == EventOutcome.FAILED
        ]
        assert len(failures) == 1
        assert failures[0].photo_id == photos["p3.jpg"].id
        assert failures[0].detail["kind"] == "permanent"

    def test_embed_failure_keeps_photo_processed(self, database, settings, submit_batch):
        scheduler = BatchScheduler(
            settings=settings,
            preparer=FakePreparer(),
            annotator=FakeAnnotator(),
            metadata_writer=FakeWriter(error=EmbedError("read-only file")),
        )
        batch = submit_batch()

        scheduler.process_batch(batch.id)

        photos = photos_by_name(batch.id)
        assert all(p.status == PhotoStatus.PROCESSED for p in photos.values())
        warnings = [
            e for e in events_of(batch.id, "ai_processing")
            if e.outcome == EventOutcome.WARNING
        ]
        assert len(warnings) == 5

    def test_preparation_result_is_stored(self, batch_scheduler, submit_batch):
        batch = submit_batch()

        batch_scheduler.process_batch(batch.id)

        photo = photos_by_name(batch.id)["p2.jpg"]
        assert photo.preview_path == photo.original_path
        assert photo.context_metadata == {"source": "test"}

    def test_resumed_batch_skips_processed_photos(self, batch_scheduler, submit_batch, annotator):
        batch = submit_batch()
        photos = photos_by_name(batch.id)
        repository = PhotoRepository()
        repository.save_annotation(photos["p1.jpg"].id, {"title": "Done"})
        repository.save_annotation(photos["p2.jpg"].id, {"title": "Done"})

        batch_scheduler.process_batch(batch.id)

        assert sorted(annotator.calls) == ["p3.jpg", "p4.jpg", "p5.jpg"]
        assert photos_by_name(batch.id)["p1.jpg"].annotation == {"title": "Done"}

    def test_batch_without_pending_photos_completes(self, batch_scheduler, submit_batch, annotator):
        batch = submit_batch()
        batch_scheduler.process_batch(batch.id)
        annotator.calls.clear()
        BatchRepository().requeue(batch.id)

        batch_scheduler.process_batch(batch.id)

        stored = BatchRepository().get_by_id(batch.id)
        assert stored.status == BatchStatus.PROCESSED
        assert stored.progress == 100
        assert annotator.calls == []

    def test_unknown_batch(self, batch_scheduler):
        with pytest.raises(NotFoundError):
            batch_scheduler.process_batch(999)

    def test_bookkeeping_error_fails_batch(self, batch_scheduler, submit_batch, monkeypatch):
        batch = submit_batch()

        def broken(batch_id, progress):
            raise RuntimeError("disk full")

        monkeypatch.setattr(batch_scheduler.batches, "update_progress", broken)

        with pytest.raises(RuntimeError):
            batch_scheduler.process_batch(batch.id)

        stored = BatchRepository().get_by_id(batch.id)
        assert stored.status == BatchStatus.FAILED
        assert "disk full" in stored.error_message
        assert len(events_of(batch.id, "batch_failed")) == 1
        assert batch_scheduler.get_processing_progress(batch.id) is None

    def test_live_progress_snapshot(self, database, settings, submit_batch):
        captured = {}
        scheduler = None

        def capture():
            captured["snapshot"] = scheduler.get_processing_progress(batch.id)

        scheduler = BatchScheduler(
            settings=settings,
            preparer=FakePreparer(),
            annotator=FakeAnnotator(hooks={"p2.jpg": capture}),
            metadata_writer=FakeWriter(),
        )
        batch = submit_batch(concurrency=1)

        scheduler.process_batch(batch.id)

        snapshot = captured["snapshot"]
        assert snapshot["total"] == 5
        assert snapshot["current_photo"] == "p2.jpg"
        p2 = next(p for p in snapshot["photos"] if p["filename"] == "p2.jpg")
        assert p2["step"] == "ai_analysis"
        assert p2["progress"] == 30
        assert scheduler.get_processing_progress(batch.id) is None


class TestRequeue:

    def test_requeue_retries_failed_photos(self, database, settings, submit_batch):
        annotator = FakeAnnotator(fail={"p3.jpg": ErrorKind.PERMANENT})
        scheduler = BatchScheduler(
            settings=settings,
            preparer=FakePreparer(),
            annotator=annotator,
            metadata_writer=FakeWriter(),
        )
        batch = submit_batch()
        scheduler.process_batch(batch.id)

        annotator.fail.clear()
        annotator.calls.clear()
        requeued = scheduler.requeue_batch(batch.id)
        assert requeued.status == BatchStatus.QUEUED
        assert photos_by_name(batch.id)["p3.jpg"].status == PhotoStatus.PENDING

        scheduler.process_batch(batch.id)

        assert annotator.calls == ["p3.jpg"]
        assert photos_by_name(batch.id)["p3.jpg"].status == PhotoStatus.PROCESSED

    def test_requeue_unknown_batch(self, batch_scheduler):
        with pytest.raises(NotFoundError):
            batch_scheduler.requeue_batch(404)

    def test_requeue_active_batch_is_rejected(self, batch_scheduler, submit_batch):
        batch = submit_batch()
        batch_scheduler.jobs.register(batch.id, ProcessingJob(batch.id, batch.name, 5))

        with pytest.raises(InvalidTransition):
            batch_scheduler.requeue_batch(batch.id)


class TestDispatchLoop:

    def test_loop_processes_queued_batches(self, batch_scheduler, submit_batch, photo_folder):
        first = submit_batch()
        second = submit_batch()

        batch_scheduler.start()

        assert wait_for(lambda: batch_scheduler.is_idle())
        for batch in (first, second):
            assert BatchRepository().get_by_id(batch.id).status == BatchStatus.PROCESSED

    def test_start_twice_raises(self, batch_scheduler):
        batch_scheduler.start()
        with pytest.raises(AlreadyRunning):
            batch_scheduler.start()

    def test_stop_when_not_running_is_noop(self, batch_scheduler):
        batch_scheduler.stop()
        assert not batch_scheduler.is_running
        assert batch_scheduler.wait_stopped(timeout=0.1)

    def test_stop_interrupts_batch(self, database, settings, submit_batch):
        release = threading.Event()
        scheduler = None

        def stop_after_two_results():
            wait_for(lambda: (scheduler.get_processing_progress(batch.id) or {}).get("completed") == 2)
            scheduler.stop()
            release.wait(5)

        scheduler = BatchScheduler(
            settings=settings,
            preparer=FakePreparer(),
            annotator=FakeAnnotator(
                fail={"p3.jpg": ErrorKind.TRANSIENT},
                hooks={"p3.jpg": stop_after_two_results},
            ),
            metadata_writer=FakeWriter(),
        )
        batch = submit_batch(concurrency=1)

        try:
            scheduler.start()
            # The loop stays up while p3 is still being annotated
            assert not scheduler.wait_stopped(timeout=0.5)
            release.set()
            assert scheduler.wait_stopped(timeout=10)

            stored = BatchRepository().get_by_id(batch.id)
            assert stored.status == BatchStatus.INTERRUPTED
            assert stored.progress == 60

            photos = photos_by_name(batch.id)
            assert photos["p1.jpg"].status == PhotoStatus.PROCESSED
            assert photos["p2.jpg"].status == PhotoStatus.PROCESSED
            assert photos["p3.jpg"].status == PhotoStatus.FAILED
            for name in ("p4.jpg", "p5.jpg"):
                assert photos[name].status == PhotoStatus.PENDING

            interrupted = events_of(batch.id, "batch_interrupted")
            assert len(interrupted) == 1
            assert interrupted[0].detail == {"completed": 3, "total": 5}
        finally:
            release.set()

    def test_photo_in_flight_at_stop_is_not_annotated_again(self, database, settings, submit_batch):
        entered = threading.Event()
        release = threading.Event()

        def block():
            entered.set()
            release.wait(5)

        annotator = FakeAnnotator(hooks={"p1.jpg": block})
        scheduler = BatchScheduler(
            settings=settings,
            preparer=FakePreparer(),
            annotator=annotator,
            metadata_writer=FakeWriter(),
        )
        batch = submit_batch(concurrency=1)

        try:
            scheduler.start()
            assert entered.wait(5)
            scheduler.stop()

            assert not scheduler.wait_stopped(timeout=0.5)
            with pytest.raises(InvalidTransition):
                scheduler.requeue_batch(batch.id)

            release.set()
            assert scheduler.wait_stopped(timeout=10)
            assert photos_by_name(batch.id)["p1.jpg"].status == PhotoStatus.PROCESSED

            scheduler.requeue_batch(batch.id)
            scheduler.start()
            assert wait_for(
                lambda: BatchRepository().get_by_id(batch.id).status == BatchStatus.PROCESSED
            )
        finally:
            release.set()
            scheduler.stop()
            scheduler.wait_stopped(timeout=5)

        assert sorted(annotator.calls) == [f"p{i}.jpg" for i in range(1, 6)]

    def test_concurrent_batch_ceiling(self, batch_scheduler, submit_batch):
        submit_batch()
        for batch_id in range(batch_scheduler.settings.max_concurrent_batches):
            batch_scheduler.jobs.register(-batch_id - 1, ProcessingJob(-batch_id - 1, "busy", 1))

        assert batch_scheduler._next_batch() is None


class TestQueueStatus:

    def test_queue_status_lists_open_batches(self, batch_scheduler, submit_batch):
        done = submit_batch()
        batch_scheduler.process_batch(done.id)
        waiting = submit_batch()

        status = batch_scheduler.get_queue_status()

        assert status["running"] is False
        assert status["active_jobs"] == 0
        assert [b["id"] for b in status["batches"]] == [waiting.id]
        assert not batch_scheduler.is_idle()

    def test_batch_details(self, batch_scheduler, submit_batch):
        batch = submit_batch()
        batch_scheduler.process_batch(batch.id)

        details = batch_scheduler.get_batch_details(batch.id)

        assert details["status"] == "processed"
        assert details["counts"] == {"processed": 5}
        assert len(details["photos"]) == 5
        assert details["job"] is None

    def test_batch_details_unknown(self, batch_scheduler):
        with pytest.raises(NotFoundError):
            batch_scheduler.get_batch_details(12345)
