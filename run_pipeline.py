#!/usr/bin/env python3
"""
CLI entry point for the photo stock pipeline.

Commands:
    submit FOLDER      Register a folder of photos as a queued batch
    process            Run the annotation scheduler (and optionally uploads)
    status [BATCH_ID]  Show the work queue or one batch in detail
    approve / reject   Review annotated photos
    regenerate ID      Annotate one photo again with optional extra guidance
    upload BATCH_ID    Deliver approved photos to the active destinations
    events             Show the event log of a batch or photo
    recover            Reset work left in flight by a crashed process
    cleanup-events     Delete old event log entries
    destinations       Manage upload destinations (list, add, enable, disable, remove, test)

Usage:
    python run_pipeline.py submit /path/to/photos --type commercial --description "Alps"
    python run_pipeline.py process --until-idle -v
    python run_pipeline.py approve 12 13 14
    python run_pipeline.py upload 3
"""

import argparse
import json
import logging
import sys
import time

from core.errors import PipelineError
from db.database import dispose_engine, verify_connection
from db.event_operations import DEFAULT_EVENT_LIMIT
from db.models import Classification, Destination
from scheduler.services import Services, build_services

logger = logging.getLogger(__name__)

# Seconds between idle checks while the schedulers run in the foreground
WATCH_INTERVAL = 1.0


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure logging for the pipeline run."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers
    )


def _parse_pairs(pairs: list[str] | None) -> dict[str, str]:
    """Parse KEY=VALUE arguments."""
    result = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got: {pair}")
        result[key.strip()] = value
    return result


# ────────────────────────────────────────────────────────────────────────────────
# Commands
# ────────────────────────────────────────────────────────────────────────────────

def cmd_submit(services: Services, args: argparse.Namespace) -> int:
    batch = services.intake.submit_folder(
        args.folder,
        args.type,
        description=args.description,
        name=args.name,
        concurrency=args.concurrency,
    )
    print(f"Batch {batch.id} '{batch.name}' queued with {len(batch.photos)} photo(s)")
    return 0


def cmd_process(services: Services, args: argparse.Namespace) -> int:
    batch_scheduler = services.batch_scheduler
    upload_scheduler = services.upload_scheduler

    batch_scheduler.start()
    if args.uploads:
        upload_scheduler.start()

    print("Processing started. Press Ctrl+C to stop.")
    try:
        while batch_scheduler.is_running:
            time.sleep(WATCH_INTERVAL)
            if args.until_idle and batch_scheduler.is_idle():
                if not args.uploads or upload_scheduler.wait_until_idle(timeout=0):
                    print("Queue is empty, stopping.")
                    break
    finally:
        batch_scheduler.stop()
        batch_scheduler.wait_stopped()
        if args.uploads:
            upload_scheduler.stop()

    return 0


def cmd_status(services: Services, args: argparse.Namespace) -> int:
    if args.batch_id is not None:
        details = services.batch_scheduler.get_batch_details(args.batch_id)
        if args.json:
            print(json.dumps(details, indent=2, default=str))
            return 0

        print(f"Batch {details['id']}: {details['name']}")
        print(f"  Classification: {details['classification']}")
        print(f"  Status: {details['status']} ({details['progress']}%)")
        if details.get("error_message"):
            print(f"  Error: {details['error_message']}")
        print("  Photos:")
        for status, count in sorted(details["counts"].items()):
            print(f"    {status:20s} {count}")
        return 0

    queue_status = services.batch_scheduler.get_queue_status()
    if args.json:
        print(json.dumps(queue_status, indent=2, default=str))
        return 0

    if not queue_status["batches"]:
        print("No queued, processing or interrupted batches.")
        return 0

    print(f"{'ID':>5}  {'STATUS':12}  {'PROGRESS':>8}  NAME")
    for batch in queue_status["batches"]:
        print(f"{batch['id']:>5}  {batch['status']:12}  {batch['progress']:>7}%  {batch['name']}")
    return 0


def cmd_approve(services: Services, args: argparse.Namespace) -> int:
    failures = 0
    for photo_id in args.photo_ids:
        try:
            photo = services.review.approve(photo_id)
            print(f"Photo {photo_id} ({photo.filename}): {photo.status.value}")
        except PipelineError as e:
            print(f"Photo {photo_id}: {e}")
            failures += 1
    return 1 if failures else 0


def cmd_reject(services: Services, args: argparse.Namespace) -> int:
    failures = 0
    for photo_id in args.photo_ids:
        try:
            photo = services.review.reject(photo_id, reason=args.reason)
            print(f"Photo {photo_id} ({photo.filename}): {photo.status.value}")
        except PipelineError as e:
            print(f"Photo {photo_id}: {e}")
            failures += 1
    return 1 if failures else 0


def cmd_regenerate(services: Services, args: argparse.Namespace) -> int:
    try:
        photo = services.review.regenerate(args.photo_id, description=args.description)
    except PipelineError as e:
        print(f"Photo {args.photo_id}: {e}")
        return 1

    annotation = photo.annotation or {}
    print(f"Photo {photo.id} ({photo.filename}): {photo.status.value}")
    print(f"  Title:    {annotation.get('title', '')}")
    print(f"  Keywords: {', '.join(annotation.get('keywords') or [])}")
    return 0


def cmd_upload(services: Services, args: argparse.Namespace) -> int:
    upload_scheduler = services.upload_scheduler
    if args.photos:
        queued = upload_scheduler.queue_photos_for_upload(args.batch_id, args.photos)
    else:
        queued = upload_scheduler.queue_approved_photos(args.batch_id)

    print(f"Queued {len(queued)} photo(s) for upload")
    if args.no_wait:
        return 0

    upload_scheduler.start()
    try:
        upload_scheduler.wait_until_idle()
    finally:
        upload_scheduler.stop()

    progress = upload_scheduler.get_upload_progress(args.batch_id)
    for status, count in sorted(progress["counts"].items()):
        print(f"  {status:20s} {count}")
    return 0


def cmd_events(services: Services, args: argparse.Namespace) -> int:
    if args.batch is not None:
        events = services.event_log.get_batch_events(args.batch, limit=args.limit)
    else:
        events = services.event_log.get_photo_events(args.photo, limit=args.limit)

    for event in events:
        created = event.created_at.strftime("%Y-%m-%d %H:%M:%S") if event.created_at else ""
        print(f"{created}  {event.event_type:22s} {event.outcome.value:8s} {event.message}")
    return 0


def cmd_recover(services: Services, args: argparse.Namespace) -> int:
    counts = services.recovery.run()
    print(
        f"Recovered {counts['batches']} batch(es), {counts['photos']} photo(s) "
        f"and {counts['uploads']} interrupted upload(s)"
    )
    return 0


def cmd_cleanup_events(services: Services, args: argparse.Namespace) -> int:
    deleted = services.event_log.cleanup_old_events(args.days)
    print(f"Deleted {deleted} event(s) older than {args.days} day(s)")
    return 0


def cmd_destinations(services: Services, args: argparse.Namespace) -> int:
    repository = services.destinations

    if args.action == "list":
        destinations = repository.get_all()
        if not destinations:
            print("No destinations configured.")
        for destination in destinations:
            state = "active" if destination.active else "inactive"
            accepts = ", ".join(destination.supported_classifications or [])
            print(f"{destination.id:>4}  {destination.name:20s} {destination.type:12s} {state:8s} {accepts}")
        return 0

    if args.action == "add":
        if repository.get_by_name(args.name) is not None:
            raise ValueError(f"Destination '{args.name}' already exists")
        connection = _parse_pairs(args.connection)
        services.registry.validate(Destination(name=args.name, type=args.type, connection=connection))
        destination = repository.create(
            name=args.name,
            type=args.type,
            supported_classifications=args.classifications,
            connection=connection,
            settings=_parse_pairs(args.setting),
            active=not args.inactive,
        )
        print(f"Destination {destination.id} '{destination.name}' created")
        return 0

    destination = repository.get_by_id(args.destination_id)
    if destination is None:
        print(f"Destination {args.destination_id} not found")
        return 1

    if args.action in ("enable", "disable"):
        repository.set_active(destination.id, args.action == "enable")
        print(f"Destination {destination.id} {args.action}d")
        return 0

    if args.action == "remove":
        repository.delete(destination.id)
        print(f"Destination {destination.id} '{destination.name}' removed")
        return 0

    outcome = services.registry.test_connection(destination)
    print(f"{destination.name}: {'OK' if outcome.success else 'FAILED'} - {outcome.message}")
    return 0 if outcome.success else 1


# ────────────────────────────────────────────────────────────────────────────────
# Argument Parsing
# ────────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Annotate photo batches with AI and upload approved photos to stock sites.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_pipeline.py submit /photos/alps --type commercial --description "Swiss Alps in winter"
  python run_pipeline.py process --until-idle
  python run_pipeline.py status 3
  python run_pipeline.py approve 12 13
  python run_pipeline.py upload 3
  python run_pipeline.py destinations add adobe --type ftp --classifications commercial \\
      --connection host=ftp.example.com --connection username=me --connection password=secret
        """
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug output"
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    classifications = [c.value for c in Classification]

    submit = subparsers.add_parser("submit", help="Queue a folder of photos as a batch")
    submit.add_argument("folder", help="Folder containing the photos")
    submit.add_argument("--type", required=True, choices=classifications, help="Content classification")
    submit.add_argument("--description", help="Description passed to the annotation service")
    submit.add_argument("--name", help="Batch name (default: batch_<timestamp>)")
    submit.add_argument("--concurrency", type=int, help="Photos annotated in parallel")
    submit.set_defaults(handler=cmd_submit)

    process = subparsers.add_parser("process", help="Run the annotation scheduler")
    process.add_argument("--until-idle", action="store_true", help="Stop once the queue is empty")
    process.add_argument("--uploads", action="store_true", help="Run the upload workers as well")
    process.set_defaults(handler=cmd_process)

    status = subparsers.add_parser("status", help="Show the queue or one batch")
    status.add_argument("batch_id", nargs="?", type=int)
    status.add_argument("--json", action="store_true", help="Print raw JSON")
    status.set_defaults(handler=cmd_status)

    approve = subparsers.add_parser("approve", help="Approve photos for upload")
    approve.add_argument("photo_ids", nargs="+", type=int)
    approve.set_defaults(handler=cmd_approve)

    reject = subparsers.add_parser("reject", help="Reject photos")
    reject.add_argument("photo_ids", nargs="+", type=int)
    reject.add_argument("--reason", help="Reason stored with the photo")
    reject.set_defaults(handler=cmd_reject)

    regenerate = subparsers.add_parser("regenerate", help="Annotate one photo again")
    regenerate.add_argument("photo_id", type=int)
    regenerate.add_argument("--description", help="Extra guidance added to the batch description")
    regenerate.set_defaults(handler=cmd_regenerate)

    upload = subparsers.add_parser("upload", help="Upload approved photos of a batch")
    upload.add_argument("batch_id", type=int)
    upload.add_argument("--photos", nargs="+", type=int, help="Only these photo IDs")
    upload.add_argument("--no-wait", action="store_true", help="Only queue, do not deliver")
    upload.set_defaults(handler=cmd_upload)

    events = subparsers.add_parser("events", help="Show the event log")
    target = events.add_mutually_exclusive_group(required=True)
    target.add_argument("--batch", type=int, help="Batch ID")
    target.add_argument("--photo", type=int, help="Photo ID")
    events.add_argument("--limit", type=int, default=DEFAULT_EVENT_LIMIT)
    events.set_defaults(handler=cmd_events)

    recover = subparsers.add_parser("recover", help="Reset work left in flight by a crash")
    recover.set_defaults(handler=cmd_recover)

    cleanup = subparsers.add_parser("cleanup-events", help="Delete old events")
    cleanup.add_argument("--days", type=int, required=True, help="Keep events newer than this")
    cleanup.set_defaults(handler=cmd_cleanup_events)

    destinations = subparsers.add_parser("destinations", help="Manage upload destinations")
    actions = destinations.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help="List destinations")

    add = actions.add_parser("add", help="Add a destination")
    add.add_argument("name")
    add.add_argument("--type", required=True, help="Destination type (ftp, sftp, api, shutterstock)")
    add.add_argument("--classifications", nargs="+", choices=classifications, default=classifications)
    add.add_argument("--connection", action="append", metavar="KEY=VALUE", help="Connection field")
    add.add_argument("--setting", action="append", metavar="KEY=VALUE", help="Uploader setting")
    add.add_argument("--inactive", action="store_true", help="Create disabled")

    for action in ("enable", "disable", "remove", "test"):
        sub = actions.add_parser(action, help=f"{action.capitalize()} a destination")
        sub.add_argument("destination_id", type=int)
    destinations.set_defaults(handler=cmd_destinations)

    return parser


def main(argv: list[str] | None = None, services: Services | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_file)

    try:
        if services is None:
            if not verify_connection():
                print("ERROR: Could not connect to database.")
                print("Please check your .env configuration and run init_db.py first.")
                return 1
            services = build_services()
        return args.handler(services, args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 130
    except (PipelineError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1
    except Exception as e:
        print(f"\nERROR: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        dispose_engine()


if __name__ == "__main__":
    sys.exit(main())
