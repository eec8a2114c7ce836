#!/usr/bin/env python3
"""
Database initialization script for the photo stock pipeline.

This script:
1. Verifies database connection
2. Creates all tables defined in models (or drops them with --drop)
3. Optionally displays connection info for debugging

Usage:
    python init_db.py [--verbose] [--check] [--info] [--drop]
"""

import argparse
import logging
import sys

from db.database import (
    dispose_engine,
    drop_db,
    get_db_info,
    init_db,
    verify_connection,
)
from db.models import Base, BatchStatus, PhotoStatus

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def print_info() -> None:
    print("Connection Settings:")
    for key, value in get_db_info().items():
        print(f"  {key}: {value}")
    print()


def main(argv: list[str] | None = None) -> int:
    """Initialize the database."""
    parser = argparse.ArgumentParser(
        description="Initialize the photo stock pipeline database"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show detailed output"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only verify connection, don't create tables"
    )
    parser.add_argument(
        "--info",
        action="store_true",
        help="Show connection info (password masked)"
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop all tables (asks for confirmation)"
    )
    parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask for confirmation"
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    print("=" * 60)
    print("Photo Stock Pipeline - Database Initialization")
    print("=" * 60)
    print()

    try:
        if args.info or args.verbose:
            print_info()

        print("[1/2] Verifying database connection...")
        if not verify_connection():
            print()
            print("ERROR: Could not connect to database!")
            print()
            print("Please check:")
            print("  1. PostgreSQL is running (or DATABASE_URL points to SQLite)")
            print("  2. The configured database exists")
            print("  3. .env file has correct credentials")
            print()
            return 1

        print("  -> Connection successful!")
        print()

        if args.check:
            print("Check-only mode: Skipping table creation.")
            return 0

        if args.drop:
            if not args.yes:
                confirm = input("This deletes ALL batches, photos and events. Type 'yes' to confirm: ")
                if confirm.lower() != "yes":
                    print("Aborted.")
                    return 0
            print("[2/2] Dropping database tables...")
            if not drop_db():
                print("ERROR: Failed to drop tables! Check the logs above for details.")
                return 1
            print("  -> Tables dropped.")
            return 0

        print("[2/2] Creating database tables...")
        if not init_db():
            print()
            print("ERROR: Failed to create tables!")
            print("Check the logs above for details.")
            return 1

        print("  -> Tables created successfully!")
        print()

        print("=" * 60)
        print("Database initialization complete!")
        print("=" * 60)
        print()
        print("Tables created:")
        for table in Base.metadata.sorted_tables:
            print(f"  - {table.name}")
        print()
        print("Batch statuses:", ", ".join(s.value for s in BatchStatus))
        print("Photo statuses:", ", ".join(s.value for s in PhotoStatus))
        print()
        print("Next steps:")
        print("  1. Add a destination:  python run_pipeline.py destinations add ...")
        print("  2. Submit a folder:    python run_pipeline.py submit /path --type commercial")
        print("  3. Start processing:   python run_pipeline.py process")
        print()
        return 0

    finally:
        dispose_engine()


if __name__ == "__main__":
    sys.exit(main())
