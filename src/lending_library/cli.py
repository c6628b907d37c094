"""
Command line entry point for the lending library.

Usage:
    lending-library init-db [--drop-existing] [--sample-data] [--database-url URL]
    lending-library expire-holds [--database-url URL]
    lending-library serve
"""

import argparse
import logging
import sys

from .config import get_config
from .database.circulation_repository import CirculationRepository
from .database.seed import seed_database
from .database.session import get_db_manager
from .server import configure_logging
from .server import main as serve_main

logger = logging.getLogger(__name__)


def init_db(args: argparse.Namespace) -> int:
    db_manager = get_db_manager(args.database_url)

    if not db_manager.verify_connection():
        logger.error("Failed to connect to database")
        return 1

    try:
        db_manager.init_database(drop_existing=args.drop_existing)
        if args.sample_data:
            with db_manager.session_scope() as session:
                counts = seed_database(session)
            logger.info("Sample data loaded: %s", counts)
    finally:
        db_manager.close()
    return 0


def expire_holds(args: argparse.Namespace) -> int:
    """Run one expiry sweep; meant for cron or a scheduler."""
    db_manager = get_db_manager(args.database_url)
    try:
        with db_manager.session_scope() as session:
            result = CirculationRepository(session).expire_stale_reservations()
    finally:
        db_manager.close()

    logger.info(
        "Expired %d holds, promoted %d reservations", len(result.expired), len(result.promoted)
    )
    return 1 if result.failures else 0


def serve(args: argparse.Namespace) -> int:  # noqa: ARG001
    serve_main()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lending-library", description="Lending library administration"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating new ones",
    )
    init_parser.add_argument(
        "--sample-data",
        action="store_true",
        help="Load sample data after creating tables",
    )
    init_parser.add_argument("--database-url", help="Override default database URL")
    init_parser.set_defaults(func=init_db)

    expire_parser = subparsers.add_parser("expire-holds", help="Expire uncollected holds")
    expire_parser.add_argument("--database-url", help="Override default database URL")
    expire_parser.set_defaults(func=expire_holds)

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server over stdio")
    serve_parser.set_defaults(func=serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command != "serve":
        configure_logging(get_config().effective_log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
