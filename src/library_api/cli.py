"""
Command line interface for the Library Circulation API.

Usage:
    library-api init-db [--drop-existing] [--sample-data]
    library-api sweep-overdue
    library-api serve [--host HOST] [--port PORT]
"""

import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from .config import get_config
from .database.session import DatabaseManager
from .errors import LibraryError
from .ledger import BorrowingLedger
from .observability import configure_logging, initialize_observability

logger = logging.getLogger(__name__)


def _db_manager(args) -> DatabaseManager:
    config = get_config()
    return DatabaseManager(args.database_url or config.database_url, config.sqlite_busy_timeout)


def init_db(args) -> int:
    """Create the schema, optionally loading sample data."""
    db_manager = _db_manager(args)

    if not db_manager.verify_connection():
        logger.error("Failed to connect to database")
        return 1

    try:
        db_manager.init_database(drop_existing=args.drop_existing)

        if args.sample_data:
            from .seed import seed_sample_data

            logger.info("Loading sample data...")
            counts = seed_sample_data(db_manager)
            logger.info("Sample data loaded: %s", counts)
    except (SQLAlchemyError, LibraryError):
        logger.exception("Database initialization failed")
        return 1
    finally:
        db_manager.close()

    logger.info("Database ready at %s", db_manager.database_url)
    return 0


def sweep_overdue(args) -> int:
    """Flag overdue borrowings once and exit."""
    db_manager = _db_manager(args)
    try:
        flagged = BorrowingLedger(db_manager).sweep_overdue()
    except LibraryError as e:
        logger.error("Overdue sweep failed: %s", e.message)
        return 1
    finally:
        db_manager.close()

    print(f"Flagged {flagged} overdue borrowing(s)")
    return 0


def serve(args) -> int:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    config = get_config()
    if args.database_url:
        config = config.model_copy(update={"database_url": args.database_url})

    uvicorn.run(
        create_app(config),
        host=args.host or config.http_host,
        port=args.port or config.http_port,
        log_level=config.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="library-api", description="Library Circulation API management"
    )
    parser.add_argument("--database-url", help="Override the configured database URL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
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
    init_parser.set_defaults(handler=init_db)

    sweep_parser = subparsers.add_parser("sweep-overdue", help="Flag overdue borrowings")
    sweep_parser.set_defaults(handler=sweep_overdue)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.set_defaults(handler=serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    configure_logging(config)
    initialize_observability(config)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
