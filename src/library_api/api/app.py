"""
FastAPI application factory for the Library Circulation API.

``create_app()`` wires configuration, the database manager, the clock and
the borrowing ledger onto ``app.state`` and mounts the routers under
``/api/v1``. On startup the schema is created if missing and one overdue
sweep runs; a periodic sweep runs when
``overdue_sweep_interval_seconds`` is set.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from ..clock import Clock, SystemClock
from ..config import ServerConfig, get_config
from ..database.session import DatabaseManager
from ..errors import ConflictRetryExhausted
from ..ledger import BorrowingLedger
from ..observability import initialize_observability
from .errors import register_exception_handlers
from .routers import auth, books, borrowings, dashboard, health, users

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


async def _sweep_periodically(ledger: BorrowingLedger, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(ledger.sweep_overdue)
        except ConflictRetryExhausted as e:
            logger.warning("Skipped overdue sweep: %s", e.message)
        except Exception:
            logger.exception("Overdue sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: ServerConfig = app.state.config
    initialize_observability(config)

    await run_in_threadpool(app.state.db.init_database)
    if app.state.sweep_on_startup:
        await run_in_threadpool(app.state.ledger.sweep_overdue)

    task = None
    if config.overdue_sweep_interval_seconds > 0:
        task = asyncio.create_task(
            _sweep_periodically(app.state.ledger, config.overdue_sweep_interval_seconds)
        )
        logger.info(
            "Periodic overdue sweep every %.0f seconds", config.overdue_sweep_interval_seconds
        )

    logger.info("%s %s started", config.app_name, config.app_version)
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("%s stopped", config.app_name)


def create_app(
    config: ServerConfig | None = None,
    db: DatabaseManager | None = None,
    clock: Clock | None = None,
    sweep_on_startup: bool = True,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings; defaults to the process-wide configuration
        db: Database manager; defaults to one built from ``config``
        clock: Time source; tests inject a ``FixedClock``
        sweep_on_startup: Run one overdue sweep when the app starts
    """
    config = config or get_config()
    db = db or DatabaseManager(config.database_url, config.sqlite_busy_timeout)
    clock = clock or SystemClock()

    app = FastAPI(
        title="Library Circulation API",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.db = db
    app.state.clock = clock
    app.state.ledger = BorrowingLedger(db, clock, config)
    app.state.sweep_on_startup = sweep_on_startup

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Authorization", "Retry-After"],
    )

    register_exception_handlers(app)

    app.include_router(health.router)
    for router in (auth.router, books.router, borrowings.router, users.router, dashboard.router):
        app.include_router(router, prefix=API_PREFIX)

    return app
