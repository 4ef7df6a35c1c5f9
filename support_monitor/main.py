"""
Application entrypoint: database pool, schema, and session supervisor lifecycle.
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from support_monitor.config import settings
from support_monitor.db.pool import db_pool
from support_monitor.db.schema import initialize_schema
from support_monitor.infrastructure.observability.logging import get_logger, setup_logging
from support_monitor.repositories.store import store
from support_monitor.routes import health
from support_monitor.services.analytics_service import analytics_service
from support_monitor.services.instance_service import InstanceService
from support_monitor.services.session.client import load_client_factory
from support_monitor.services.session.supervisor import SessionSupervisor

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


def build_supervisor() -> SessionSupervisor:
    client_factory = None
    if settings.NETWORK_CLIENT_FACTORY:
        client_factory = load_client_factory(settings.NETWORK_CLIENT_FACTORY)
    else:
        logger.warning("NETWORK_CLIENT_FACTORY not set, sessions cannot be opened")
    return SessionSupervisor(client_factory, analytics=analytics_service, store=store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        await initialize_schema()
        startup_tasks.append("schema")

        supervisor = build_supervisor()
        app.state.supervisor = supervisor
        app.state.instances = InstanceService(supervisor, store)
        startup_tasks.append("supervisor")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    # Sessions reconnect in the background; startup does not wait for the network
    restore_task = asyncio.create_task(supervisor.restore_known_sessions(), name="session-restore")
    app.state.restore_task = restore_task

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    if not restore_task.done():
        logger.info("Cancelling session restore")
        restore_task.cancel()
    try:
        await restore_task
    except asyncio.CancelledError:
        logger.info("Session restore cancelled")
    except Exception as e:
        logger.error("Session restore failed", error=str(e))
        shutdown_errors.append(f"Restore: {e}")

    try:
        logger.info("Stopping session supervisor")
        await supervisor.shutdown()
    except Exception as e:
        logger.error("Error stopping session supervisor", error=str(e))
        shutdown_errors.append(f"Supervisor: {e}")

    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Support Monitor",
    description="Support-quality monitoring for business messaging numbers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
