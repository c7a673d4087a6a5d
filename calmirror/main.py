"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from calmirror.config import get_settings
from calmirror.database import close_database, open_database
from calmirror.utils.rate_limit import limiter

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Owns the database connection, the provider client factory and the
    workflow runner; routes and jobs receive them from here.
    """
    from calmirror.auth.google import google_client_factory
    from calmirror.sync.triggers import build_runner

    settings = get_settings()
    logger.info("Starting calendar mirror...")
    logger.info(f"Public URL: {settings.public_url}")
    logger.info(f"Database: {settings.database_path}")

    db = await open_database(settings.database_path)
    client_factory = google_client_factory(db)
    runner = build_runner(db, client_factory, settings)

    app.state.db = db
    app.state.client_factory = client_factory
    app.state.runner = runner

    # Runs interrupted by the last shutdown continue from their journal
    await runner.resume_incomplete()

    if settings.enable_scheduler:
        try:
            from calmirror.jobs.scheduler import setup_scheduler
            setup_scheduler(db, runner, client_factory)
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
    else:
        logger.info("Background scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")

    try:
        from calmirror.jobs.scheduler import shutdown_scheduler
        shutdown_scheduler()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")

    await runner.shutdown()
    await close_database(db)
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Calendar Mirror",
    description="Keeps a local mirror of provider calendars in sync",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    try:
        await request.app.state.db.execute("SELECT 1")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )


# Include routers
from calmirror.api import api_router

app.include_router(api_router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "calmirror.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=settings.log_level.lower(),
        reload=False,
    )
