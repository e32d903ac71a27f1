"""
EventPass booking core - application entry point.

- Conditional-UPDATE inventory ledger (no oversell, no application locks)
- Redis hold markers as a non-authoritative accelerator
- In-process expiry sweeper as the durable backstop for lapsed holds
- Idempotent payment reconciliation over verify and webhook channels
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from eventpass.api.exception_handlers import register_exception_handlers
from eventpass.api.middleware import RequestLoggingMiddleware
from eventpass.api.router import api_router
from eventpass.core.config import get_settings
from eventpass.core.logging import get_logger, setup_logging
from eventpass.core.metrics import metrics_endpoint
from eventpass.db.session import AsyncSessionLocal
from eventpass.infrastructure.redis_client import close_redis, get_redis
from eventpass.services.expiry_sweeper import ExpirySweeper
from eventpass.services.hold_service import HoldManager

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        hold_seconds=settings.BOOKING_HOLD_SECONDS,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Holds fall back to created_at only")

    sweeper = None
    if settings.SWEEPER_ENABLED:
        sweeper = ExpirySweeper(AsyncSessionLocal, HoldManager(redis_client))
        sweeper.start()
    app.state.sweeper = sweeper

    yield

    if sweeper is not None:
        await sweeper.stop()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Ticket booking core: inventory ledger, holds, expiry sweep and payment reconciliation",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)
app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    sweeper = getattr(app.state, "sweeper", None)
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "hold_store": "connected" if await get_redis() else "unavailable",
        "sweeper": "running" if sweeper is not None and sweeper.running else "stopped",
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_endpoint()
