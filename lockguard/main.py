import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lockguard import __version__
from lockguard.config import settings
from lockguard.database import init_db, close_db, async_session_maker
from lockguard.api import api_router
from lockguard.middleware.security import SecurityMiddleware
from lockguard.services.notifications import notifier
from lockguard.services.session_monitoring import SessionMonitoringService

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()

    app.state.session_factory = async_session_maker
    app.state.monitoring = None
    if settings.enable_session_monitoring:
        monitoring = SessionMonitoringService(async_session_maker)
        await monitoring.start_monitoring()
        app.state.monitoring = monitoring
    else:
        logger.info("Session monitoring disabled")

    yield

    # Shutdown
    if app.state.monitoring is not None:
        app.state.monitoring.stop_monitoring()
    await notifier.close()
    await close_db()


app = FastAPI(
    title="Lockguard",
    description="Account lockout and session monitoring service",
    version=__version__,
    lifespan=lifespan,
)

# Security middleware (blocked IPs)
app.add_middleware(SecurityMiddleware)

# Include API router
app.include_router(api_router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    monitoring = getattr(app.state, "monitoring", None)
    return {
        "status": "ok",
        "version": __version__,
        "monitoring": monitoring.is_running if monitoring else False,
    }
