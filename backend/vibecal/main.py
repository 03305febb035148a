"""
FastAPI application entry point.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vibecal.config import get_settings
from vibecal.dependencies import get_orchestrator, get_session_service, get_session_store
from vibecal.routes import auth, calendar, chat, health
from vibecal.utils.logger import get_logger, setup_logging

# Get settings
settings = get_settings()

# Setup logging
setup_logging(settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load sessions, optionally discover models, run the periodic sweep."""
    store = get_session_store()
    store.load()

    if settings.discover_models_on_startup:
        await get_orchestrator().discover()

    sweeper = asyncio.create_task(
        get_session_service().run_sweeper(settings.session_sweep_interval_seconds)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await store.persist()
        logger.info("Session store saved on shutdown")


# Create FastAPI app
app = FastAPI(
    title="VibeCalendar",
    description="Natural-language calendar assistant backed by Google Calendar",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(chat.router, prefix="/api", tags=["Chat"])
app.include_router(calendar.router, prefix="/api/calendar", tags=["Calendar"])


@app.get("/")
async def root():
    """Root endpoint - points at docs."""
    return {
        "message": "VibeCalendar API",
        "docs": "/docs",
        "health": "/api/health",
    }
