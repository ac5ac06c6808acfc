from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dayplanner.api.routes import get_cache, router as api_router
from dayplanner.config.settings import get_settings
from dayplanner.storage.cache import ScheduleCache
from dayplanner.utils.logging_config import setup_logging


# Setup logging
logger = setup_logging()
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    description="Daily planner engine: recurrence, dependency ordering and conflict-aware day scheduling",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Slot step: {settings.slot_step_minutes} min, dependency buffer: {settings.dependency_buffer_minutes} min")
    logger.info(f"Schedule cache: {'enabled' if settings.cache_enabled else 'disabled'}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.app_name}...")

app.include_router(api_router, prefix="/api/v1", tags=["planner"])


@app.get("/health", tags=["health"])
def health_check(cache: Optional[ScheduleCache] = Depends(get_cache)):
    """Health check endpoint for monitoring and load balancers."""
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": "1.0.0",
        "cache": "disabled" if cache is None else ("ok" if cache.health_check() else "unavailable"),
    }
