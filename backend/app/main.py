"""jobflow Backend API - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from jobflow import __version__

from .config import get_settings
from .deps import AppServices
from .errors import register_error_handlers
from .rate_limit import limiter
from .routes import admin_router, commissions_router, credits_router, jobs_router

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info("Starting jobflow backend API (debug=%s)", settings.debug)
    yield
    logger.info("Shutting down jobflow backend API")


app = FastAPI(
    title="jobflow Backend API",
    description="Job lifecycle workflow and credit/commission accounting",
    version=__version__,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Workflow errors -> HTTP status codes
register_error_handlers(app)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router, prefix=API_PREFIX)
app.include_router(credits_router, prefix=API_PREFIX)
app.include_router(commissions_router, prefix=API_PREFIX)
app.include_router(admin_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "jobflow-backend",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
async def health(services: AppServices):
    """Health check that touches the job store."""
    try:
        services.jobs.list_jobs(limit=1)
        db_status = "connected"
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        db_status = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
    }
