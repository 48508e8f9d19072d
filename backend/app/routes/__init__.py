"""API routes."""

from .admin import router as admin_router
from .commissions import router as commissions_router
from .credits import router as credits_router
from .jobs import router as jobs_router

__all__ = [
    "admin_router",
    "commissions_router",
    "credits_router",
    "jobs_router",
]
