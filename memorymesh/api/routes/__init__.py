"""
API routes module.
"""

from memorymesh.api.routes.auth import router as auth_router
from memorymesh.api.routes.health import router as health_router
from memorymesh.api.routes.jobs import router as jobs_router
from memorymesh.api.routes.queues import router as queues_router

__all__ = ["jobs_router", "auth_router", "health_router", "queues_router"]
