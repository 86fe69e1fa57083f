"""
FastAPI dependencies for the components wired in the application lifespan.
"""

from typing import Annotated

from fastapi import Depends, Request

from memorymesh.cache.store import TieredCache
from memorymesh.dashboard import QueueDashboard
from memorymesh.dispatcher import JobDispatcher
from memorymesh.queues.registry import QueueRegistry


def get_registry(request: Request) -> QueueRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher


def get_dashboard(request: Request) -> QueueDashboard:
    return request.app.state.dashboard


def get_app_cache(request: Request) -> TieredCache:
    return request.app.state.cache


# Type aliases for dependency injection
Registry = Annotated[QueueRegistry, Depends(get_registry)]
Dispatcher = Annotated[JobDispatcher, Depends(get_dispatcher)]
Dashboard = Annotated[QueueDashboard, Depends(get_dashboard)]
AppCache = Annotated[TieredCache, Depends(get_app_cache)]
