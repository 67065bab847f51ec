"""API routers."""

from .dispatch import router as dispatch_router
from .incidents import router as incidents_router
from .realtime import router as realtime_router
from .units import router as units_router

__all__ = ["dispatch_router", "incidents_router", "realtime_router", "units_router"]
