"""Routers package."""

from coachbilling.routers.billing import router as billing_router
from coachbilling.routers.health import router as health_router

__all__ = ["billing_router", "health_router"]
