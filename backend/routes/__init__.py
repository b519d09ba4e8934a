"""HTTP routers mounted by the application factory."""

from .health import router as health_router

__all__ = ["health_router"]
