import logging
import time
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import Settings
from core.database import DatabaseManager
from core.monitor import ConnectionMonitor
from routes import health_router
from services.optional import SubsystemResult

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    manager: DatabaseManager,
    monitor: Optional[ConnectionMonitor] = None,
    subsystems: Optional[List[SubsystemResult]] = None,
) -> FastAPI:
    """Build the request-handling surface around an already connected manager."""
    app = FastAPI(title=settings.app_name)
    app.state.settings = settings
    app.state.db = manager
    app.state.monitor = monitor
    app.state.subsystems = list(subsystems or [])
    app.state.started_at = time.monotonic()

    # CORS first, before any routers.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-CSRF-Token"],
        expose_headers=["X-Total-Count", "Content-Length"],
        max_age=3600,
    )

    app.include_router(health_router)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"success": False, "message": "Internal server error"}
        if not settings.is_production:
            body["error"] = str(exc)
        return JSONResponse(body, status_code=500)

    logger.info("FastAPI app: CORS allow_origins=%s", settings.cors_origins)
    return app
