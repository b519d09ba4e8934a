"""Health endpoints: process liveness and database health."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from version import get_version

router = APIRouter(tags=["health"])


@router.get("/health", summary="Server alive check")
async def health() -> dict:
    """Liveness only; never touches the database."""
    return {"status": "ok"}


@router.get("/api/health", summary="Health with database status")
async def api_health(request: Request) -> JSONResponse:
    report = await request.app.state.db.health_check()
    status_code = 200 if report.connected else 503
    return JSONResponse(report.to_dict(), status_code=status_code)


@router.get("/api/health/detailed", summary="Full connection diagnostics")
async def api_health_detailed(request: Request) -> JSONResponse:
    state = request.app.state
    report = await state.db.health_check()
    payload = report.to_dict()
    payload.update(
        {
            "attempts_made": state.db.attempts_made,
            "monitor": state.monitor.snapshot() if state.monitor is not None else None,
            "subsystems": [
                {"name": r.name, "enabled": r.enabled, "error": r.error}
                for r in getattr(state, "subsystems", [])
            ],
            "uptime_seconds": round(time.monotonic() - state.started_at, 1),
            "version": get_version(),
        }
    )
    return JSONResponse(payload, status_code=200 if report.connected else 503)
