"""
Application bootstrap sequence.

Startup phases run strictly in order, each one a precondition for the next:

1. Filesystem (uploads directory)
2. Environment validation
3. Database connection (blocks; fatal after retries) + connection monitor
4. Optional services (never fatal)
5. FastAPI application
6. Port pre-flight check
7. HTTP server (uvicorn) + SIGTERM/SIGINT handlers

Shutdown reverses it: monitor, HTTP server, database. A shutdown that takes
longer than SHUTDOWN_TIMEOUT is abandoned and reported with exit code 1.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import functools
import logging
import signal
import socket
import sys
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI

from core.config import Settings, validate_environment
from core.database import ConnectionOptions, DatabaseManager
from core.errors import FatalStartupError, PortUnavailableError, StartupError
from core.logging import log_block, resolve_level
from core.monitor import ConnectionMonitor
from main import create_app
from services.email_service import initialize_email_service
from services.optional import SubsystemResult, run_optional

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 10.0
KEEP_ALIVE_TIMEOUT = 65
_STARTUP_POLL = 0.05
_WSAEADDRINUSE = 10048

OptionalSubsystems = Dict[str, Callable[[], Awaitable[bool]]]
ServerFactory = Callable[[FastAPI, Settings], Any]


# ============================================================================
# PORT AVAILABILITY CHECK
# ============================================================================


def check_port_available(host: str, port: int) -> bool:
    """Return False if something is already listening on host:port.

    Detects listeners left over from unclean shutdowns (laptop reboot,
    terminal killed) before uvicorn tries to bind.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        if sys.platform != "win32":
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE or getattr(exc, "winerror", None) == _WSAEADDRINUSE:
                return False
            # Anything else (EACCES, bad address) surfaces when uvicorn binds.
            return True
    return True


def _port_in_use_diagnostic(port: int) -> List[str]:
    return [
        "A previous server process is still running.",
        "",
        "Fix (run one of these in a terminal):",
        f"  Windows:  netstat -ano | findstr :{port}",
        "            taskkill /F /PID <PID_NUMBER>",
        f"  macOS:    lsof -i :{port} | grep LISTEN",
        "            kill -9 <PID>",
        f"  Linux:    fuser -k {port}/tcp",
        "",
        "Or change PORT in your .env file.",
    ]


# ============================================================================
# HTTP SERVER
# ============================================================================


class _Server(uvicorn.Server):
    """uvicorn server whose signal handling belongs to Bootstrap."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_server(app: FastAPI, settings: Settings) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=resolve_level(settings.log_level),
        log_config=None,
        lifespan="off",
        timeout_keep_alive=KEEP_ALIVE_TIMEOUT,
    )
    return _Server(config)


def default_optional_subsystems(settings: Settings) -> OptionalSubsystems:
    return {"Email": functools.partial(initialize_email_service, settings)}


# ============================================================================
# MAIN BOOTSTRAP ORCHESTRATION
# ============================================================================


class Bootstrap:
    """Runs the startup phases, then waits for a shutdown signal."""

    def __init__(
        self,
        settings: Settings,
        *,
        manager: Optional[DatabaseManager] = None,
        monitor: Optional[ConnectionMonitor] = None,
        optional_subsystems: Optional[OptionalSubsystems] = None,
        server_factory: ServerFactory = build_server,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
    ) -> None:
        self.settings = settings
        self.manager = manager or DatabaseManager(settings.database_url, ConnectionOptions())
        self.monitor = monitor or ConnectionMonitor(self.manager)
        self._optional = (
            optional_subsystems
            if optional_subsystems is not None
            else default_optional_subsystems(settings)
        )
        self._server_factory = server_factory
        self._shutdown_timeout = shutdown_timeout
        self.app: Optional[FastAPI] = None
        self.server: Any = None
        self.subsystems: List[SubsystemResult] = []
        self._server_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_reason: Optional[str] = None
        self._signals: List[signal.Signals] = []

    # -- phases -----------------------------------------------------------

    async def start(self) -> FastAPI:
        """Run every startup phase. Raises on the first fatal failure."""
        started = time.monotonic()
        log_block(
            logger,
            logging.INFO,
            "STARTING APPLICATION BOOTSTRAP SEQUENCE",
            [f"   Time: {datetime.now(timezone.utc).isoformat()}"],
        )

        logger.info("Phase 1: Initializing filesystem...")
        self._prepare_filesystem()

        logger.info("Phase 2: Validating environment variables...")
        validate_environment(self.settings)
        logger.info("Environment validated")

        logger.info("Phase 3: Connecting to database...")
        await self.manager.connect()
        self.monitor.start()

        logger.info("Phase 4: Initializing optional services...")
        self.subsystems = [
            await run_optional(name, initializer) for name, initializer in self._optional.items()
        ]

        logger.info("Phase 5: Building application...")
        self.app = create_app(self.settings, self.manager, self.monitor, self.subsystems)

        logger.info("Phase 6: Checking port availability...")
        if not check_port_available(self.settings.host, self.settings.port):
            log_block(
                logger,
                logging.ERROR,
                f"PORT {self.settings.port} IS ALREADY IN USE",
                _port_in_use_diagnostic(self.settings.port),
            )
            raise PortUnavailableError(
                f"Port {self.settings.port} is occupied by another process",
                remedy=["Stop the stale process or change PORT"],
            )
        logger.info("Port %s is available", self.settings.port)

        logger.info("Phase 7: Starting HTTP server...")
        await self._start_listener()
        self._install_signal_handlers()

        self._log_started()
        logger.info("Bootstrap completed in %.1fs", time.monotonic() - started)
        return self.app

    def _prepare_filesystem(self) -> None:
        uploads_dir = self.settings.uploads_dir
        try:
            if not uploads_dir.exists():
                uploads_dir.mkdir(parents=True, exist_ok=True)
                logger.info("Uploads directory created: %s", uploads_dir)
        except OSError as exc:
            if self.settings.is_production:
                raise FatalStartupError(f"Cannot create uploads directory: {exc}") from exc
            logger.warning("Cannot create uploads directory: %s", exc)

    async def _start_listener(self) -> None:
        self.server = self._server_factory(self.app, self.settings)
        self._server_task = asyncio.get_running_loop().create_task(
            self._serve(), name="http-server"
        )
        while not getattr(self.server, "started", False):
            if self._server_task.done():
                self._server_task.result()
                raise FatalStartupError("HTTP server exited during startup")
            await asyncio.sleep(_STARTUP_POLL)

    async def _serve(self) -> None:
        try:
            await self.server.serve()
        except SystemExit as exc:
            # uvicorn exits the process when it cannot bind.
            raise FatalStartupError(
                f"HTTP server could not listen on {self.settings.host}:{self.settings.port}",
                remedy=[
                    "Use a port above 1024 or run with elevated privileges",
                    "Check that no other process holds the port",
                ],
            ) from exc

    def _log_started(self) -> None:
        s = self.settings
        db_status = "Connected" if self.manager.is_connected() else "Disconnected (will auto-reconnect)"
        cloud = " (all interfaces)" if s.host == "0.0.0.0" else " (loopback)"
        origins = ", ".join(s.cors_origins[:2]) + ("..." if len(s.cors_origins) > 2 else "")
        log_block(
            logger,
            logging.INFO,
            "APPLICATION STARTED SUCCESSFULLY",
            [
                f"Server Port: {s.port}",
                f"Binding: {s.host}:{s.port}{cloud}",
                f"Environment: {s.env}",
                f"Database: {db_status}",
                f"CORS Origins: {origins}",
                "Health Check Endpoints:",
                "   GET /health              → Server alive check",
                "   GET /api/health          → Health (with DB status)",
                "   GET /api/health/detailed → Full diagnostics",
            ],
        )

    # -- run / abort ------------------------------------------------------

    async def run(self) -> int:
        """Start, serve until a shutdown request, and return the exit code."""
        try:
            await self.start()
        except Exception as exc:
            await self._abort(exc)
            return 1

        waiter = asyncio.ensure_future(self._shutdown_event.wait())
        done, _ = await asyncio.wait(
            {waiter, self._server_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if waiter in done:
            return await self.shutdown(self._shutdown_reason or "shutdown")

        waiter.cancel()
        logger.error("HTTP server stopped unexpectedly")
        await self.shutdown("listener exit")
        return 1

    async def _abort(self, exc: BaseException) -> None:
        detail = exc.diagnostic() if isinstance(exc, StartupError) else str(exc)
        lines = detail.splitlines() or [""]
        lines[0] = f"Error: {lines[0]}"
        log_block(logger, logging.ERROR, "BOOTSTRAP FAILED", lines)
        if self.settings.is_development:
            logger.error("Stack trace:", exc_info=exc)

        if self._server_task is not None:
            self.server.should_exit = True
            with contextlib.suppress(Exception):
                await self._server_task
        await self.monitor.stop()
        # A later phase failed after the database came up.
        if self.manager.engine is not None:
            await self.manager.disconnect()

    # -- shutdown ---------------------------------------------------------

    def request_shutdown(self, reason: str) -> None:
        """Signal-handler entry point."""
        if self._shutdown_event.is_set():
            logger.warning("%s received while shutdown is already in progress", reason)
            return
        self._shutdown_reason = reason
        self._shutdown_event.set()

    async def shutdown(self, reason: str) -> int:
        """Graceful shutdown bounded by the shutdown timeout. Returns the exit code."""
        logger.info("%s received. Starting graceful shutdown...", reason)
        self._remove_signal_handlers()
        try:
            await asyncio.wait_for(self._shutdown_steps(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error("Graceful shutdown timeout. Forcing exit.")
            return 1
        logger.info("Shutdown complete")
        return 0

    async def _shutdown_steps(self) -> None:
        await self.monitor.stop()

        if self._server_task is not None:
            self.server.should_exit = True
            try:
                await self._server_task
            except Exception as exc:
                logger.error("HTTP server stopped with error: %s", exc)
            logger.info("HTTP server closed")

        await self.manager.disconnect()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
                self._signals.append(sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler.
                signal.signal(
                    sig,
                    lambda signum, frame, name=sig.name: loop.call_soon_threadsafe(
                        self.request_shutdown, name
                    ),
                )

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()
