from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .backoff import MAX_ATTEMPTS, delay_for
from .config import check_database_url, mask_database_url
from .errors import (
    ConfigError,
    FatalStartupError,
    ProbeFailure,
    ShutdownError,
    TransientConnectionError,
)
from .failures import classify, explain
from .logging import log_block

if TYPE_CHECKING:  # pragma: no cover
    from .monitor import ConnectionMonitor

logger = logging.getLogger(__name__)

LOCAL_WARMUP_DELAY = 2.0
REMOTE_WARMUP_DELAY = 3.0
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTING = "Disconnecting"


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def is_local_url(url: str) -> bool:
    """True for SQLite files and loopback hosts."""
    if _is_sqlite(url):
        return True
    try:
        return make_url(url).host in _LOOPBACK_HOSTS
    except ArgumentError:
        return "127.0.0.1" in url or "localhost" in url


@dataclass(frozen=True)
class ConnectionOptions:
    """Engine configuration, fixed for the lifetime of the process."""

    server_selection_timeout: float = 15.0
    connect_timeout: float = 20.0
    socket_timeout: float = 45.0
    pool_recycle: float = 1800.0
    min_pool_size: int = 2
    max_pool_size: int = 10
    retry_reads: bool = True
    retry_writes: bool = True
    prefer_ipv4: bool = True

    def resolve_url(self, url: str) -> str:
        """Pin ``localhost`` to IPv4 loopback when ``prefer_ipv4`` is set.

        Raises sqlalchemy ArgumentError for a malformed URL.
        """
        parsed = make_url(url)
        if self.prefer_ipv4 and parsed.host == "localhost":
            parsed = parsed.set(host="127.0.0.1")
        return parsed.render_as_string(hide_password=False)

    def engine_kwargs(self, url: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"echo": False, "pool_pre_ping": self.retry_reads}
        # SQLite pools are single-connection or static; sizing arguments are rejected.
        if not _is_sqlite(url):
            kwargs.update(
                pool_size=self.min_pool_size,
                max_overflow=max(self.max_pool_size - self.min_pool_size, 0),
                pool_timeout=self.server_selection_timeout,
                pool_recycle=self.pool_recycle,
            )
        return kwargs

    def describe(self) -> str:
        return (
            f"pool={self.min_pool_size}..{self.max_pool_size} "
            f"connect_timeout={self.connect_timeout:g}s socket_timeout={self.socket_timeout:g}s "
            f"retry_reads={self.retry_reads} retry_writes={self.retry_writes} prefer_ipv4={self.prefer_ipv4}"
        )


@dataclass
class RetryContext:
    url: str
    options: ConnectionOptions
    max_attempts: int = MAX_ATTEMPTS
    attempts_made: int = 0

    @property
    def remaining(self) -> int:
        return self.max_attempts - self.attempts_made

    @property
    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts


@dataclass
class HealthReport:
    connected: bool
    state: ConnectionState
    responsive: bool
    host: str
    database: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "state": self.state.value,
            "responsive": self.responsive,
            "host": self.host,
            "database": self.database,
            "timestamp": self.timestamp,
        }


EngineFactory = Callable[[str, ConnectionOptions], AsyncEngine]
Sleep = Callable[[float], Awaitable[Any]]


def create_engine_for(url: str, options: ConnectionOptions) -> AsyncEngine:
    """Default engine factory."""
    return create_async_engine(options.resolve_url(url), **options.engine_kwargs(url))


async def _select_one(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


class DatabaseManager:
    """Owns the process's single database engine and its connection state.

    ``connect()`` blocks until the engine answers ``SELECT 1`` or retries are
    exhausted. State moves through ConnectionState via explicit calls and via
    SQLAlchemy engine/pool events registered on every engine it installs.
    """

    def __init__(
        self,
        database_url: str,
        options: Optional[ConnectionOptions] = None,
        *,
        engine_factory: Optional[EngineFactory] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._database_url = database_url
        self._options = options or ConnectionOptions()
        self._engine_factory = engine_factory or create_engine_for
        self._sleep = sleep
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
        self._state = ConnectionState.DISCONNECTED
        self._retry = RetryContext(url=database_url, options=self._options)
        self._last_failure: Optional[TransientConnectionError] = None
        self._ever_connected = False
        self._monitor: Optional["ConnectionMonitor"] = None

    # -- properties -------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    @property
    def attempts_made(self) -> int:
        return self._retry.attempts_made

    @property
    def ever_connected(self) -> bool:
        return self._ever_connected

    @property
    def masked_url(self) -> str:
        return mask_database_url(self._database_url)

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def reset_attempts(self) -> None:
        self._retry.attempts_made = 0

    def attach_monitor(self, monitor: "ConnectionMonitor") -> None:
        """Register the monitor that disconnect() must stop first."""
        self._monitor = monitor

    # -- connect ----------------------------------------------------------

    async def connect(self) -> AsyncEngine:
        """Connect with retries. Returns the live engine or raises.

        Raises ConfigError when the URL is missing or unparsable (no attempt is made) and
        FatalStartupError after MAX_ATTEMPTS consecutive failures.
        """
        if not self._database_url:
            raise ConfigError(
                "FATAL: DATABASE_URL environment variable is not set.",
                remedy=[
                    "Locally: add DATABASE_URL to your .env file",
                    "On a hosting platform: add DATABASE_URL to the service environment",
                ],
            )
        check_database_url(self._database_url)

        self._retry = RetryContext(url=self._database_url, options=self._options)
        self._last_failure = None
        logger.info("Connection options: %s", self._options.describe())

        if is_local_url(self._database_url):
            warmup, reason = LOCAL_WARMUP_DELAY, "local database service to stabilize"
        else:
            warmup, reason = REMOTE_WARMUP_DELAY, "DNS/network to stabilize"
        logger.info("Waiting %.0fs for %s...", warmup, reason)
        await self._sleep(warmup)

        while not self._retry.exhausted:
            self._retry.attempts_made += 1
            attempt = self._retry.attempts_made
            logger.info("Database connection attempt %s/%s", attempt, self._retry.max_attempts)
            logger.info("   URL: %s", self.masked_url)
            self._set_state(ConnectionState.CONNECTING)
            try:
                engine = await asyncio.wait_for(
                    self._open_engine(), timeout=self._options.connect_timeout
                )
            except Exception as exc:
                logger.error(
                    "Attempt %s failed: %s", attempt, mask_database_url(str(exc)) or type(exc).__name__
                )
                self._last_failure = TransientConnectionError(attempt, classify(exc), exc)
                self._set_state(ConnectionState.DISCONNECTED)
                if not self._retry.exhausted:
                    delay = delay_for(attempt)
                    logger.info("   Retrying in %.0fs ...", delay)
                    await self._sleep(delay)
                continue

            self._install(engine)
            self._retry.attempts_made = 0
            url = engine.url
            log_block(
                logger,
                logging.INFO,
                "DATABASE CONNECTED SUCCESSFULLY",
                [f"   Host: {url.host or 'local'}:{url.port or '-'}  Database: {url.database}"],
            )
            return engine

        category = self._last_failure.category if self._last_failure else None
        raise FatalStartupError(
            f"FATAL: Could not connect to the database after {self._retry.max_attempts} attempts.",
            cause=explain(category) if category is not None else None,
            remedy=[
                "Is the database server running?",
                f"Is DATABASE_URL correct? ({self.masked_url})",
                "Is the network reachable?",
            ],
        ) from self._last_failure

    async def reconnect(self) -> AsyncEngine:
        """Drop any stale engine and run a fresh connect() sequence."""
        if self._engine is not None:
            try:
                await self._close_engine()
            except Exception as exc:
                logger.debug("Ignoring error while closing stale engine: %s", exc)
        self._set_state(ConnectionState.DISCONNECTED)
        self.reset_attempts()
        return await self.connect()

    async def _open_engine(self) -> AsyncEngine:
        engine = self._engine_factory(self._database_url, self._options)
        try:
            await _select_one(engine)
        except BaseException:
            await self._dispose_quietly(engine)
            raise
        return engine

    def _install(self, engine: AsyncEngine) -> None:
        for name, handler in self._lifecycle_handlers(engine).items():
            event.listen(engine.sync_engine, name, handler)
        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )
        self._ever_connected = True
        self._set_state(ConnectionState.CONNECTED)

    # -- driver lifecycle events -------------------------------------------

    def _lifecycle_handlers(self, engine: AsyncEngine) -> Dict[str, Callable[..., None]]:
        """Engine/pool event handlers for one engine. They run inside the
        driver's call path, so they only log and flip state."""

        def on_connect(dbapi_connection, connection_record) -> None:
            if engine is self._engine and self._state is ConnectionState.DISCONNECTED:
                logger.info("Database RECONNECTED: connection restored")
                self._set_state(ConnectionState.CONNECTED)

        def on_close(dbapi_connection, connection_record) -> None:
            logger.debug("Pooled database connection closed")

        def on_handle_error(context) -> None:
            if not getattr(context, "is_disconnect", False) or engine is not self._engine:
                return
            logger.warning("Database DISCONNECTED: the pool will reconnect on next checkout")
            self._set_state(ConnectionState.DISCONNECTED)

        return {
            "connect": on_connect,
            "close": on_close,
            "handle_error": on_handle_error,
        }

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return
        logger.info("Database state: %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    # -- health -----------------------------------------------------------

    async def probe(self) -> None:
        """Round-trip ``SELECT 1``. Raises ProbeFailure when it does not answer."""
        engine = self._engine
        if engine is None:
            raise ProbeFailure("no database engine")
        try:
            await asyncio.wait_for(_select_one(engine), timeout=self._options.socket_timeout)
        except Exception as exc:
            raise ProbeFailure(str(exc) or type(exc).__name__) from exc

    async def ping(self) -> bool:
        try:
            await self.probe()
        except ProbeFailure as exc:
            logger.debug("Database ping failed: %s", exc)
            return False
        return True

    async def health_check(self) -> HealthReport:
        """Snapshot of connection health; pings only when nominally connected."""
        state = self._state
        responsive = False
        if state is ConnectionState.CONNECTED:
            responsive = await self.ping()

        url = self._engine.url if self._engine is not None else None
        return HealthReport(
            connected=state is ConnectionState.CONNECTED and responsive,
            state=state,
            responsive=responsive,
            host=(url.host if url is not None and url.host else "n/a"),
            database=(url.database if url is not None and url.database else "n/a"),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    # -- shutdown ---------------------------------------------------------

    async def disconnect(self) -> None:
        """Stop the monitor and close the engine. Idempotent; never raises."""
        if self._monitor is not None:
            await self._monitor.stop()
        if self._engine is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._set_state(ConnectionState.DISCONNECTING)
        try:
            await self._close_engine()
            logger.info("Database disconnected gracefully")
        except Exception as exc:
            error = ShutdownError(str(exc))
            logger.error("Error disconnecting database: %s", error)
        finally:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _close_engine(self) -> None:
        engine = self._engine
        self._engine = None
        self._sessionmaker = None
        if engine is not None:
            await engine.dispose()

    @staticmethod
    async def _dispose_quietly(engine: AsyncEngine) -> None:
        try:
            await engine.dispose()
        except Exception as exc:
            logger.debug("Ignoring error while disposing engine: %s", exc)

    # -- sessions ---------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Async context manager yielding an AsyncSession.

        Ensures commit on success and rollback on errors.
        """
        if self._sessionmaker is None:
            raise RuntimeError("DatabaseManager is not connected. Call connect() first.")

        session: AsyncSession = self._sessionmaker()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
