"""Background connection monitor (sleep/wake resilience).

After a host sleeps, pooled sockets go stale. The pool's own reconnection
usually recovers on the next checkout, but after a long sleep the engine can
stay disconnected with nothing left to trigger recovery. The monitor pings the
live engine on a fixed interval and, once a disconnect has outlasted the grace
period, forces a full reconnect through the DatabaseManager.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .database import ConnectionState, DatabaseManager
from .errors import ProbeFailure

logger = logging.getLogger(__name__)

MONITOR_INTERVAL = 15.0
RECONNECT_GRACE_PERIOD = 10.0


@dataclass
class MonitorState:
    last_disconnected_at: Optional[float] = None
    reconnecting: bool = False


class ConnectionMonitor:
    def __init__(
        self,
        manager: DatabaseManager,
        *,
        interval: float = MONITOR_INTERVAL,
        grace_period: float = RECONNECT_GRACE_PERIOD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._interval = interval
        self._grace_period = grace_period
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self.state = MonitorState()
        manager.attach_monitor(self)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        """Start ticking. Call once, after the first successful connect."""
        if self.running:
            return
        if self._stopped:
            raise RuntimeError("ConnectionMonitor was stopped and cannot be restarted")
        if not self._manager.ever_connected:
            raise RuntimeError("ConnectionMonitor requires an established database connection")
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="db-connection-monitor"
        )
        logger.info("Database connection monitor started (%.0fs health check interval)", self._interval)

    async def stop(self) -> None:
        """Cancel the monitor task and wait for it; no tick fires afterwards."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        # The caller's cancellation propagates; the task's own does not.
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.error("Connection monitor exited with error: %s", task.exception())
        logger.info("Database connection monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Connection monitor tick failed")

    async def tick(self) -> None:
        """Run one monitor cycle."""
        if self.state.reconnecting:
            return

        state = self._manager.state

        if state is ConnectionState.CONNECTED:
            try:
                await self._manager.probe()
            except ProbeFailure as exc:
                logger.warning("Database ping failed despite connected state: %s", exc)
                if self.state.last_disconnected_at is None:
                    self.state.last_disconnected_at = self._clock()
                return
            self.state.last_disconnected_at = None
            return

        if state is ConnectionState.CONNECTING:
            return

        # DISCONNECTED or DISCONNECTING
        if self.state.last_disconnected_at is None:
            self.state.last_disconnected_at = self._clock()
            logger.warning("Database disconnected: waiting for automatic reconnect...")
            return

        elapsed = self._clock() - self.state.last_disconnected_at
        if elapsed < self._grace_period:
            return

        self.state.reconnecting = True
        logger.info("Reconnect grace period exceeded (%.0fs). Forcing manual reconnect...", elapsed)
        try:
            await self._manager.reconnect()
            self.state.last_disconnected_at = None
            logger.info("Manual database reconnection successful")
        except Exception as exc:
            # last_disconnected_at stays set so the next tick retries straight away.
            logger.error("Manual database reconnection failed: %s", exc)
            logger.error("   Will retry on next monitor cycle (%.0fs)...", self._interval)
        finally:
            self.state.reconnecting = False

    def snapshot(self) -> Dict[str, Any]:
        last = self.state.last_disconnected_at
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "grace_period_seconds": self._grace_period,
            "reconnecting": self.state.reconnecting,
            "disconnected_for_seconds": (
                round(self._clock() - last, 1) if last is not None else None
            ),
        }
