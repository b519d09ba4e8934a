"""Connection monitor: ping, grace period, forced reconnect, re-entrancy, stop."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from core.database import ConnectionState, DatabaseManager
from core.errors import FatalStartupError, ProbeFailure
from core.monitor import RECONNECT_GRACE_PERIOD, ConnectionMonitor

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeManager:
    def __init__(self, state: ConnectionState = ConnectionState.CONNECTED) -> None:
        self.state = state
        self.ever_connected = True
        self.probe_error = None
        self.reconnect_error = None
        self.reconnect_gate = None
        self.probe_calls = 0
        self.reconnect_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.monitor = None

    def attach_monitor(self, monitor) -> None:
        self.monitor = monitor

    async def probe(self) -> None:
        self.probe_calls += 1
        if self.probe_error is not None:
            raise self.probe_error

    async def reconnect(self) -> None:
        self.reconnect_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.reconnect_gate is not None:
                await self.reconnect_gate.wait()
            if self.reconnect_error is not None:
                raise self.reconnect_error
            self.state = ConnectionState.CONNECTED
        finally:
            self.in_flight -= 1


def _monitor(manager, clock=None, **kwargs) -> ConnectionMonitor:
    return ConnectionMonitor(manager, clock=clock or FakeClock(), **kwargs)


@pytest.mark.asyncio
async def test_successful_ping_clears_disconnect_marker() -> None:
    manager = FakeManager()
    monitor = _monitor(manager)
    monitor.state.last_disconnected_at = 5.0
    await monitor.tick()
    assert manager.probe_calls == 1
    assert monitor.state.last_disconnected_at is None


@pytest.mark.asyncio
async def test_failed_ping_records_first_sighting_without_reconnect() -> None:
    clock = FakeClock()
    manager = FakeManager()
    manager.probe_error = ProbeFailure("timeout")
    monitor = _monitor(manager, clock)

    await monitor.tick()
    first = monitor.state.last_disconnected_at
    assert first == clock.now

    clock.advance(60)
    await monitor.tick()
    assert monitor.state.last_disconnected_at == first
    assert manager.reconnect_calls == 0


@pytest.mark.asyncio
async def test_connecting_state_is_left_alone() -> None:
    manager = FakeManager(ConnectionState.CONNECTING)
    monitor = _monitor(manager)
    await monitor.tick()
    assert manager.probe_calls == 0
    assert manager.reconnect_calls == 0
    assert monitor.state.last_disconnected_at is None


@pytest.mark.asyncio
@pytest.mark.parametrize("state", [ConnectionState.DISCONNECTED, ConnectionState.DISCONNECTING])
async def test_no_reconnect_within_grace_period(state) -> None:
    clock = FakeClock()
    manager = FakeManager(state)
    monitor = _monitor(manager, clock)

    await monitor.tick()
    assert monitor.state.last_disconnected_at == clock.now

    clock.advance(RECONNECT_GRACE_PERIOD - 0.5)
    await monitor.tick()
    assert manager.reconnect_calls == 0


@pytest.mark.asyncio
async def test_forced_reconnect_after_grace_period() -> None:
    clock = FakeClock()
    manager = FakeManager(ConnectionState.DISCONNECTED)
    monitor = _monitor(manager, clock)

    await monitor.tick()
    clock.advance(RECONNECT_GRACE_PERIOD)
    await monitor.tick()

    assert manager.reconnect_calls == 1
    assert manager.state is ConnectionState.CONNECTED
    assert monitor.state.last_disconnected_at is None
    assert monitor.state.reconnecting is False


@pytest.mark.asyncio
async def test_failed_reconnect_retries_on_every_following_tick() -> None:
    clock = FakeClock()
    manager = FakeManager(ConnectionState.DISCONNECTED)
    manager.reconnect_error = FatalStartupError("still down")
    monitor = _monitor(manager, clock)

    await monitor.tick()
    marker = monitor.state.last_disconnected_at
    clock.advance(RECONNECT_GRACE_PERIOD + 1)

    await monitor.tick()
    await monitor.tick()
    assert manager.reconnect_calls == 2
    assert monitor.state.last_disconnected_at == marker
    assert monitor.state.reconnecting is False

    manager.reconnect_error = None
    await monitor.tick()
    assert manager.reconnect_calls == 3
    assert monitor.state.last_disconnected_at is None


@pytest.mark.asyncio
async def test_ticks_during_reconnect_are_no_ops() -> None:
    clock = FakeClock()
    manager = FakeManager(ConnectionState.DISCONNECTED)
    manager.reconnect_gate = asyncio.Event()
    monitor = _monitor(manager, clock)

    await monitor.tick()
    clock.advance(RECONNECT_GRACE_PERIOD)

    first = asyncio.ensure_future(monitor.tick())
    await asyncio.sleep(0)
    assert monitor.state.reconnecting is True

    await asyncio.gather(monitor.tick(), monitor.tick())
    assert manager.reconnect_calls == 1

    manager.reconnect_gate.set()
    await first
    assert manager.max_in_flight == 1
    assert monitor.state.reconnecting is False


@pytest.mark.asyncio
async def test_start_requires_prior_connection() -> None:
    manager = FakeManager()
    manager.ever_connected = False
    monitor = _monitor(manager)
    with pytest.raises(RuntimeError):
        monitor.start()
    assert not monitor.running


@pytest.mark.asyncio
async def test_stop_prevents_further_ticks() -> None:
    manager = FakeManager()
    monitor = ConnectionMonitor(manager, interval=0.01)
    monitor.start()
    monitor.start()  # second call is a no-op
    await asyncio.sleep(0.08)
    assert monitor.running
    assert manager.probe_calls > 0

    await monitor.stop()
    ticks = manager.probe_calls
    await asyncio.sleep(0.05)
    assert manager.probe_calls == ticks
    assert not monitor.running
    assert monitor.stopped

    with pytest.raises(RuntimeError):
        monitor.start()


@pytest.mark.asyncio
async def test_stop_before_start_is_harmless() -> None:
    monitor = _monitor(FakeManager())
    await monitor.stop()
    await monitor.stop()
    assert not monitor.running


class SlowCleanupManager(FakeManager):
    """Reconnect that hangs, then takes a while to release resources once cancelled."""

    def __init__(self, cleanup: float) -> None:
        super().__init__(ConnectionState.DISCONNECTED)
        self.cleanup = cleanup
        self.cleaned_up = False

    async def reconnect(self) -> None:
        self.reconnect_calls += 1
        try:
            await asyncio.sleep(3600)
        finally:
            await asyncio.sleep(self.cleanup)
            self.cleaned_up = True


async def _wait_reconnecting(monitor: ConnectionMonitor) -> None:
    for _ in range(200):
        if monitor.state.reconnecting:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("monitor never started reconnecting")


@pytest.mark.asyncio
async def test_stop_waits_for_reconnect_cleanup() -> None:
    manager = SlowCleanupManager(cleanup=0.05)
    monitor = ConnectionMonitor(manager, interval=0.01, grace_period=0.0, clock=FakeClock())
    monitor.start()
    await _wait_reconnecting(monitor)

    await monitor.stop()
    assert manager.cleaned_up
    assert not monitor.state.reconnecting


@pytest.mark.asyncio
async def test_cancelling_stop_is_not_swallowed() -> None:
    manager = SlowCleanupManager(cleanup=0.3)
    monitor = ConnectionMonitor(manager, interval=0.01, grace_period=0.0, clock=FakeClock())
    monitor.start()
    await _wait_reconnecting(monitor)
    monitor_task = monitor._task

    stopper = asyncio.ensure_future(monitor.stop())
    await asyncio.sleep(0.02)
    stopper.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stopper
    assert not manager.cleaned_up

    await asyncio.wait({monitor_task})
    assert manager.cleaned_up


@pytest.mark.asyncio
async def test_tick_errors_do_not_kill_the_loop() -> None:
    manager = FakeManager()
    manager.probe_error = RuntimeError("unexpected")
    monitor = ConnectionMonitor(manager, interval=0.01)
    monitor.start()
    await asyncio.sleep(0.05)
    assert monitor.running
    assert manager.probe_calls >= 2
    await monitor.stop()


@pytest.mark.asyncio
async def test_snapshot_reports_disconnect_duration() -> None:
    clock = FakeClock()
    monitor = _monitor(FakeManager(ConnectionState.DISCONNECTED), clock)
    assert monitor.snapshot()["disconnected_for_seconds"] is None
    await monitor.tick()
    clock.advance(4)
    snap = monitor.snapshot()
    assert snap["disconnected_for_seconds"] == 4.0
    assert snap["running"] is False
    assert snap["reconnecting"] is False


@pytest.mark.asyncio
async def test_monitor_recovers_real_manager(sleeper) -> None:
    """A stuck disconnect on a real engine is repaired by a forced reconnect."""
    clock = FakeClock()
    manager = DatabaseManager(MEMORY_URL, sleep=sleeper)
    engine = await manager.connect()
    monitor = ConnectionMonitor(manager, clock=clock)
    try:
        manager._lifecycle_handlers(engine)["handle_error"](SimpleNamespace(is_disconnect=True))
        assert manager.state is ConnectionState.DISCONNECTED

        await monitor.tick()
        clock.advance(RECONNECT_GRACE_PERIOD + 1)
        await monitor.tick()

        assert manager.is_connected()
        assert manager.engine is not engine
        assert monitor.state.last_disconnected_at is None
    finally:
        await manager.disconnect()
    assert monitor.stopped
