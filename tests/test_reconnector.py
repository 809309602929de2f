from __future__ import annotations

import asyncio
from pathlib import Path

from clonebot.config import Settings
from clonebot.services.activity_tracker import ActivityTracker
from clonebot.services.logger_service import LoggerService
from clonebot.services.reconnector import Reconnector


class StubClient:
    def __init__(self, name: str) -> None:
        self.name = name


class FakeFactory:
    def __init__(self, *, fail_open: bool = False, fail_close: bool = False) -> None:
        self.fail_open = fail_open
        self.fail_close = fail_close
        self.opened: list[str] = []
        self.closed: list[StubClient] = []

    async def open(self, token: str) -> StubClient:
        self.opened.append(token)
        if self.fail_open:
            raise RuntimeError("gateway unavailable")
        return StubClient(f"session-{len(self.opened)}")

    async def close(self, client: StubClient) -> None:
        self.closed.append(client)
        if self.fail_close:
            raise RuntimeError("already closed")


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _make_settings(tmp_path: Path, **overrides) -> Settings:
    return Settings(
        discord_token="token",
        allowed_user_ids=frozenset({41}),
        command_prefix="!",
        store_path=tmp_path / "state.msgpack",
        **overrides,
    )


def _make_reconnector(tmp_path: Path, factory: FakeFactory, **overrides) -> tuple[Reconnector, SleepRecorder]:
    sleep = SleepRecorder()
    reconnector = Reconnector(
        StubClient("session-0"),
        "worker-token",
        factory,
        ActivityTracker(),
        _make_settings(tmp_path, **overrides),
        LoggerService(),
        sleep=sleep,
    )
    return reconnector, sleep


def test_reconnect_swaps_session_and_resets_attempts(tmp_path: Path) -> None:
    factory = FakeFactory()
    reconnector, sleep = _make_reconnector(tmp_path, factory)
    old_client = reconnector.client

    assert asyncio.run(reconnector.reconnect()) is True

    assert factory.closed == [old_client]
    assert factory.opened == ["worker-token"]
    assert sleep.calls == [5.0]
    assert reconnector.client is not old_client
    assert reconnector.client.name == "session-1"
    assert reconnector.generation == 1
    assert reconnector.reconnect_attempts == 0
    assert reconnector.is_reconnecting is False


def test_reconnect_refused_once_attempts_are_exhausted(tmp_path: Path) -> None:
    factory = FakeFactory()
    reconnector, sleep = _make_reconnector(tmp_path, factory)
    reconnector.reconnect_attempts = 3

    assert asyncio.run(reconnector.reconnect()) is False

    assert factory.opened == []
    assert factory.closed == []
    assert sleep.calls == []
    assert reconnector.generation == 0


def test_reconnect_refused_while_another_is_running(tmp_path: Path) -> None:
    factory = FakeFactory()
    reconnector, _sleep = _make_reconnector(tmp_path, factory)
    reconnector._reconnecting = True

    assert asyncio.run(reconnector.reconnect()) is False
    assert factory.opened == []


def test_failed_reconnect_keeps_attempt_count(tmp_path: Path) -> None:
    factory = FakeFactory(fail_open=True)
    reconnector, _sleep = _make_reconnector(tmp_path, factory, max_reconnect_attempts=2)
    old_client = reconnector.client

    assert asyncio.run(reconnector.reconnect()) is False
    assert asyncio.run(reconnector.reconnect()) is False
    assert asyncio.run(reconnector.reconnect()) is False

    assert len(factory.opened) == 2
    assert reconnector.reconnect_attempts == 2
    assert reconnector.client is old_client
    assert reconnector.generation == 0
    assert reconnector.is_reconnecting is False


def test_teardown_errors_do_not_block_reconnect(tmp_path: Path) -> None:
    factory = FakeFactory(fail_close=True)
    reconnector, _sleep = _make_reconnector(tmp_path, factory)

    assert asyncio.run(reconnector.reconnect()) is True
    assert reconnector.generation == 1


def test_monitor_reconnects_stale_session_and_runs_callback(tmp_path: Path) -> None:
    factory = FakeFactory()
    reconnector, _sleep = _make_reconnector(tmp_path, factory, monitor_interval_sec=0.01, slow_threshold_sec=0.0)

    async def scenario() -> tuple[bool, bool]:
        called = asyncio.Event()

        async def on_reconnected() -> None:
            called.set()

        reconnector.start_monitoring(on_reconnected)
        await asyncio.wait_for(called.wait(), timeout=2)
        running = reconnector.monitoring
        await reconnector.stop_monitoring()
        return running, reconnector.monitoring

    running, after_stop = asyncio.run(scenario())

    assert running is True
    assert after_stop is False
    assert reconnector.generation >= 1
    assert factory.opened


def test_monitor_leaves_session_alone_when_auto_reconnect_is_off(tmp_path: Path) -> None:
    factory = FakeFactory()
    reconnector, _sleep = _make_reconnector(
        tmp_path,
        factory,
        auto_reconnect=False,
        monitor_interval_sec=0.01,
        slow_threshold_sec=0.0,
    )

    async def scenario() -> None:
        reconnector.start_monitoring()
        await asyncio.sleep(0.05)
        await reconnector.close()

    asyncio.run(scenario())

    assert factory.opened == []
    assert reconnector.monitoring is False
    assert len(factory.closed) == 1
