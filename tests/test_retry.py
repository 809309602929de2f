from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import discord
import pytest

from clonebot.config import Settings
from clonebot.errors import ErrorKind, TransientError
from clonebot.services.activity_tracker import ActivityTracker
from clonebot.services.cloner import CloneStats
from clonebot.services.logger_service import LoggerService
from clonebot.services.reconnector import Reconnector
from clonebot.services.retry import RetryingExecutor


def http_error(status: int, text: str = "boom") -> discord.HTTPException:
    return discord.HTTPException(SimpleNamespace(status=status, reason="Error"), text)


class FakeFactory:
    def __init__(self) -> None:
        self.opened = 0

    async def open(self, token: str) -> object:
        self.opened += 1
        return object()

    async def close(self, client: object) -> None:
        return None


class SlowLoginFactory(FakeFactory):
    async def open(self, token: str) -> object:
        await asyncio.sleep(0.05)
        return await super().open(token)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FlakyOperation:
    def __init__(self, failures: list[BaseException], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


async def _no_sleep(seconds: float) -> None:
    return None


def _make_executor(
    tmp_path: Path,
    factory: FakeFactory | None = None,
    **overrides,
) -> tuple[RetryingExecutor, SleepRecorder, FakeFactory, CloneStats]:
    settings = Settings(
        discord_token="token",
        allowed_user_ids=frozenset({41}),
        command_prefix="!",
        store_path=tmp_path / "state.msgpack",
        **overrides,
    )
    logger = LoggerService()
    tracker = ActivityTracker()
    factory = factory or FakeFactory()
    reconnector = Reconnector(object(), "token", factory, tracker, settings, logger, sleep=_no_sleep)
    stats = CloneStats()
    sleep = SleepRecorder()
    executor = RetryingExecutor(tracker, reconnector, settings, logger, stats=stats, sleep=sleep)
    return executor, sleep, factory, stats


def test_transient_failures_retry_with_backoff_and_one_reconnect(tmp_path: Path) -> None:
    executor, sleep, factory, stats = _make_executor(tmp_path)
    operation = FlakyOperation([asyncio.TimeoutError(), TransientError("slow")], result="created")

    assert asyncio.run(executor.execute(operation, "Create role mod")) == "created"

    assert operation.calls == 3
    assert sleep.calls == [1.0, 2.0]
    assert factory.opened == 1
    assert stats.reconnects == 1


def test_fatal_failure_is_not_retried(tmp_path: Path) -> None:
    executor, sleep, factory, stats = _make_executor(tmp_path)
    operation = FlakyOperation([http_error(403, "Missing Permissions")])

    with pytest.raises(discord.HTTPException):
        asyncio.run(executor.execute(operation, "Create role mod"))

    assert operation.calls == 1
    assert sleep.calls == []
    assert factory.opened == 0
    assert stats.reconnects == 0


def test_exhausted_retries_raise_last_error(tmp_path: Path) -> None:
    executor, sleep, _factory, _stats = _make_executor(tmp_path)
    operation = FlakyOperation([http_error(429), http_error(502), TransientError("final", ErrorKind.TIMEOUT)])

    with pytest.raises(TransientError, match="final"):
        asyncio.run(executor.execute(operation, "Create channel chat"))

    assert operation.calls == 3
    assert sleep.calls == [1.0, 2.0]


def test_no_reconnect_when_auto_reconnect_is_disabled(tmp_path: Path) -> None:
    executor, sleep, factory, stats = _make_executor(tmp_path, auto_reconnect=False)
    operation = FlakyOperation([ConnectionResetError(), ConnectionResetError()])

    assert asyncio.run(executor.execute(operation, "Delete role old")) == "ok"

    assert factory.opened == 0
    assert stats.reconnects == 0
    assert sleep.calls == [1.0, 2.0]


def test_error_during_session_swap_counts_as_connection_reset(tmp_path: Path) -> None:
    executor, sleep, _factory, _stats = _make_executor(tmp_path)
    calls = {"n": 0}

    async def operation() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            executor.reconnector.generation += 1
            raise RuntimeError("session closed underneath")
        return "ok"

    assert asyncio.run(executor.execute(operation, "Create category Staff")) == "ok"
    assert calls["n"] == 2
    assert sleep.calls == [1.0]


def test_single_attempt_budget_never_retries(tmp_path: Path) -> None:
    executor, sleep, _factory, _stats = _make_executor(tmp_path, max_operation_attempts=1)
    operation = FlakyOperation([asyncio.TimeoutError()])

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(executor.execute(operation, "Create emoji wave"))

    assert sleep.calls == []


def test_error_while_reconnect_is_in_flight_is_retried_on_new_session(tmp_path: Path) -> None:
    factory = SlowLoginFactory()
    executor, sleep, _factory, stats = _make_executor(tmp_path, factory)
    reconnector = executor.reconnector
    old_client = reconnector.client
    seen: list[object] = []

    async def operation() -> str:
        seen.append(reconnector.client)
        if len(seen) == 1:
            asyncio.create_task(reconnector.reconnect())
            await asyncio.sleep(0)
            assert reconnector.is_reconnecting is True
            raise RuntimeError("Session is closed")
        return "ok"

    assert asyncio.run(executor.execute(operation, "Create channel chat")) == "ok"

    assert seen[0] is old_client
    assert seen[1] is not old_client
    assert reconnector.generation == 1
    assert factory.opened == 1
    assert sleep.calls == [1.0]
    assert stats.reconnects == 0
