from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable

import discord

from clonebot.config import Settings
from clonebot.services.activity_tracker import ActivityTracker
from clonebot.services.logger_service import LoggerService
from clonebot.services.session_factory import SessionFactory

Sleep = Callable[[float], Awaitable[None]]


class Reconnector:
    """
    Owns the live platform session used by a clone run.

    `client` is the only session reference the clone engine should use; a
    reconnect swaps it out and bumps `generation`.
    """

    def __init__(
        self,
        client: discord.Client,
        token: str,
        factory: SessionFactory,
        tracker: ActivityTracker,
        settings: Settings,
        logger: LoggerService,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.token = token
        self.factory = factory
        self.tracker = tracker
        self.settings = settings
        self.logger = logger
        self._sleep = sleep
        self.reconnect_attempts = 0
        self.generation = 0
        self._reconnecting = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._monitor_task: asyncio.Task | None = None

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def max_attempts(self) -> int:
        return self.settings.max_reconnect_attempts

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def reconnect(self) -> bool:
        if self._reconnecting or self.reconnect_attempts >= self.max_attempts:
            return False
        self._reconnecting = True
        self._idle.clear()
        self.reconnect_attempts += 1
        self.logger.log("reconnect.start", attempt=self.reconnect_attempts, max_attempts=self.max_attempts)
        try:
            await self._teardown(self.client)
            await self._sleep(self.settings.reconnect_delay_sec)
            try:
                new_client = await self.factory.open(self.token)
            except Exception as exc:  # noqa: BLE001
                self.logger.log("reconnect.failed", attempt=self.reconnect_attempts, error=str(exc)[:240])
                return False
            self.client = new_client
            self.generation += 1
            self.reconnect_attempts = 0
            self.tracker.touch()
            self.logger.log("reconnect.ok", generation=self.generation)
            return True
        finally:
            self._reconnecting = False
            self._idle.set()

    async def wait_until_idle(self) -> None:
        await self._idle.wait()

    async def _teardown(self, client: discord.Client) -> None:
        try:
            await self.factory.close(client)
        except Exception as exc:  # noqa: BLE001
            self.logger.log("reconnect.teardown_failed", error=str(exc)[:240])

    def start_monitoring(self, on_reconnected: Callable[[], Awaitable[None]] | None = None) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
        self._monitor_task = asyncio.create_task(self._monitor_loop(on_reconnected), name="clone-staleness-monitor")

    async def stop_monitoring(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _monitor_loop(self, on_reconnected: Callable[[], Awaitable[None]] | None) -> None:
        while True:
            await asyncio.sleep(self.settings.monitor_interval_sec)
            if not self.settings.auto_reconnect or self._reconnecting:
                continue
            if not self.tracker.is_stale(self.settings.slow_threshold_sec):
                continue
            self.logger.log("reconnect.stale_session", idle_sec=round(self.tracker.elapsed(), 1))
            if not await self.reconnect():
                continue
            if on_reconnected is not None:
                try:
                    await on_reconnected()
                except Exception as exc:  # noqa: BLE001
                    self.logger.log("reconnect.callback_failed", error=str(exc)[:240])

    async def close(self) -> None:
        await self.stop_monitoring()
        await self._teardown(self.client)
