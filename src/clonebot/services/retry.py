from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from clonebot.config import Settings
from clonebot.errors import ErrorKind, classify_error
from clonebot.services.activity_tracker import ActivityTracker
from clonebot.services.logger_service import LoggerService
from clonebot.services.reconnector import Reconnector

T = TypeVar("T")


class RetryingExecutor:
    """
    Runs one platform mutation with bounded retries.

    Transient failures are retried with a linear backoff; the second failed
    attempt also forces a reconnect, on the theory that a retry that did not
    help points at the connection itself. Fatal failures propagate at once.
    """

    def __init__(
        self,
        tracker: ActivityTracker,
        reconnector: Reconnector,
        settings: Settings,
        logger: LoggerService,
        *,
        stats: Any,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tracker = tracker
        self.reconnector = reconnector
        self.settings = settings
        self.logger = logger
        self.stats = stats
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.settings.max_operation_attempts

    async def execute(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        attempt = 0
        while True:
            generation = self.reconnector.generation
            try:
                self.tracker.touch()
                result = await operation()
                self.tracker.touch()
                return result
            except Exception as exc:
                attempt += 1
                kind = classify_error(exc)
                swapped = self.reconnector.is_reconnecting or self.reconnector.generation != generation
                if kind is ErrorKind.FATAL and swapped:
                    # The session was torn down or replaced underneath this call.
                    kind = ErrorKind.CONNECTION_RESET
                if attempt >= self.max_attempts or not kind.transient:
                    raise
                self.logger.log(
                    "retry.scheduled",
                    label=label,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    kind=kind.value,
                    error=str(exc)[:240],
                )
                if attempt == 2 and self.settings.auto_reconnect:
                    self.logger.log("retry.reconnect", label=label)
                    await self.reconnector.reconnect()
                    self.stats.reconnects += 1
                await self.reconnector.wait_until_idle()
                await self._sleep(self.settings.retry_backoff_sec * attempt)
