from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol

import discord

from clonebot.errors import SessionOpenError
from clonebot.services.logger_service import LoggerService


class SessionFactory(Protocol):
    async def open(self, token: str) -> discord.Client: ...

    async def close(self, client: discord.Client) -> None: ...


class DiscordSessionFactory:
    """Opens a gateway-connected discord.py client for a token and tears it down again."""

    def __init__(self, logger: LoggerService, *, ready_timeout_sec: float = 60.0) -> None:
        self.logger = logger
        self.ready_timeout_sec = ready_timeout_sec
        self._runners: dict[int, asyncio.Task] = {}

    def _intents(self) -> discord.Intents:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.emojis_and_stickers = True
        return intents

    async def open(self, token: str) -> discord.Client:
        client = discord.Client(intents=self._intents())
        runner = asyncio.create_task(client.start(token), name="clone-session")
        ready = asyncio.create_task(client.wait_until_ready())
        try:
            done, _pending = await asyncio.wait(
                {runner, ready},
                timeout=self.ready_timeout_sec,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            ready.cancel()
            runner.cancel()
            with contextlib.suppress(Exception):
                await client.close()
            raise
        if ready not in done:
            ready.cancel()
            error = runner.exception() if runner in done and not runner.cancelled() else None
            runner.cancel()
            with contextlib.suppress(Exception):
                await client.close()
            if isinstance(error, discord.LoginFailure):
                raise SessionOpenError("Login failed: the token was rejected.") from error
            if error is not None:
                raise SessionOpenError(f"Session failed to start: {error}") from error
            raise SessionOpenError(f"Session not ready after {self.ready_timeout_sec:.0f}s.")
        self._runners[id(client)] = runner
        self.logger.log(
            "session.opened",
            user_id=client.user.id if client.user else None,
            guilds=len(client.guilds),
        )
        return client

    async def close(self, client: discord.Client) -> None:
        runner = self._runners.pop(id(client), None)
        if not client.is_closed():
            await client.close()
        if runner is not None and not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await runner
        self.logger.log("session.closed")
