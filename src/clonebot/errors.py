from __future__ import annotations

import asyncio
from enum import Enum

import aiohttp
import discord


class ErrorKind(Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SLOW = "slow"
    CONNECTION_RESET = "connection_reset"
    FATAL = "fatal"

    @property
    def transient(self) -> bool:
        return self is not ErrorKind.FATAL


class ClonerError(Exception):
    kind = ErrorKind.FATAL


class TransientError(ClonerError):
    def __init__(self, message: str, kind: ErrorKind = ErrorKind.SLOW) -> None:
        super().__init__(message)
        self.kind = kind


class GuildNotFoundError(ClonerError):
    pass


class CloneInProgressError(ClonerError):
    pass


class PhaseOrderError(ClonerError):
    pass


class SessionOpenError(ClonerError):
    pass


class SetupError(ClonerError):
    pass


class ImageFetchError(ClonerError):
    def __init__(self, message: str, *, status: int | None = None, kind: ErrorKind = ErrorKind.FATAL) -> None:
        super().__init__(message)
        self.status = status
        self.kind = kind


def classify_error(exc: BaseException) -> ErrorKind:
    tagged = getattr(exc, "kind", None)
    if isinstance(tagged, ErrorKind):
        return tagged
    if isinstance(exc, discord.RateLimited):
        return ErrorKind.RATE_LIMIT
    if isinstance(exc, discord.HTTPException):
        if exc.status == 429:
            return ErrorKind.RATE_LIMIT
        if exc.status >= 500:
            return ErrorKind.SLOW
        return ErrorKind.FATAL
    # aiohttp.ServerTimeoutError is also a ClientConnectionError; timeouts win.
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (discord.ConnectionClosed, discord.GatewayNotFound, aiohttp.ClientConnectionError, ConnectionError)):
        return ErrorKind.CONNECTION_RESET
    return ErrorKind.FATAL
