from __future__ import annotations

import discord

from clonebot.services.logger_service import LoggerService

SUCCESS = "success"
ERROR = "error"
WARNING = "warning"
INFO = "info"

CONSOLE_MARKERS = {SUCCESS: "+", ERROR: "-", WARNING: "!", INFO: "i"}
MAX_MESSAGE_LEN = 1900


def classify_progress(text: str) -> str:
    if "❌" in text or "Failed" in text:
        return ERROR
    if "✅" in text or "Created" in text or "Updated" in text:
        return SUCCESS
    if "⚠" in text:
        return WARNING
    return INFO


class ProgressReporter:
    def __init__(self, logger: LoggerService, channel: discord.abc.Messageable | None = None) -> None:
        self.logger = logger
        self.channel = channel
        self.sent = 0

    async def send(self, text: str) -> None:
        level = classify_progress(text)
        self.logger.console(CONSOLE_MARKERS[level], text.replace("**", "").strip())
        if self.channel is None:
            return
        try:
            await self.channel.send(text[:MAX_MESSAGE_LEN])
            self.sent += 1
        except discord.HTTPException:
            pass
