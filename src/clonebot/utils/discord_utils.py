from __future__ import annotations

import discord


async def get_bot_member(bot: discord.Client, guild: discord.Guild) -> discord.Member | None:
    """
    Resolve the bot's Member object for a guild.

    `guild.me` can be None depending on cache state/intents; this helper tries cache
    and then falls back to an API fetch.
    """

    me = guild.me
    if me is not None:
        return me
    if bot.user is None:
        return None
    cached = guild.get_member(bot.user.id)
    if cached is not None:
        return cached
    try:
        return await guild.fetch_member(bot.user.id)
    except (discord.Forbidden, discord.HTTPException):
        return None


def split_text_for_discord(text: str, limit: int = 1900) -> list[str]:
    normalized = str(text or "").replace("\r\n", "\n").strip()
    if not normalized:
        return ["(empty)"]

    chunks: list[str] = []
    remaining = normalized
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit + 1)
        if cut < max(1, int(limit * 0.5)):
            cut = remaining.rfind(" ", 0, limit + 1)
        if cut <= 0:
            cut = limit
        chunk = remaining[:cut].strip()
        if not chunk:
            chunk = remaining[:limit]
            cut = len(chunk)
        chunks.append(chunk[:limit])
        remaining = remaining[cut:].strip()
    if remaining:
        chunks.append(remaining[:limit])
    return chunks


def parse_snowflake(raw: str) -> int | None:
    value = str(raw or "").strip()
    if not value.isdigit():
        return None
    out = int(value)
    return out if out > 0 else None
