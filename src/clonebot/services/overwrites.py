from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import discord

ROLE = "role"
MEMBER = "member"


@dataclass(frozen=True)
class OverwriteEntry:
    target_id: int
    kind: str  # role | member
    allow: int
    deny: int


def source_overwrites(channel: Any) -> list[OverwriteEntry]:
    """Read a discord.py channel's overwrites as plain entries, in channel order."""
    entries: list[OverwriteEntry] = []
    overwrites = getattr(channel, "overwrites", None) or {}
    for target, overwrite in overwrites.items():
        allow, deny = overwrite.pair()
        entries.append(
            OverwriteEntry(
                target_id=int(target.id),
                kind=ROLE if _is_role_target(target) else MEMBER,
                allow=int(allow.value),
                deny=int(deny.value),
            )
        )
    return entries


def _is_role_target(target: Any) -> bool:
    if isinstance(target, discord.Role):
        return True
    if isinstance(target, discord.Object):
        return target.type is discord.Role
    return False


def translate_overwrites(entries: Iterable[OverwriteEntry], role_mapping: Mapping[int, int]) -> list[OverwriteEntry]:
    """
    Point each overwrite at the target guild.

    Role entries are rewritten through `role_mapping`; a role with no mapping
    (it failed to clone) is dropped instead of leaving a dangling id. Member
    ids are passed through unchanged, assuming the same user is present in
    both guilds.
    """
    translated: list[OverwriteEntry] = []
    for entry in entries:
        if entry.kind == ROLE:
            new_id = role_mapping.get(entry.target_id)
            if new_id is None:
                continue
            translated.append(OverwriteEntry(target_id=int(new_id), kind=ROLE, allow=entry.allow, deny=entry.deny))
        else:
            translated.append(entry)
    return translated


def to_discord_overwrites(entries: Iterable[OverwriteEntry]) -> dict[discord.Object, discord.PermissionOverwrite]:
    out: dict[discord.Object, discord.PermissionOverwrite] = {}
    for entry in entries:
        target_type = discord.Role if entry.kind == ROLE else discord.Member
        target = discord.Object(id=entry.target_id, type=target_type)
        out[target] = discord.PermissionOverwrite.from_pair(
            discord.Permissions(entry.allow),
            discord.Permissions(entry.deny),
        )
    return out
