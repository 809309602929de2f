from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import discord

from clonebot.config import Settings
from clonebot.errors import (
    CloneInProgressError,
    ErrorKind,
    GuildNotFoundError,
    PhaseOrderError,
    TransientError,
)
from clonebot.services.activity_tracker import ActivityTracker
from clonebot.services.image_fetcher import ImageFetcher
from clonebot.services.logger_service import LoggerService
from clonebot.services.overwrites import source_overwrites, to_discord_overwrites, translate_overwrites
from clonebot.services.progress import ProgressReporter
from clonebot.services.reconnector import Reconnector
from clonebot.services.retry import RetryingExecutor
from clonebot.utils.discord_utils import get_bot_member

CLONE_REASON = "Server cloning"
ICON_SIZE = 1024


class ClonePhase(Enum):
    IDLE = "idle"
    DELETING = "deleting"
    CLONING_ROLES = "cloning_roles"
    CLONING_CATEGORIES = "cloning_categories"
    CLONING_CHANNELS = "cloning_channels"
    CLONING_EMOJIS = "cloning_emojis"
    UPDATING_SETTINGS = "updating_settings"
    DONE = "done"
    FAILED = "failed"


NEXT_PHASES: dict[ClonePhase, frozenset[ClonePhase]] = {
    ClonePhase.IDLE: frozenset({ClonePhase.DELETING}),
    ClonePhase.DELETING: frozenset({ClonePhase.CLONING_ROLES}),
    ClonePhase.CLONING_ROLES: frozenset({ClonePhase.CLONING_CATEGORIES}),
    ClonePhase.CLONING_CATEGORIES: frozenset({ClonePhase.CLONING_CHANNELS}),
    ClonePhase.CLONING_CHANNELS: frozenset({ClonePhase.CLONING_EMOJIS, ClonePhase.UPDATING_SETTINGS}),
    ClonePhase.CLONING_EMOJIS: frozenset({ClonePhase.UPDATING_SETTINGS}),
    ClonePhase.UPDATING_SETTINGS: frozenset({ClonePhase.DONE}),
    ClonePhase.DONE: frozenset(),
    ClonePhase.FAILED: frozenset(),
}
TERMINAL_PHASES = frozenset({ClonePhase.DONE, ClonePhase.FAILED})


@dataclass
class CloneStats:
    roles_created: int = 0
    categories_created: int = 0
    channels_created: int = 0
    emojis_created: int = 0
    reconnects: int = 0
    failed: int = 0

    @property
    def completed(self) -> int:
        return self.roles_created + self.categories_created + self.channels_created + self.emojis_created

    @property
    def success_rate(self) -> int:
        total = self.completed + self.failed
        if total <= 0:
            return 0
        # Half-up, not Python's banker's rounding.
        return int(100 * self.completed / total + 0.5)

    def summary(self) -> str:
        return (
            "📊 **Clone Statistics:**\n"
            f"✅ Roles: {self.roles_created}\n"
            f"✅ Categories: {self.categories_created}\n"
            f"✅ Channels: {self.channels_created}\n"
            f"✅ Emojis: {self.emojis_created}\n"
            f"🔄 Reconnects: {self.reconnects}\n"
            f"❌ Failed: {self.failed}\n"
            f"📈 Success Rate: {self.success_rate}%"
        )

    def as_dict(self) -> dict[str, int]:
        row = asdict(self)
        row["success_rate"] = self.success_rate
        return row


@dataclass
class CloneSession:
    source_id: int
    target_id: int
    clone_emojis: bool = True
    role_mapping: dict[int, int] = field(default_factory=dict)
    category_by_name: dict[str, int] = field(default_factory=dict)
    stats: CloneStats = field(default_factory=CloneStats)
    phase: ClonePhase = ClonePhase.IDLE

    def advance(self, phase: ClonePhase) -> None:
        if phase not in NEXT_PHASES[self.phase]:
            raise PhaseOrderError(f"Cannot move from {self.phase.value} to {phase.value}.")
        self.phase = phase

    def fail(self) -> None:
        # A run that never left IDLE (guild lookup failed) stays IDLE.
        if self.phase is ClonePhase.IDLE or self.phase in TERMINAL_PHASES:
            return
        self.phase = ClonePhase.FAILED


class ServerCloner:
    """
    Copies one guild's structure into another.

    Phases run strictly in order: wipe the target, roles, categories,
    channels, emojis (optional), then name and icon. Every platform mutation
    goes through a RetryingExecutor and every per-item failure is counted and
    skipped, so only setup errors abort a run.
    """

    def __init__(
        self,
        reconnector: Reconnector,
        tracker: ActivityTracker,
        settings: Settings,
        logger: LoggerService,
        fetcher: ImageFetcher,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.reconnector = reconnector
        self.tracker = tracker
        self.settings = settings
        self.logger = logger
        self.fetcher = fetcher
        self._sleep = sleep
        self.is_active = False
        self.session: CloneSession | None = None
        self._reporter = ProgressReporter(logger)
        self._executor: RetryingExecutor | None = None

    @property
    def client(self) -> discord.Client:
        return self.reconnector.client

    async def clone_server(
        self,
        source_id: int,
        target_id: int,
        *,
        clone_emojis: bool = True,
        progress_channel: discord.abc.Messageable | None = None,
    ) -> CloneStats:
        if self.is_active:
            raise CloneInProgressError("Already cloning a server!")
        self.is_active = True
        session = CloneSession(source_id=int(source_id), target_id=int(target_id), clone_emojis=clone_emojis)
        self.session = session
        self._reporter = ProgressReporter(self.logger, progress_channel)
        self._executor = RetryingExecutor(
            self.tracker,
            self.reconnector,
            self.settings,
            self.logger,
            stats=session.stats,
            sleep=self._sleep,
        )

        async def on_reconnected() -> None:
            session.stats.reconnects += 1
            await self._progress("🔄 Auto-reconnected to improve speed")

        self.reconnector.start_monitoring(on_reconnected)
        try:
            source = self._find_guild(session.source_id, "Source server not found! Make sure you are in the server.")
            target = self._find_guild(
                session.target_id,
                "Target server not found! Make sure you are in the server and have Admin permissions.",
            )
            self.logger.log("clone.start", source_guild_id=source.id, target_guild_id=target.id, clone_emojis=clone_emojis)
            await self._progress(f"🚀 Starting clone: {source.name} → {target.name}")
            await self._progress("⏳ This may take several minutes...")

            session.advance(ClonePhase.DELETING)
            await self.delete_existing_content(session)
            session.advance(ClonePhase.CLONING_ROLES)
            await self.clone_roles(session, source)
            session.advance(ClonePhase.CLONING_CATEGORIES)
            await self.clone_categories(session, source)
            session.advance(ClonePhase.CLONING_CHANNELS)
            await self.clone_channels(session, source)
            if session.clone_emojis:
                session.advance(ClonePhase.CLONING_EMOJIS)
                await self.clone_emojis(session, source)
            session.advance(ClonePhase.UPDATING_SETTINGS)
            await self.clone_server_settings(session, source)
            session.advance(ClonePhase.DONE)

            await self._progress(session.stats.summary())
            await self._progress("🎉 Server cloned successfully!")
            self.logger.log("clone.done", target_guild_id=session.target_id, **session.stats.as_dict())
            return session.stats
        except asyncio.CancelledError:
            session.fail()
            self.logger.log("clone.cancelled", target_guild_id=session.target_id, phase=session.phase.value)
            raise
        except Exception as exc:
            session.fail()
            self.logger.log("clone.failed", target_guild_id=session.target_id, error=str(exc)[:240])
            await self._progress(f"❌ Clone failed: {exc}")
            raise
        finally:
            self.is_active = False
            await self.reconnector.stop_monitoring()

    async def delete_existing_content(self, session: CloneSession) -> None:
        await self._progress("🗑️ Deleting existing channels and roles...")
        try:
            target = self._live_guild(session.target_id)
            channels = await self._deletable_channels(target)
            for channel in channels:
                try:
                    await self._execute(
                        lambda: self._delete_channel(session.target_id, channel),
                        f"Delete channel {channel.name}",
                    )
                    await self._sleep(self.settings.operation_delay_sec)
                except Exception as exc:  # noqa: BLE001
                    session.stats.failed += 1
                    self.logger.log("clone.delete_channel_failed", channel_id=channel.id, error=str(exc)[:240])

            target = self._live_guild(session.target_id)
            for role in self._deletable_roles(target):
                try:
                    await self._execute(
                        lambda: self._delete_role(session.target_id, role),
                        f"Delete role {role.name}",
                    )
                    await self._sleep(self.settings.operation_delay_sec)
                except Exception as exc:  # noqa: BLE001
                    session.stats.failed += 1
                    self.logger.log("clone.delete_role_failed", role_id=role.id, error=str(exc)[:240])
        except Exception as exc:  # noqa: BLE001
            session.stats.failed += 1
            await self._progress(f"⚠️ Cleanup error: {exc}")
            return
        await self._progress("✅ Cleanup completed")

    async def clone_roles(self, session: CloneSession, source: discord.Guild) -> None:
        await self._progress("👑 Cloning roles...")
        roles = sorted((role for role in source.roles if not role.is_default()), key=lambda role: role.position)
        created: list[tuple[int, Any]] = []
        for role in roles:
            try:
                new_role = await self._execute(
                    lambda: self._create_role(session.target_id, role),
                    f"Create role {role.name}",
                )
                session.role_mapping[role.id] = new_role.id
                session.stats.roles_created += 1
                created.append((role.position, new_role))
                await self._sleep(self.settings.operation_delay_sec)
            except Exception as exc:  # noqa: BLE001
                await self._progress(f"⚠️ Failed role {role.name}: {exc}")
                session.stats.failed += 1
        if self.settings.reorder_roles:
            await self._mirror_role_positions(created)
        await self._progress(f"✅ Created {session.stats.roles_created} roles")

    async def _mirror_role_positions(self, created: list[tuple[int, Any]]) -> None:
        for position, new_role in created:
            if position <= 0 or getattr(new_role, "position", None) == position:
                continue
            try:
                await new_role.edit(position=position, reason=CLONE_REASON)
            except (discord.HTTPException, ValueError):
                continue

    async def clone_categories(self, session: CloneSession, source: discord.Guild) -> None:
        await self._progress("📁 Cloning categories...")
        categories = sorted(
            (channel for channel in source.channels if channel.type == discord.ChannelType.category),
            key=lambda channel: channel.position,
        )
        for category in categories:
            try:
                new_category = await self._execute(
                    lambda: self._create_category(session, category),
                    f"Create category {category.name}",
                )
                session.category_by_name.setdefault(category.name, new_category.id)
                session.stats.categories_created += 1
                await self._sleep(self.settings.operation_delay_sec)
            except Exception as exc:  # noqa: BLE001
                await self._progress(f"⚠️ Failed category {category.name}: {exc}")
                session.stats.failed += 1
        await self._progress(f"✅ Created {session.stats.categories_created} categories")

    async def clone_channels(self, session: CloneSession, source: discord.Guild) -> None:
        await self._progress("💬 Cloning channels...")
        channels = sorted(
            (
                channel
                for channel in source.channels
                if channel.type in (discord.ChannelType.text, discord.ChannelType.voice)
            ),
            key=lambda channel: channel.position,
        )
        for channel in channels:
            try:
                await self._execute(
                    lambda: self._create_channel(session, channel),
                    f"Create channel {channel.name}",
                )
                session.stats.channels_created += 1
                await self._sleep(self.settings.operation_delay_sec)
            except Exception as exc:  # noqa: BLE001
                await self._progress(f"⚠️ Failed channel {channel.name}: {exc}")
                session.stats.failed += 1
        await self._progress(f"✅ Created {session.stats.channels_created} channels")

    async def clone_emojis(self, session: CloneSession, source: discord.Guild) -> None:
        await self._progress("😀 Cloning emojis...")
        for emoji in list(source.emojis):
            url = str(getattr(emoji, "url", "") or "")
            if not url:
                session.stats.failed += 1
                self.logger.log("clone.emoji_skipped", emoji_id=emoji.id, reason="no_url")
                continue
            try:
                await self._execute(
                    lambda: self._create_emoji(session.target_id, emoji.name, url),
                    f"Create emoji {emoji.name}",
                )
                session.stats.emojis_created += 1
                await self._sleep(self.settings.emoji_delay_sec)
            except Exception as exc:  # noqa: BLE001
                await self._progress(f"⚠️ Failed emoji {emoji.name}: {exc}")
                session.stats.failed += 1
        await self._progress(f"✅ Created {session.stats.emojis_created} emojis")

    async def clone_server_settings(self, session: CloneSession, source: discord.Guild) -> None:
        await self._progress("⚙️ Cloning server settings...")
        try:
            icon_data: bytes | None = None
            if source.icon:
                try:
                    image = await self.fetcher.fetch(source.icon.replace(format="png", size=ICON_SIZE).url)
                    icon_data = image.data
                except Exception as exc:  # noqa: BLE001
                    self.logger.log("clone.icon_fetch_failed", source_guild_id=source.id, error=str(exc)[:240])
                    await self._progress("⚠️ Could not download server icon")

            await self._execute(
                lambda: self._update_settings(session.target_id, source.name, icon_data),
                "Update server settings",
            )
            await self._progress(f"✅ Updated server name: {source.name}")
            if icon_data:
                await self._progress("✅ Updated server icon")
        except Exception as exc:  # noqa: BLE001
            await self._progress(f"⚠️ Failed server settings: {exc}")
            session.stats.failed += 1

    async def _create_role(self, target_id: int, role: discord.Role) -> discord.Role:
        guild = self._live_guild(target_id)
        return await guild.create_role(
            name=role.name,
            permissions=role.permissions,
            colour=role.colour,
            hoist=role.hoist,
            mentionable=role.mentionable,
            reason=CLONE_REASON,
        )

    async def _create_category(self, session: CloneSession, category: discord.CategoryChannel) -> discord.CategoryChannel:
        overwrites = translate_overwrites(source_overwrites(category), session.role_mapping)
        guild = self._live_guild(session.target_id)
        return await guild.create_category(
            category.name,
            overwrites=to_discord_overwrites(overwrites),
            position=category.position,
            reason=CLONE_REASON,
        )

    async def _create_channel(self, session: CloneSession, channel: Any) -> Any:
        overwrites = translate_overwrites(source_overwrites(channel), session.role_mapping)
        guild = self._live_guild(session.target_id)
        options: dict[str, Any] = {
            "overwrites": to_discord_overwrites(overwrites),
            "position": channel.position,
            "reason": CLONE_REASON,
        }
        parent_id = self.resolve_parent_id(session, guild, channel)
        if parent_id is not None:
            options["category"] = discord.Object(id=parent_id)
        if channel.type == discord.ChannelType.voice:
            bitrate = int(channel.bitrate)
            limit = getattr(guild, "bitrate_limit", None)
            if limit:
                bitrate = min(bitrate, int(limit))
            return await guild.create_voice_channel(
                channel.name,
                bitrate=bitrate,
                user_limit=channel.user_limit,
                **options,
            )
        if channel.topic:
            options["topic"] = channel.topic
        return await guild.create_text_channel(
            channel.name,
            nsfw=channel.nsfw,
            slowmode_delay=channel.slowmode_delay,
            **options,
        )

    def resolve_parent_id(self, session: CloneSession, guild: discord.Guild, channel: Any) -> int | None:
        parent = getattr(channel, "category", None)
        if parent is None:
            return None
        # Categories are matched by name; duplicate names resolve to the first one created.
        parent_id = session.category_by_name.get(parent.name)
        if parent_id is not None:
            return parent_id
        existing = discord.utils.get(guild.categories, name=parent.name)
        return existing.id if existing is not None else None

    async def _create_emoji(self, target_id: int, name: str, url: str) -> discord.Emoji:
        image = await self.fetcher.fetch(url)
        guild = self._live_guild(target_id)
        self.logger.log("clone.emoji_fetched", name=name, content_type=image.content_type, size=len(image.data))
        return await guild.create_custom_emoji(name=name, image=image.data, reason=CLONE_REASON)

    async def _update_settings(self, target_id: int, name: str, icon_data: bytes | None) -> None:
        guild = self._live_guild(target_id)
        if icon_data:
            await guild.edit(name=name, icon=icon_data, reason=CLONE_REASON)
        else:
            await guild.edit(name=name, reason=CLONE_REASON)

    async def _delete_channel(self, target_id: int, channel: Any) -> None:
        guild = self._live_guild(target_id)
        live = guild.get_channel(channel.id) or channel
        await live.delete(reason=CLONE_REASON)

    async def _delete_role(self, target_id: int, role: discord.Role) -> None:
        guild = self._live_guild(target_id)
        live = guild.get_role(role.id) or role
        await live.delete(reason=CLONE_REASON)

    async def _deletable_channels(self, guild: discord.Guild) -> list[Any]:
        me = await get_bot_member(self.client, guild)
        if me is None:
            return []
        protected = {
            channel.id
            for channel in (getattr(guild, "rules_channel", None), getattr(guild, "public_updates_channel", None))
            if channel is not None
        }
        return [
            channel
            for channel in list(guild.channels)
            if channel.id not in protected and channel.permissions_for(me).manage_channels
        ]

    def _deletable_roles(self, guild: discord.Guild) -> list[discord.Role]:
        return [role for role in list(guild.roles) if not role.is_default() and not role.managed and role.is_assignable()]

    def _find_guild(self, guild_id: int, message: str) -> discord.Guild:
        guild = self.client.get_guild(guild_id)
        if guild is None:
            raise GuildNotFoundError(message)
        return guild

    def _live_guild(self, guild_id: int) -> discord.Guild:
        guild = self.client.get_guild(guild_id)
        if guild is None:
            raise TransientError(f"Guild {guild_id} is not in the session cache.", ErrorKind.CONNECTION_RESET)
        return guild

    async def _execute(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        if self._executor is None:
            raise RuntimeError("No clone session is running.")
        return await self._executor.execute(operation, label)

    async def _progress(self, text: str) -> None:
        self.tracker.touch()
        await self._reporter.send(text)
