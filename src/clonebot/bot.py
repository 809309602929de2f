from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable

import discord
from discord.ext import commands

from clonebot.config import Settings
from clonebot.errors import SetupError
from clonebot.services.activity_tracker import ActivityTracker
from clonebot.services.cloner import ServerCloner
from clonebot.services.image_fetcher import ImageFetcher
from clonebot.services.logger_service import LoggerService, mask_token
from clonebot.services.reconnector import Reconnector
from clonebot.services.run_history_service import RunHistoryService
from clonebot.services.session_factory import DiscordSessionFactory, SessionFactory
from clonebot.services.session_registry import SetupSession, SetupSessionRegistry, SetupStep, confirmation_text
from clonebot.storage import MessagePackStore
from clonebot.ui.clone_setup import CloneConfirmView
from clonebot.utils.discord_utils import split_text_for_discord


SETUP_EXPIRY_CHECK_SEC = 60
SERVER_LIST_CHUNK_DELAY_SEC = 0.5

SETUP_INSTRUCTIONS = (
    "🔧 **Discord Server Cloner - Setup**\n\n"
    "Please send the following information in this DM:\n\n"
    "1️⃣ **Worker Token**\n"
    "Send: `token YOUR_TOKEN_HERE`\n"
    "*(A bot token that is a member of both servers with Administrator in the target.)*\n\n"
    "2️⃣ **Source Server ID**\n"
    "Send: `source SERVER_ID`\n"
    "*(Right-click server → Copy ID)*\n\n"
    "3️⃣ **Target Server ID**\n"
    "Send: `target SERVER_ID`\n\n"
    "⚠️ **Important:**\n"
    "• This will DELETE ALL content in the target server\n"
    "• Keep your token private, it is never saved to disk\n"
    "• Cancel anytime by sending `cancel`"
)


class CloneBot(commands.Bot):
    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: SessionFactory | None = None,
        fetcher: ImageFetcher | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.messages = True
        intents.message_content = True
        intents.dm_messages = True
        super().__init__(command_prefix=settings.command_prefix, intents=intents, help_command=None)
        self.settings = settings
        self.store = MessagePackStore(settings.store_path)
        self.logger = LoggerService(self.store)
        self.history = RunHistoryService(self.store, self.logger)
        self.setups = SetupSessionRegistry()
        self.session_factory: SessionFactory = session_factory or DiscordSessionFactory(
            self.logger,
            ready_timeout_sec=settings.ready_timeout_sec,
        )
        self.fetcher = fetcher or ImageFetcher(timeout_sec=settings.image_timeout_sec)
        self.started_at = datetime.now(tz=timezone.utc)
        self._autosave_task: asyncio.Task | None = None
        self._expiry_task: asyncio.Task | None = None
        self._clone_tasks: dict[int, asyncio.Task] = {}
        self._ready_once = False

    async def setup_hook(self) -> None:
        await self.store.load()
        self._autosave_task = asyncio.create_task(self.store.autosave_loop(), name="msgpack-autosave")
        self._expiry_task = asyncio.create_task(self._run_setup_expiry_loop(), name="setup-expiry")
        self._register_commands()

    def is_allowed(self, user_id: int) -> bool:
        return int(user_id) in self.settings.allowed_user_ids

    def _allowed_check(self) -> Callable[[commands.Context], bool]:
        async def predicate(ctx: commands.Context) -> bool:
            return self.is_allowed(ctx.author.id)

        return commands.check(predicate)

    def _register_commands(self) -> None:
        @self.command(name="clone")
        @self._allowed_check()
        async def clone_cmd(ctx: commands.Context) -> None:
            try:
                self.setups.start(ctx.author.id, ctx.channel.id)
            except SetupError as exc:
                await ctx.send(str(exc))
                return
            try:
                await ctx.author.send(SETUP_INSTRUCTIONS)
            except discord.HTTPException:
                self.setups.finish(ctx.author.id)
                await ctx.send("❌ Cannot send you a DM. Please enable DMs from server members.")
                return
            self.logger.log("setup.started", user_id=ctx.author.id, channel_id=ctx.channel.id)
            if ctx.guild is not None:
                await ctx.send("📨 I've sent you a DM with instructions. Please check your DMs!")

        @self.command(name="cancel")
        @self._allowed_check()
        async def cancel_cmd(ctx: commands.Context) -> None:
            await ctx.send(self._cancel_setup(ctx.author.id))

        @self.command(name="help")
        @self._allowed_check()
        async def help_cmd(ctx: commands.Context) -> None:
            await ctx.send(self.help_text())

        @self.command(name="status")
        @self._allowed_check()
        async def status_cmd(ctx: commands.Context) -> None:
            await ctx.send(self.status_text())

        @self.command(name="servers")
        @self._allowed_check()
        async def servers_cmd(ctx: commands.Context) -> None:
            chunks = split_text_for_discord(self.servers_text())
            for index, chunk in enumerate(chunks):
                if index:
                    await asyncio.sleep(SERVER_LIST_CHUNK_DELAY_SEC)
                await ctx.send(chunk)

        @self.command(name="history")
        @self._allowed_check()
        async def history_cmd(ctx: commands.Context, limit: int = 5) -> None:
            rows = self.history.recent(max(1, min(limit, 20)), user_id=ctx.author.id)
            if not rows:
                await ctx.send("No clone runs recorded yet.")
                return
            lines = ["📜 **Recent clone runs:**"] + [self.history.format_row(row) for row in rows]
            await ctx.send("\n".join(lines)[:1900])

    def help_text(self) -> str:
        p = self.settings.command_prefix
        return (
            "📖 **Server Cloner Commands:**\n\n"
            f"`{p}clone` - Start server cloning process\n"
            f"`{p}status` - Check bot status\n"
            f"`{p}servers` - List servers the bot is in\n"
            f"`{p}history` - Show your recent clone runs\n"
            "`cancel` - Cancel current operation\n\n"
            "**How to use:**\n"
            f"1. Type `{p}clone` in any channel\n"
            "2. Follow instructions in DMs\n"
            "3. Send token and server IDs\n"
            "4. Confirm and wait for completion\n\n"
            "**Auto-Reconnect Feature:**\n"
            "• Automatically reconnects if cloning slows down\n"
            "• Carries on with the current step after reconnecting\n"
            f"• Max {self.settings.max_reconnect_attempts} reconnection attempts"
        )

    def status_text(self) -> str:
        uptime = datetime.now(tz=timezone.utc) - self.started_at
        total = int(uptime.total_seconds())
        hours, rest = divmod(total, 3600)
        minutes, seconds = divmod(rest, 60)
        running = sum(1 for task in self._clone_tasks.values() if not task.done())
        return (
            "📊 **Bot Status:**\n"
            f"• Logged in: {self.user or 'Not connected'}\n"
            f"• Uptime: {hours}h {minutes}m {seconds}s\n"
            f"• Auto-reconnect: {'✅ Enabled' if self.settings.auto_reconnect else '❌ Disabled'}\n"
            f"• Max reconnects: {self.settings.max_reconnect_attempts}\n"
            f"• Active setups: {len(self.setups)}\n"
            f"• Running clones: {running}"
        )

    def servers_text(self) -> str:
        lines = [f"📋 **Servers ({len(self.guilds)}):**"]
        lines.extend(f"• **{guild.name}** - `{guild.id}`" for guild in self.guilds)
        return "\n".join(lines)

    def _cancel_setup(self, user_id: int) -> str:
        setup = self.setups.get(user_id)
        if setup is None:
            return "No active cloning setup."
        if not self.setups.cancel(user_id):
            return "⚠️ A clone is already running and cannot be cancelled."
        self.logger.log("setup.cancelled", user_id=user_id)
        return "✅ Operation cancelled."

    async def on_ready(self) -> None:
        if self._ready_once:
            return
        self._ready_once = True
        self.logger.log("bot.ready", user_id=self.user.id if self.user else None, guilds=len(self.guilds))
        self.logger.log(
            "bot.config",
            token=mask_token(self.settings.discord_token),
            allowed_users=sorted(self.settings.allowed_user_ids),
        )
        print(f"Connected as {self.user} ({self.user.id if self.user else '?'})")

    async def on_command_error(self, ctx: commands.Context, exception: Exception) -> None:
        if isinstance(exception, commands.CommandNotFound):
            return
        if isinstance(exception, commands.CheckFailure):
            await ctx.send("Not authorized.")
            return
        self.logger.log("command.error", error=str(exception), command=ctx.command.name if ctx.command else "unknown")
        await ctx.send(f"Command error: {exception}")

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not self.is_allowed(message.author.id):
            return
        content = (message.content or "").strip()
        is_command = content.startswith(self.settings.command_prefix)
        if isinstance(message.channel, discord.DMChannel) and message.author.id in self.setups and not is_command:
            await self.handle_setup_message(message)
            return
        if content.lower() == "cancel":
            await message.channel.send(self._cancel_setup(message.author.id))
            return
        await self.process_commands(message)

    async def handle_setup_message(self, message: discord.Message) -> None:
        user_id = message.author.id
        try:
            reply = self.setups.advance(user_id, message.content)
        except SetupError as exc:
            await message.channel.send(str(exc))
            return
        setup = self.setups.get(user_id)
        if reply.cancelled:
            self.logger.log("setup.cancelled", user_id=user_id)
        if setup is not None and setup.step is SetupStep.READY and not reply.start:
            await message.channel.send(reply.text, view=CloneConfirmView(self, user_id, clone_emojis=setup.clone_emojis))
            return
        await message.channel.send(reply.text)
        if reply.start:
            await self._start_clone(user_id, message.channel)

    async def handle_setup_action(self, *, interaction: discord.Interaction, user_id: int, action: str) -> None:
        setup = self.setups.get(user_id)
        if setup is None or setup.step is not SetupStep.READY:
            await interaction.response.send_message("This setup is no longer pending.", ephemeral=True)
            return
        if action == "toggle_emojis":
            self.setups.toggle_emojis(user_id)
            await interaction.response.edit_message(
                content=confirmation_text(setup),
                view=CloneConfirmView(self, user_id, clone_emojis=setup.clone_emojis),
            )
            return
        if action == "cancel":
            await interaction.response.edit_message(content=self._cancel_setup(user_id), view=None)
            return
        if action == "confirm":
            await interaction.response.edit_message(
                content="🚀 Starting cloning process... This may take several minutes.",
                view=None,
            )
            await self._start_clone(user_id, interaction.channel)
            return
        await interaction.response.send_message(f"Unknown action `{action}`.", ephemeral=True)

    async def _start_clone(self, user_id: int, dm_channel: discord.abc.Messageable | None) -> None:
        try:
            setup = self.setups.mark_running(user_id)
        except SetupError as exc:
            if dm_channel is not None:
                await dm_channel.send(str(exc))
            return
        origin = self.get_channel(setup.origin_channel_id)
        progress_channel = origin if isinstance(origin, discord.abc.Messageable) else dm_channel
        if progress_channel is not None and progress_channel is not dm_channel:
            try:
                await progress_channel.send(f"🔄 <@{user_id}> has started cloning process...")
            except discord.HTTPException:
                pass
        self._clone_tasks[user_id] = asyncio.create_task(
            self.run_clone(setup, progress_channel),
            name=f"clone-{user_id}",
        )

    async def run_clone(self, setup: SetupSession, progress_channel: discord.abc.Messageable | None) -> None:
        token = setup.token
        setup.token = ""
        stats: dict[str, int] | None = None
        error = ""
        try:
            client = await self.session_factory.open(token)
            tracker = ActivityTracker()
            reconnector = Reconnector(client, token, self.session_factory, tracker, self.settings, self.logger)
            cloner = ServerCloner(reconnector, tracker, self.settings, self.logger, self.fetcher)
            try:
                result = await cloner.clone_server(
                    setup.source_id,
                    setup.target_id,
                    clone_emojis=setup.clone_emojis,
                    progress_channel=progress_channel,
                )
                stats = result.as_dict()
            finally:
                await reconnector.close()
        except asyncio.CancelledError:
            error = "cancelled"
            raise
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
            self.logger.log("clone.run_failed", user_id=setup.user_id, error=error[:240])
            if progress_channel is not None:
                try:
                    await progress_channel.send(f"❌ Cloning failed: {error}"[:1900])
                except discord.HTTPException:
                    pass
        finally:
            self.setups.finish(setup.user_id)
            self._clone_tasks.pop(setup.user_id, None)
            self.history.record(
                user_id=setup.user_id,
                source_id=setup.source_id,
                target_id=setup.target_id,
                stats=stats,
                error=error,
            )

    async def _run_setup_expiry_loop(self) -> None:
        while True:
            await asyncio.sleep(SETUP_EXPIRY_CHECK_SEC)
            await self.expire_setups()

    async def expire_setups(self) -> int:
        expired = self.setups.expire(self.settings.setup_timeout_sec)
        for setup in expired:
            self.logger.log("setup.expired", user_id=setup.user_id)
            user = self.get_user(setup.user_id)
            if user is None:
                continue
            try:
                await user.send("⌛ Your cloning setup expired. Use the clone command to start again.")
            except discord.HTTPException:
                continue
        return len(expired)

    async def close(self) -> None:
        clone_tasks = [task for task in self._clone_tasks.values() if not task.done()]
        for task in (self._autosave_task, self._expiry_task, *clone_tasks):
            if task is not None and not task.done():
                task.cancel()
        # Cancelled runs record their history row and close their worker session on the way out.
        if clone_tasks:
            await asyncio.gather(*clone_tasks, return_exceptions=True)
        if self.store.dirty:
            await self.store.save()
        await super().close()


def main() -> None:
    settings = Settings.load()
    bot = CloneBot(settings)
    bot.run(settings.discord_token)
