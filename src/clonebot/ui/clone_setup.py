from __future__ import annotations

import discord


class CloneConfirmView(discord.ui.View):
    def __init__(self, bot: discord.Client, user_id: int, *, clone_emojis: bool = True):
        super().__init__(timeout=15 * 60)
        self.bot = bot
        self.user_id = int(user_id)

        start_button = discord.ui.Button(
            label="Start Clone",
            style=discord.ButtonStyle.danger,
            custom_id=f"clonebot:setup:{self.user_id}:confirm",
        )
        start_button.callback = self._confirm
        self.add_item(start_button)

        emoji_button = discord.ui.Button(
            label=f"Clone Emojis: {'ON' if clone_emojis else 'OFF'}",
            style=discord.ButtonStyle.success if clone_emojis else discord.ButtonStyle.secondary,
            custom_id=f"clonebot:setup:{self.user_id}:toggle_emojis",
        )
        emoji_button.callback = self._toggle_emojis
        self.add_item(emoji_button)

        cancel_button = discord.ui.Button(
            label="Cancel",
            style=discord.ButtonStyle.secondary,
            custom_id=f"clonebot:setup:{self.user_id}:cancel",
        )
        cancel_button.callback = self._cancel
        self.add_item(cancel_button)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.user_id:
            await interaction.response.send_message("This setup belongs to someone else.", ephemeral=True)
            return False
        return True

    async def _confirm(self, interaction: discord.Interaction) -> None:
        await self._dispatch(interaction, action="confirm")

    async def _toggle_emojis(self, interaction: discord.Interaction) -> None:
        await self._dispatch(interaction, action="toggle_emojis")

    async def _cancel(self, interaction: discord.Interaction) -> None:
        await self._dispatch(interaction, action="cancel")

    async def _dispatch(self, interaction: discord.Interaction, *, action: str) -> None:
        handler = getattr(self.bot, "handle_setup_action", None)
        if handler is None:
            await interaction.response.send_message("Setup handler unavailable.", ephemeral=True)
            return
        await handler(interaction=interaction, user_id=self.user_id, action=action)
