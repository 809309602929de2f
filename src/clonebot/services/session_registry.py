from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from clonebot.errors import SetupError
from clonebot.utils.discord_utils import parse_snowflake


class SetupStep(Enum):
    AWAITING_TOKEN = "awaiting_token"
    AWAITING_SOURCE = "awaiting_source"
    AWAITING_TARGET = "awaiting_target"
    READY = "ready"
    RUNNING = "running"


@dataclass
class SetupSession:
    user_id: int
    origin_channel_id: int
    step: SetupStep = SetupStep.AWAITING_TOKEN
    token: str = field(default="", repr=False)
    source_id: int = 0
    target_id: int = 0
    clone_emojis: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class SetupReply:
    text: str
    start: bool = False
    cancelled: bool = False


class SetupSessionRegistry:
    """
    In-memory setups keyed by user id.

    A setup is created by the clone command, advanced by each DM from its
    owner and removed on completion, cancellation or expiry. Tokens only ever
    live here, never in the store.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._sessions: dict[int, SetupSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def get(self, user_id: int) -> SetupSession | None:
        return self._sessions.get(int(user_id))

    def start(self, user_id: int, origin_channel_id: int) -> SetupSession:
        if int(user_id) in self._sessions:
            raise SetupError("❌ You already have an active cloning process!")
        now = self._clock()
        setup = SetupSession(user_id=int(user_id), origin_channel_id=int(origin_channel_id), created_at=now, updated_at=now)
        self._sessions[setup.user_id] = setup
        return setup

    def cancel(self, user_id: int) -> bool:
        setup = self._sessions.get(int(user_id))
        if setup is None or setup.step is SetupStep.RUNNING:
            return False
        del self._sessions[int(user_id)]
        return True

    def finish(self, user_id: int) -> None:
        self._sessions.pop(int(user_id), None)

    def mark_running(self, user_id: int) -> SetupSession:
        setup = self._require(user_id)
        if setup.step is not SetupStep.READY:
            raise SetupError("❌ Setup is not ready to start.")
        setup.step = SetupStep.RUNNING
        setup.updated_at = self._clock()
        return setup

    def toggle_emojis(self, user_id: int) -> bool:
        setup = self._require(user_id)
        setup.clone_emojis = not setup.clone_emojis
        setup.updated_at = self._clock()
        return setup.clone_emojis

    def expire(self, max_idle_sec: float) -> list[SetupSession]:
        now = self._clock()
        expired = [
            setup
            for setup in self._sessions.values()
            if setup.step is not SetupStep.RUNNING and now - setup.updated_at > max_idle_sec
        ]
        for setup in expired:
            del self._sessions[setup.user_id]
        return expired

    def advance(self, user_id: int, content: str) -> SetupReply:
        setup = self._require(user_id)
        text = str(content or "").strip()
        lowered = text.lower()
        if lowered == "cancel":
            if not self.cancel(user_id):
                return SetupReply("⚠️ A clone is already running and cannot be cancelled.")
            return SetupReply("✅ Operation cancelled.", cancelled=True)
        setup.updated_at = self._clock()

        if setup.step is SetupStep.AWAITING_TOKEN:
            if not lowered.startswith("token "):
                return SetupReply("❌ Please send token in format: `token YOUR_TOKEN_HERE`")
            token = text[6:].strip()
            if not token:
                return SetupReply("❌ Please send token in format: `token YOUR_TOKEN_HERE`")
            setup.token = token
            setup.step = SetupStep.AWAITING_SOURCE
            return SetupReply("✅ Token received! Now send source server ID: `source SERVER_ID`")

        if setup.step is SetupStep.AWAITING_SOURCE:
            if not lowered.startswith("source "):
                return SetupReply("❌ Please send source ID in format: `source SERVER_ID`")
            source_id = parse_snowflake(text[7:])
            if source_id is None:
                return SetupReply("❌ Invalid server ID! Must be numbers only.")
            setup.source_id = source_id
            setup.step = SetupStep.AWAITING_TARGET
            return SetupReply("✅ Source server ID received! Now send target server ID: `target SERVER_ID`")

        if setup.step is SetupStep.AWAITING_TARGET:
            if not lowered.startswith("target "):
                return SetupReply("❌ Please send target ID in format: `target SERVER_ID`")
            target_id = parse_snowflake(text[7:])
            if target_id is None:
                return SetupReply("❌ Invalid server ID! Must be numbers only.")
            if target_id == setup.source_id:
                return SetupReply("❌ Target server must be different from the source server.")
            setup.target_id = target_id
            setup.step = SetupStep.READY
            return SetupReply(confirmation_text(setup))

        if setup.step is SetupStep.READY:
            if lowered == "confirm":
                return SetupReply("🚀 Starting cloning process... This may take several minutes.", start=True)
            if lowered in {"emojis on", "emojis off"}:
                setup.clone_emojis = lowered.endswith("on")
                return SetupReply(f"✅ Emoji cloning {'enabled' if setup.clone_emojis else 'disabled'}.")
            return SetupReply("Reply with `confirm` to start cloning, `emojis on|off`, or `cancel` to abort.")

        return SetupReply("⏳ Cloning is in progress, please wait.")

    def _require(self, user_id: int) -> SetupSession:
        setup = self._sessions.get(int(user_id))
        if setup is None:
            raise SetupError("No active setup. Use the clone command to start one.")
        return setup


def confirmation_text(setup: SetupSession) -> str:
    return (
        "✅ **All data received!**\n\n"
        f"**Source Server:** `{setup.source_id}`\n"
        f"**Target Server:** `{setup.target_id}`\n"
        f"**Clone Emojis:** `{'yes' if setup.clone_emojis else 'no'}`\n\n"
        "⚠️ **WARNING:** This will DELETE ALL existing content in the target server!\n\n"
        "Reply with `confirm` to start cloning or `cancel` to abort, or use the buttons below."
    )
