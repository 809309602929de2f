from __future__ import annotations

import pytest

from clonebot.errors import SetupError
from clonebot.services.session_registry import SetupSessionRegistry, SetupStep


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _ready_registry() -> SetupSessionRegistry:
    registry = SetupSessionRegistry(clock=FakeClock())
    registry.start(41, 500)
    registry.advance(41, "token abc.def")
    registry.advance(41, "source 111")
    registry.advance(41, "target 222")
    return registry


def test_dm_steps_collect_token_and_ids() -> None:
    registry = _ready_registry()
    setup = registry.get(41)
    assert setup is not None
    assert setup.step is SetupStep.READY
    assert setup.token == "abc.def"
    assert (setup.source_id, setup.target_id) == (111, 222)
    assert "abc.def" not in repr(setup)


def test_wrong_format_keeps_step() -> None:
    registry = SetupSessionRegistry()
    registry.start(41, 500)
    reply = registry.advance(41, "hello")
    assert reply.text.startswith("❌ Please send token")
    assert registry.get(41).step is SetupStep.AWAITING_TOKEN

    registry.advance(41, "token abc")
    reply = registry.advance(41, "source 12ab")
    assert reply.text == "❌ Invalid server ID! Must be numbers only."
    assert registry.get(41).step is SetupStep.AWAITING_SOURCE


def test_target_must_differ_from_source() -> None:
    registry = SetupSessionRegistry()
    registry.start(41, 500)
    registry.advance(41, "token abc")
    registry.advance(41, "source 111")
    reply = registry.advance(41, "target 111")
    assert reply.text.startswith("❌ Target server must be different")
    assert registry.get(41).step is SetupStep.AWAITING_TARGET


def test_confirm_and_emoji_toggle() -> None:
    registry = _ready_registry()
    assert registry.advance(41, "emojis off").text == "✅ Emoji cloning disabled."
    assert registry.get(41).clone_emojis is False
    assert registry.toggle_emojis(41) is True
    reply = registry.advance(41, "confirm")
    assert reply.start is True
    setup = registry.mark_running(41)
    assert setup.step is SetupStep.RUNNING


def test_only_one_setup_per_user() -> None:
    registry = SetupSessionRegistry()
    registry.start(41, 500)
    with pytest.raises(SetupError):
        registry.start(41, 501)


def test_cancel_is_refused_once_running() -> None:
    registry = _ready_registry()
    registry.mark_running(41)
    reply = registry.advance(41, "cancel")
    assert reply.cancelled is False
    assert 41 in registry
    registry.finish(41)
    assert 41 not in registry


def test_cancel_before_start_removes_setup() -> None:
    registry = SetupSessionRegistry()
    registry.start(41, 500)
    reply = registry.advance(41, "CANCEL")
    assert reply.cancelled is True
    assert len(registry) == 0


def test_mark_running_requires_ready() -> None:
    registry = SetupSessionRegistry()
    registry.start(41, 500)
    with pytest.raises(SetupError):
        registry.mark_running(41)


def test_expire_skips_running_setups() -> None:
    clock = FakeClock()
    registry = SetupSessionRegistry(clock=clock)
    registry.start(41, 500)
    registry.start(42, 500)
    registry.advance(42, "token abc")
    registry.advance(42, "source 1")
    registry.advance(42, "target 2")
    registry.mark_running(42)
    clock.now = 1000

    expired = registry.expire(900)

    assert [setup.user_id for setup in expired] == [41]
    assert 42 in registry
