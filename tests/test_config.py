from __future__ import annotations

from pathlib import Path

import pytest

from clonebot.config import Settings, _parse_bool, _parse_id_list


def test_load_reads_passwords_file(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "passwords.txt").write_text(
        "\n".join(
            [
                "# cloner settings",
                "DISCORD_TOKEN=abc123",
                "ALLOWED_USER_IDS=41, 42,not-a-number",
                "AUTO_RECONNECT=off",
                "MAX_RECONNECT_ATTEMPTS=5",
                "SLOW_THRESHOLD_SEC=45",
                "MAX_OPERATION_ATTEMPTS=0",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings.load()

    assert settings.discord_token == "abc123"
    assert settings.allowed_user_ids == frozenset({41, 42})
    assert settings.command_prefix == "!"
    assert settings.auto_reconnect is False
    assert settings.max_reconnect_attempts == 5
    assert settings.slow_threshold_sec == 45.0
    assert settings.max_operation_attempts == 1
    assert settings.monitor_interval_sec == 10.0
    assert settings.store_path == Path("data/clonebot.msgpack")


def test_load_requires_token_and_allowlist(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    with pytest.raises(RuntimeError, match="passwords.txt not found"):
        Settings.load()

    (tmp_path / "passwords.txt").write_text("DISCORD_TOKEN=abc\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="ALLOWED_USER_IDS"):
        Settings.load()

    (tmp_path / "passwords.txt").write_text("ALLOWED_USER_IDS=41\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="DISCORD_TOKEN"):
        Settings.load()


def test_value_parsers() -> None:
    assert _parse_id_list("") == frozenset()
    assert _parse_id_list(" 7 ,8,,x") == frozenset({7, 8})
    assert _parse_bool("YES") is True
    assert _parse_bool("0") is False
