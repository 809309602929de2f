from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    discord_token: str
    allowed_user_ids: frozenset[int]
    command_prefix: str
    store_path: Path
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 3
    slow_threshold_sec: float = 30.0
    reconnect_delay_sec: float = 5.0
    monitor_interval_sec: float = 10.0
    operation_delay_sec: float = 0.2
    emoji_delay_sec: float = 2.0
    max_operation_attempts: int = 3
    retry_backoff_sec: float = 1.0
    ready_timeout_sec: float = 60.0
    image_timeout_sec: float = 30.0
    reorder_roles: bool = True
    setup_timeout_sec: float = 15 * 60

    @staticmethod
    def load() -> "Settings":
        values = _parse_passwords_file(Path("passwords.txt"))
        token = values.get("DISCORD_TOKEN", "").strip()
        allowed_user_ids = _parse_id_list(values.get("ALLOWED_USER_IDS", ""))
        if not token:
            raise RuntimeError("DISCORD_TOKEN is required in passwords.txt.")
        if not allowed_user_ids:
            raise RuntimeError("ALLOWED_USER_IDS is required in passwords.txt (comma separated).")
        return Settings(
            discord_token=token,
            allowed_user_ids=allowed_user_ids,
            command_prefix=values.get("COMMAND_PREFIX", "!"),
            store_path=Path(values.get("STORE_PATH", "data/clonebot.msgpack")),
            auto_reconnect=_parse_bool(values.get("AUTO_RECONNECT", "true")),
            max_reconnect_attempts=int(values.get("MAX_RECONNECT_ATTEMPTS", "3")),
            slow_threshold_sec=float(values.get("SLOW_THRESHOLD_SEC", "30")),
            reconnect_delay_sec=float(values.get("RECONNECT_DELAY_SEC", "5")),
            monitor_interval_sec=float(values.get("MONITOR_INTERVAL_SEC", "10")),
            operation_delay_sec=float(values.get("OPERATION_DELAY_SEC", "0.2")),
            emoji_delay_sec=float(values.get("EMOJI_DELAY_SEC", "2")),
            max_operation_attempts=max(1, int(values.get("MAX_OPERATION_ATTEMPTS", "3"))),
            retry_backoff_sec=float(values.get("RETRY_BACKOFF_SEC", "1")),
            ready_timeout_sec=float(values.get("READY_TIMEOUT_SEC", "60")),
            image_timeout_sec=float(values.get("IMAGE_TIMEOUT_SEC", "30")),
            reorder_roles=_parse_bool(values.get("REORDER_ROLES", "true")),
            setup_timeout_sec=float(values.get("SETUP_TIMEOUT_SEC", "900")),
        )


def _parse_passwords_file(path: Path) -> dict[str, str]:
    if not path.exists():
        raise RuntimeError("passwords.txt not found. Copy passwords.example.txt to passwords.txt and fill values.")
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _parse_id_list(raw: str) -> frozenset[int]:
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            ids.add(int(part))
    return frozenset(ids)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}
