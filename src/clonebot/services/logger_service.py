from __future__ import annotations

from datetime import datetime, timezone

from clonebot.storage import MessagePackStore

MAX_LOG_ROWS = 2000


class LoggerService:
    def __init__(self, store: MessagePackStore | None = None) -> None:
        self.store = store

    def log(self, event: str, **data: object) -> None:
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "data": data,
        }
        if self.store is not None:
            logs = self.store.data["logs"]
            logs.append(row)
            if len(logs) > MAX_LOG_ROWS:
                del logs[: len(logs) - MAX_LOG_ROWS]
            self.store.touch()
        print(f"[{row['ts']}] {event} {data}")

    def console(self, marker: str, text: str) -> None:
        ts = datetime.now(tz=timezone.utc).isoformat()
        print(f"[{ts}] [{marker}] {text}")


def mask_token(token: str) -> str:
    token = token or ""
    if len(token) <= 10:
        return "*" * len(token)
    return f"{token[:10]}..."
