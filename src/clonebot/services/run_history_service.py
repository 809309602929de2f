from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from clonebot.services.logger_service import LoggerService
from clonebot.storage import MessagePackStore

MAX_RUNS = 200


class RunHistoryService:
    def __init__(self, store: MessagePackStore, logger: LoggerService) -> None:
        self.store = store
        self.logger = logger

    def root(self) -> list[dict[str, Any]]:
        node = self.store.data.setdefault("clone_runs", [])
        if not isinstance(node, list):
            self.store.data["clone_runs"] = []
            self.store.touch()
            node = self.store.data["clone_runs"]
        return node

    def record(
        self,
        *,
        user_id: int,
        source_id: int,
        target_id: int,
        stats: dict[str, int] | None,
        error: str = "",
    ) -> dict[str, Any]:
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "user_id": int(user_id),
            "source_id": int(source_id),
            "target_id": int(target_id),
            "ok": not error,
            "error": error[:300],
            "stats": dict(stats or {}),
        }
        runs = self.root()
        runs.append(row)
        if len(runs) > MAX_RUNS:
            del runs[: len(runs) - MAX_RUNS]
        self.store.touch()
        self.logger.log("history.recorded", user_id=row["user_id"], target_id=row["target_id"], ok=row["ok"])
        return row

    def recent(self, limit: int = 5, *, user_id: int | None = None) -> list[dict[str, Any]]:
        rows = [row for row in self.root() if isinstance(row, dict)]
        if user_id is not None:
            rows = [row for row in rows if int(row.get("user_id", 0) or 0) == int(user_id)]
        return list(reversed(rows[-max(0, limit):])) if limit > 0 else []

    def format_row(self, row: dict[str, Any]) -> str:
        stats = row.get("stats") or {}
        status = "✅" if row.get("ok") else "❌"
        line = (
            f"{status} `{row.get('ts', '')[:19]}` `{row.get('source_id')}` → `{row.get('target_id')}` "
            f"roles={stats.get('roles_created', 0)} categories={stats.get('categories_created', 0)} "
            f"channels={stats.get('channels_created', 0)} emojis={stats.get('emojis_created', 0)} "
            f"failed={stats.get('failed', 0)} rate={stats.get('success_rate', 0)}%"
        )
        if row.get("error"):
            line += f" error={row['error']}"
        return line
