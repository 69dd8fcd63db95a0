"""Append-only JSON Lines audit log for proxied requests."""

from __future__ import annotations

import json
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_FRACTION_RE = re.compile(r"\.(\d+)")


def _format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    text = ts.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


def _parse_timestamp(text: str) -> datetime:
    text = text.replace("Z", "+00:00")
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], text, count=1)
    return datetime.fromisoformat(text)


@dataclass
class AuditRecord:
    """One audited request and its outcome."""

    timestamp: datetime
    chat_id: int
    raw_user_message: str
    prompt_hash: str
    execution_mode: str
    goal_id: str = ""
    final_reply: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; empty goal id and reply are left out."""
        data: dict[str, Any] = {
            "timestamp": _format_timestamp(self.timestamp),
            "chat_id": self.chat_id,
            "goal_id": self.goal_id,
            "raw_user_message": self.raw_user_message,
            "prompt_hash": self.prompt_hash,
            "final_reply": self.final_reply,
            "execution_mode": self.execution_mode,
        }
        return {k: v for k, v in data.items() if v or k not in ("goal_id", "final_reply")}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditRecord":
        """Build a record from its JSON form; missing fields take zero values."""
        if not isinstance(data, dict):
            raise ValueError("audit record must be a JSON object")
        raw_ts = data.get("timestamp")
        return cls(
            timestamp=_parse_timestamp(raw_ts) if raw_ts else _ZERO_TIME,
            chat_id=int(data.get("chat_id") or 0),
            raw_user_message=data.get("raw_user_message") or "",
            prompt_hash=data.get("prompt_hash") or "",
            execution_mode=data.get("execution_mode") or "",
            goal_id=data.get("goal_id") or "",
            final_reply=data.get("final_reply") or "",
        )


class AuditLog:
    """Thread-safe audit log stored as audit.jsonl in a state directory."""

    def __init__(self, state_dir: str | os.PathLike = "") -> None:
        self.path = Path(str(state_dir).strip() or ".") / "audit.jsonl"
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        """Append one record as a JSON line."""
        line = json.dumps(record.to_dict(), separators=(",", ":"), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read_all(self) -> list[AuditRecord]:
        """Read every record; a missing log yields an empty list."""
        with self._lock:
            try:
                text = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return []
        try:
            return [
                AuditRecord.from_dict(json.loads(line))
                for line in map(str.strip, text.splitlines())
                if line
            ]
        except ValueError as exc:
            raise ValueError(f"parse audit log: {exc}") from exc