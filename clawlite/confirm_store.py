"""Persistence of host-critical requests that await user confirmation."""

from __future__ import annotations

import json
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


class PendingConfirmationNotFound(LookupError):
    """Raised when a chat has no pending confirmation."""

    def __init__(self, message: str = "pending confirmation not found") -> None:
        super().__init__(message)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.replace(microsecond=0).isoformat()
    base, offset = text[:19], text[19:]
    if offset == "+00:00":
        offset = "Z"
    fraction = f".{value.microsecond:06d}".rstrip("0") if value.microsecond else ""
    return base + fraction + offset


def _parse_time(text: str) -> datetime:
    match = _TIMESTAMP_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    base, fraction, offset = match.groups()
    micro = (fraction or "").ljust(6, "0")[:6]
    if offset == "Z":
        offset = "+00:00"
    return datetime.fromisoformat(f"{base}.{micro}{offset}")


def _str_field(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


@dataclass
class PendingConfirmation:
    """A request held back until the user confirms it."""

    goal_id: str = ""
    raw_request: str = ""
    risk_level: str = ""
    created_at: datetime = field(default=_ZERO_TIME)

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "raw_request": self.raw_request,
            "risk_level": self.risk_level,
            "created_at": _format_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PendingConfirmation":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("pending confirmation must be a JSON object")
        raw_time = data.get("created_at")
        if raw_time is None:
            created_at = _ZERO_TIME
        elif isinstance(raw_time, str):
            created_at = _parse_time(raw_time)
        else:
            raise ValueError("field 'created_at' must be a string")
        return cls(
            goal_id=_str_field(data, "goal_id"),
            raw_request=_str_field(data, "raw_request"),
            risk_level=_str_field(data, "risk_level"),
            created_at=created_at,
        )


class ConfirmStore:
    """Stores one pending confirmation per chat under <data_dir>/confirmations."""

    def __init__(self, data_dir: str | os.PathLike = "data") -> None:
        base = str(data_dir)
        if not base.strip():
            base = "data"
        self.base_dir = Path(base) / "confirmations"
        self._lock = threading.Lock()

    def _file_path(self, chat_id: int) -> Path:
        return self.base_dir / f"{chat_id}.json"

    def save(self, chat_id: int, pending: PendingConfirmation) -> None:
        """Write the pending confirmation for a chat, replacing any earlier one."""
        text = json.dumps(pending.to_dict(), indent=2, ensure_ascii=False) + "\n"
        with self._lock:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._file_path(chat_id), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)

    def load(self, chat_id: int) -> PendingConfirmation:
        """Return the pending confirmation; raises PendingConfirmationNotFound if none."""
        with self._lock:
            try:
                text = self._file_path(chat_id).read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                raise PendingConfirmationNotFound() from exc
        try:
            return PendingConfirmation.from_dict(json.loads(text))
        except ValueError as exc:
            raise ValueError(f"parse pending confirmation: {exc}") from exc

    def clear(self, chat_id: int) -> None:
        """Remove the pending confirmation for a chat, if any."""
        with self._lock:
            try:
                self._file_path(chat_id).unlink()
            except FileNotFoundError:
                pass