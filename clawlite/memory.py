"""Per-chat conversation memory with summarising compaction."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_MAX_SUMMARY_CHARS = 4000
_CLIP_CHARS = 120


@dataclass
class Message:
    """One message in a conversation."""

    role: str
    content: str


@dataclass
class ChatState:
    """Stored memory for one chat: a rolling summary and recent messages."""

    summary: str = ""
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.summary:
            data["summary"] = self.summary
        if self.messages:
            data["messages"] = [{"role": m.role, "content": m.content} for m in self.messages]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ChatState":
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("memory state must be a JSON object")
        messages = [
            Message(role=item.get("role") or "", content=item.get("content") or "")
            for item in (data.get("messages") or [])
            if isinstance(item, dict)
        ]
        return cls(summary=data.get("summary") or "", messages=messages)


class MemoryStore:
    """Keeps chat memories as JSON files under <data_dir>/memory."""

    def __init__(self, data_dir: str | os.PathLike = "data", max_turns: int = 8) -> None:
        self.base_dir = Path(str(data_dir).strip() and str(data_dir) or "data") / "memory"
        self.max_turns = max_turns if max_turns > 0 else 8
        self._lock = threading.Lock()

    @property
    def data_dir(self) -> str:
        return str(self.base_dir.parent)

    def load(self, chat_id: int) -> ChatState:
        """Return the stored state; a chat without memory yields an empty state."""
        with self._lock:
            return self._load(chat_id)

    def append_exchange(self, chat_id: int, user_text: str, assistant_text: str) -> None:
        """Record one user/assistant exchange and compact old history."""
        with self._lock:
            state = self._load(chat_id)
            state.messages += [
                Message(role="user", content=user_text.strip()),
                Message(role="assistant", content=assistant_text.strip()),
            ]
            self._save(chat_id, self._compact(state))

    def _file_path(self, chat_id: int) -> Path:
        return self.base_dir / f"{chat_id}.json"

    def _load(self, chat_id: int) -> ChatState:
        try:
            text = self._file_path(chat_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ChatState()
        try:
            return ChatState.from_dict(json.loads(text))
        except ValueError as exc:
            raise ValueError(f"parse memory state: {exc}") from exc

    def _save(self, chat_id: int, state: ChatState) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        text = json.dumps(state.to_dict(), indent=2, ensure_ascii=False) + "\n"
        fd = os.open(self._file_path(chat_id), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)

    def _compact(self, state: ChatState) -> ChatState:
        max_messages = self.max_turns * 2
        if len(state.messages) <= max_messages:
            return state
        cut = len(state.messages) - max_messages
        old, state.messages = state.messages[:cut], state.messages[cut:]
        delta = _summarize_messages(old)
        if delta:
            state.summary = (state.summary + " " + delta).strip() if state.summary else delta
        state.summary = state.summary[-_MAX_SUMMARY_CHARS:]
        return state


def _summarize_messages(messages: list[Message]) -> str:
    labels = {"user": "User asked: ", "assistant": "Assistant answered: "}
    segments: list[str] = []
    for msg in messages:
        content = msg.content.strip()
        if not content:
            continue
        if msg.role in labels:
            segments.append(labels[msg.role] + _clip(content, _CLIP_CHARS))
        if len(segments) >= 8:
            break
    return " ".join(segments)


def _clip(raw: str, limit: int) -> str:
    return raw if len(raw) <= limit else raw[:limit].strip() + "..."