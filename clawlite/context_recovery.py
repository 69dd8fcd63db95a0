"""Helpers for recovering from oversized tool output in the model context."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ContextRecoveryState:
    """Counts context overflows within one request."""

    overflow_attempts: int = 0

    def record_overflow(self, max_attempts: int) -> bool:
        """Count one overflow; return True once the attempts exceed max_attempts."""
        self.overflow_attempts += 1
        return self.overflow_attempts > max_attempts


def truncate_tool_output_for_context(raw: str, max_chars: int) -> str:
    """Keep the head and tail of long output, joined by a truncation marker."""
    if max_chars <= 0 or len(raw) <= max_chars:
        return raw
    head = max(max_chars // 2, 1)
    tail = max(max_chars - max_chars // 2, 1)
    if head + tail > len(raw):
        return raw
    marker = f"\n...[truncated tool output, original={len(raw)} chars]...\n"
    return raw[:head].strip() + marker + raw[len(raw) - tail:].strip()