"""Bounded conversation history."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator

USER_ROLE = "User"
ASSISTANT_ROLE = "Assistant"


@dataclass(slots=True)
class HistoryEntry:
    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConversationHistory:
    """Most recent ``limit`` entries of a conversation, oldest evicted first."""

    def __init__(self, limit: int = 10) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._entries: deque[HistoryEntry] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(list(self._entries))

    def append(self, role: str, content: str) -> HistoryEntry:
        entry = HistoryEntry(role=role, content=content.strip())
        self._entries.append(entry)
        return entry

    def append_exchange(self, user_message: str, answer: str) -> None:
        self.append(USER_ROLE, user_message)
        self.append(ASSISTANT_ROLE, answer)

    def recent(self, count: int) -> list[HistoryEntry]:
        if count <= 0:
            return []
        return list(self._entries)[-count:]

    def render(self, count: int | None = None) -> str:
        entries = list(self._entries) if count is None else self.recent(count)
        return "\n".join(f"{entry.role}: {entry.content}" for entry in entries)

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["ASSISTANT_ROLE", "ConversationHistory", "HistoryEntry", "USER_ROLE"]
