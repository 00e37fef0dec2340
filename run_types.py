"""Typed objects for streamed prompt runs and their history."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Tuple


class RunStatus(str, Enum):
    """Process-wide status of the active run."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILURE)


_STATUS_LABELS = {
    RunStatus.IDLE: "Ready",
    RunStatus.RUNNING: "Running",
    RunStatus.SUCCESS: "Success",
    RunStatus.FAILURE: "Failed",
}


@dataclass(frozen=True)
class RunMessage:
    """One logical response unit for the active run."""

    id: str
    content: str
    timestamp: datetime
    # Never flipped to True on terminal status; kept as observed.
    is_complete: bool = False

    def with_content(self, content: str) -> "RunMessage":
        """Return a copy holding the new accumulated text."""
        return replace(self, content=content)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, including the ``Z`` suffix browsers write."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class StoredPrompt:
    """A persisted history entry. ``content`` is the dedup key, not ``id``."""

    id: str
    content: str
    timestamp: datetime
    is_favorite: bool = False

    def toggled(self) -> "StoredPrompt":
        return replace(self, is_favorite=not self.is_favorite)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "isFavorite": self.is_favorite,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredPrompt":
        """Parse the wire shape. Raises KeyError, TypeError or ValueError on bad input."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected mapping, got {type(data).__name__}")
        content = data["content"]
        if not isinstance(content, str):
            raise TypeError("Prompt content must be a string")
        timestamp = data["timestamp"]
        if not isinstance(timestamp, str):
            raise TypeError("Prompt timestamp must be a string")
        prompt_id = data["id"]
        # Browser-written history uses numeric millisecond ids.
        if isinstance(prompt_id, bool) or not isinstance(prompt_id, (str, int)):
            raise TypeError("Prompt id must be a string or integer")
        is_favorite = data.get("isFavorite", False)
        if not isinstance(is_favorite, bool):
            raise TypeError("Prompt isFavorite must be a boolean")
        return cls(
            id=str(prompt_id),
            content=content,
            timestamp=parse_timestamp(timestamp),
            is_favorite=is_favorite,
        )


@dataclass(frozen=True)
class HistoryView:
    """History partitioned for presentation, both parts newest-first."""

    favorites: Tuple[StoredPrompt, ...] = field(default_factory=tuple)
    recent: Tuple[StoredPrompt, ...] = field(default_factory=tuple)

    @property
    def favorite_count(self) -> int:
        return len(self.favorites)

    @property
    def recent_count(self) -> int:
        return len(self.recent)

    @property
    def total(self) -> int:
        return self.favorite_count + self.recent_count
