"""Deduplicated, capacity-bounded history of submitted prompts."""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from exceptions import PersistenceReadError, PersistenceWriteError
from observable import Observable
from run_types import HistoryView, StoredPrompt

DEFAULT_HISTORY_KEY = "ai-automation-prompts"
MAX_STORED_PROMPTS = 50


class BlobStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class HistoryStore:
    """
    Ordered newest-first collection of StoredPrompt entries.

    Content is the dedup key: recording a prompt that already exists removes
    the old entry and inserts a fresh one at the front. The sequence is loaded
    once at construction and fully re-serialized after every mutation.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        key: str = DEFAULT_HISTORY_KEY,
        capacity: int = MAX_STORED_PROMPTS,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_id,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.blob_store = blob_store
        self.key = key
        self.capacity = capacity
        self.logger = logger or logging.getLogger("prompt_runner.history")
        self._clock = clock
        self._id_factory = id_factory
        self.last_write_error: Optional[PersistenceWriteError] = None
        self.entries: Observable[Tuple[StoredPrompt, ...]] = Observable((), name="entries")
        self._load()

    def _load(self) -> None:
        try:
            raw = self.blob_store.get(self.key)
            if raw is None:
                self.logger.info(f"No stored history under '{self.key}', starting empty")
                return
            loaded = self._parse(raw)
        except PersistenceReadError as exc:
            self.logger.warning(f"Failed to load prompt history, starting empty: {exc}")
            return

        if len(loaded) > self.capacity:
            loaded = loaded[: self.capacity]
        self.entries.set(tuple(loaded))
        self.logger.debug(f"Loaded {len(loaded)} stored prompt(s)")

    def _parse(self, raw: str) -> List[StoredPrompt]:
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise PersistenceReadError(f"History blob is not valid JSON: {exc}", key=self.key) from exc
        if not isinstance(data, list):
            raise PersistenceReadError("History blob must be a JSON array", key=self.key)
        try:
            return [StoredPrompt.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceReadError(f"Malformed history entry: {exc!r}", key=self.key) from exc

    def _commit(self, entries: Tuple[StoredPrompt, ...]) -> None:
        """Publish the new sequence, then write the whole of it back."""
        self.entries.set(entries)
        payload = json.dumps([entry.to_dict() for entry in entries])
        try:
            self.blob_store.set(self.key, payload)
        except PersistenceWriteError as exc:
            self.last_write_error = exc
            self.logger.warning(f"Prompt history not saved: {exc}")
        else:
            self.last_write_error = None

    def record(self, content: str) -> StoredPrompt:
        """Insert ``content`` at the front, replacing any entry with the same text."""
        entry = StoredPrompt(
            id=self._id_factory(),
            content=content,
            timestamp=self._clock(),
            is_favorite=False,
        )
        remaining = [p for p in self.entries.get() if p.content != content]
        self._commit(tuple([entry] + remaining)[: self.capacity])
        return entry

    def toggle_favorite(self, prompt_id: str) -> Optional[StoredPrompt]:
        current = self.entries.get()
        for index, entry in enumerate(current):
            if entry.id == prompt_id:
                updated = entry.toggled()
                self._commit(current[:index] + (updated,) + current[index + 1 :])
                return updated
        self.logger.debug(f"toggle_favorite: no prompt with id {prompt_id}")
        return None

    def delete(self, prompt_id: str) -> bool:
        current = self.entries.get()
        remaining = tuple(p for p in current if p.id != prompt_id)
        if len(remaining) == len(current):
            self.logger.debug(f"delete: no prompt with id {prompt_id}")
            return False
        self._commit(remaining)
        return True

    def clear(self) -> None:
        self._commit(())

    def get(self, prompt_id: str) -> Optional[StoredPrompt]:
        for entry in self.entries.get():
            if entry.id == prompt_id:
                return entry
        return None

    def list(self) -> HistoryView:
        """Partition entries into favorites and the rest, keeping newest-first order."""
        current = self.entries.get()
        return HistoryView(
            favorites=tuple(p for p in current if p.is_favorite),
            recent=tuple(p for p in current if not p.is_favorite),
        )

    def __len__(self) -> int:
        return len(self.entries.get())
