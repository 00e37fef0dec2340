"""Pytest fixtures for prompt-runner tests."""
from __future__ import annotations

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from blob_store import JsonFileBlobStore
from config import StreamConfig
from exceptions import TransportError
from history_store import HistoryStore
from session_controller import SessionController


class TickingClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.now
        self.now += timedelta(seconds=1)
        return value


class FakeStreamHandle:
    """In-memory stand-in for a live push subscription."""

    def __init__(
        self,
        url: str,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_error: Callable[[TransportError], None],
    ):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.closed = True
        self.close_calls += 1

    def emit_open(self) -> None:
        if not self.closed:
            self.on_open()

    def emit(self, *chunks: str) -> None:
        for chunk in chunks:
            if not self.closed:
                self.on_message(chunk)

    def fail(self, message: str = "connection reset") -> None:
        if not self.closed:
            self.on_error(TransportError(message, url=self.url))


class FakeTransport:
    """Transport that records opened handles and lets tests push chunks."""

    def __init__(self) -> None:
        self.handles: List[FakeStreamHandle] = []
        self.fail_on_open = False

    def open(self, url, on_open, on_message, on_error) -> FakeStreamHandle:
        if self.fail_on_open:
            raise TransportError("Cannot open stream", url=url)
        handle = FakeStreamHandle(url, on_open, on_message, on_error)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeStreamHandle:
        return self.handles[-1]


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def history_path(temp_dir: Path) -> Path:
    return temp_dir / "history.json"


@pytest.fixture
def blob_store(history_path: Path) -> JsonFileBlobStore:
    return JsonFileBlobStore(history_path)


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def history_store(blob_store: JsonFileBlobStore, clock: TickingClock) -> HistoryStore:
    return HistoryStore(blob_store, clock=clock)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clipboard() -> List[str]:
    return []


@pytest.fixture
def controller(
    history_store: HistoryStore,
    fake_transport: FakeTransport,
    clipboard: List[str],
    clock: TickingClock,
) -> SessionController:
    return SessionController(
        history=history_store,
        transport=fake_transport,
        stream=StreamConfig(base_url="http://runner.test:8080"),
        clipboard=clipboard.append,
        clock=clock,
    )


@pytest.fixture
def sample_history_blob() -> List[Dict[str, Any]]:
    """History as the browser client stored it (newest first)."""
    return [
        {
            "id": "1718000000003",
            "content": "Open https://example.com and verify the title",
            "timestamp": "2024-06-10T06:13:20.003Z",
            "isFavorite": True,
        },
        {
            "id": "1718000000002",
            "content": "Log in with test@example.com",
            "timestamp": "2024-06-10T06:13:20.002Z",
            "isFavorite": False,
        },
        {
            "id": "1718000000001",
            "content": "Search flights from 'Istanbul' to 'Ankara'",
            "timestamp": "2024-06-10T06:13:20.001Z",
            "isFavorite": False,
        },
    ]


@pytest.fixture
def seeded_history_path(history_path: Path, sample_history_blob: List[Dict[str, Any]]) -> Path:
    history_path.write_text(
        json.dumps({"ai-automation-prompts": json.dumps(sample_history_blob)}),
        encoding="utf-8",
    )
    return history_path
