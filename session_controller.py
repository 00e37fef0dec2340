"""Lifecycle of one streamed prompt run: connect, accumulate, classify, tear down."""
from __future__ import annotations

import functools
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from config import StreamConfig
from exceptions import TransportError
from history_store import HistoryStore
from observable import Observable
from run_types import RunMessage, RunStatus
from stream_client import StreamHandle, StreamTransport, build_stream_url

SUCCESS_PHRASE = "test is success"
FAILURE_PHRASE = "test is fail"

# The service escapes runs of spaces as a literal backslash-u-0020 marker.
ESCAPED_SPACE = "\\u0020"

CONNECTED_TEXT = "Connected to server, starting test...\n"
CONNECTION_FAILED_TEXT = "Error: Connection to server failed"
START_FAILED_TEXT = "\nError: Failed to start test"
STOPPED_TEXT = "Test stopped by user"

EXAMPLE_PROMPT = """Proceed step by step:
1. Navigate to 'https://www.turkishairlines.com'
2. Click I accept cookies button
2. Search flights from 'Istanbul' to 'Ankara' on 'June 25'
"""


def decode_chunk(chunk: str) -> str:
    return chunk.replace(ESCAPED_SPACE, " ")


def classify_content(content: str) -> Optional[RunStatus]:
    """Return the terminal status named anywhere in ``content``, if any.

    Case-insensitive substring match; success wins when both phrases appear.
    Terminal phrases inside ordinary output also end the run.
    """
    lowered = content.lower()
    if SUCCESS_PHRASE in lowered:
        return RunStatus.SUCCESS
    if FAILURE_PHRASE in lowered:
        return RunStatus.FAILURE
    return None


class SessionController:
    """Drives one run at a time and exposes its state as read models."""

    def __init__(
        self,
        history: HistoryStore,
        transport: StreamTransport,
        stream: Optional[StreamConfig] = None,
        clipboard: Optional[Callable[[str], None]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.history = history
        self.transport = transport
        self.stream = stream or StreamConfig()
        self.clipboard = clipboard
        self.logger = logger or logging.getLogger("prompt_runner.session")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.status: Observable[RunStatus] = Observable(RunStatus.IDLE, name="status")
        self.messages: Observable[Tuple[RunMessage, ...]] = Observable((), name="messages")
        self.pending_prompt: Observable[str] = Observable("", name="pending_prompt")

        self._accumulated = ""
        self._handle: Optional[StreamHandle] = None
        self._run_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status.get() is RunStatus.RUNNING

    @property
    def can_start(self) -> bool:
        return bool(self.pending_prompt.get().strip()) and not self.is_running

    @property
    def accumulated_text(self) -> str:
        return self._accumulated

    @property
    def latest_message(self) -> Optional[RunMessage]:
        current = self.messages.get()
        return current[-1] if current else None

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    def start(self, prompt_text: Optional[str] = None) -> bool:
        """Begin a run. Returns False when the request is ignored."""
        if prompt_text is None:
            prompt_text = self.pending_prompt.get()
        if not prompt_text.strip():
            self.logger.warning("Ignoring start request with an empty prompt")
            return False
        if self.is_running:
            self.logger.warning("Ignoring start request: a run is already active")
            return False

        self.history.record(prompt_text)

        run_id = uuid.uuid4().hex
        self._run_id = run_id
        self._accumulated = ""
        self.messages.set(())
        self.status.set(RunStatus.RUNNING)

        self.logger.info(f"Starting run {run_id}")
        try:
            url = build_stream_url(self.stream.base_url, prompt_text, self.stream.endpoint_path)
            handle = self.transport.open(
                url,
                on_open=functools.partial(self._on_open, run_id),
                on_message=functools.partial(self._on_message, run_id),
                on_error=functools.partial(self._on_error, run_id),
            )
        except Exception as exc:
            self.logger.error(f"Error starting test: {exc}")
            self._append_chunk(START_FAILED_TEXT)
            self._finish(RunStatus.FAILURE)
            return True

        if self._is_current(run_id):
            self._handle = handle
        else:
            # The run already ended while the transport was opening.
            handle.close()
        return True

    def stop(self) -> None:
        """Cancel the active run, if any. Always safe to call."""
        self._close_stream()
        self._run_id = None
        self.status.set(RunStatus.IDLE)
        self.logger.info("Run stopped by user")
        self._append_chunk(STOPPED_TEXT)

    def load_into_editor(self, content: str) -> None:
        self.pending_prompt.set(content)

    def copy_to_clipboard(self, content: str) -> bool:
        """Hand ``content`` to the clipboard capability; failures are only logged."""
        if self.clipboard is None:
            self.logger.warning("No clipboard available")
            return False
        try:
            self.clipboard(content)
        except Exception as exc:
            self.logger.warning(f"Copy to clipboard failed: {exc}")
            return False
        return True

    def _is_current(self, run_id: str) -> bool:
        return run_id == self._run_id and self.is_running

    def _on_open(self, run_id: str) -> None:
        if self._is_current(run_id):
            self._append_chunk(CONNECTED_TEXT)

    def _on_message(self, run_id: str, chunk: str) -> None:
        if self._is_current(run_id):
            self._append_chunk(chunk)

    def _on_error(self, run_id: str, error: TransportError) -> None:
        if not self._is_current(run_id):
            return
        self.logger.error(f"Stream error during run {run_id}: {error}")
        self._append_chunk(CONNECTION_FAILED_TEXT)
        if self.is_running:
            # Appending may already have produced a verdict.
            self._finish(RunStatus.FAILURE)

    def _append_chunk(self, chunk: str) -> None:
        self._accumulated += decode_chunk(chunk)
        current = self.messages.get()
        if current:
            message = current[0].with_content(self._accumulated)
            self.messages.set((message,) + current[1:])
        else:
            message = RunMessage(
                id=uuid.uuid4().hex,
                content=self._accumulated,
                timestamp=self._clock(),
            )
            self.messages.set((message,))

        if self.is_running:
            verdict = classify_content(message.content)
            if verdict is not None:
                self._finish(verdict)

    def _finish(self, status: RunStatus) -> None:
        self._close_stream()
        self._run_id = None
        self.status.set(status)
        self.logger.info(f"Run finished: {status.value}")

    def _close_stream(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
