"""Server-sent event stream client for the remote execution service."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Callable, Optional, Protocol
from urllib.parse import quote

import httpx

from exceptions import TransportError

DEFAULT_ENDPOINT_PATH = "/api/v1/prompts"

# Characters encodeURIComponent leaves untouched besides alphanumerics.
_URI_COMPONENT_SAFE = "-_.!~*'()"

OpenCallback = Callable[[], None]
MessageCallback = Callable[[str], None]
ErrorCallback = Callable[[TransportError], None]


@dataclass
class SseEvent:
    """One dispatched server-sent event."""

    data: str
    event: str = "message"
    id: Optional[str] = None


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[SseEvent]:
    """Decode EventSource wire lines into events.

    Data lines are joined with newlines and otherwise kept verbatim; only the
    single space after the field colon is removed.
    """
    data_lines: list[str] = []
    event_type = ""
    last_id: Optional[str] = None
    async for line in lines:
        if line == "":
            if data_lines:
                yield SseEvent(data="\n".join(data_lines), event=event_type or "message", id=last_id)
            data_lines = []
            event_type = ""
            continue
        if line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_type = value
        elif name == "id":
            last_id = value


def build_stream_url(base_url: str, prompt: str, path: str = DEFAULT_ENDPOINT_PATH) -> str:
    """Return the subscription URL with the prompt percent-encoded into the query."""
    encoded = quote(prompt, safe=_URI_COMPONENT_SAFE)
    return f"{base_url.rstrip('/')}{path}?prompt={encoded}"


class StreamHandle(Protocol):
    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


class StreamTransport(Protocol):
    def open(
        self,
        url: str,
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_error: ErrorCallback,
    ) -> StreamHandle: ...


class SseStreamHandle:
    """A live subscription pumped by an asyncio task.

    ``close()`` is synchronous: once it returns no callback fires again, even
    for data the transport has already buffered.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        logger: logging.Logger,
    ):
        self.url = url
        self._client = client
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self.logger = logger
        self._closed = False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TransportError("Cannot open stream without a running event loop", url=url) from exc
        self._task = loop.create_task(self._pump(), name="prompt-stream")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def task(self) -> asyncio.Task:
        return self._task

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        self.logger.debug(f"Stream closed: {self.url}")

    async def _pump(self) -> None:
        try:
            async with self._client.stream(
                "GET",
                self.url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            ) as response:
                if response.status_code != 200:
                    raise TransportError(
                        f"Stream request failed with HTTP {response.status_code}",
                        url=self.url,
                        status_code=response.status_code,
                    )
                content_type = response.headers.get("content-type", "")
                if not content_type.startswith("text/event-stream"):
                    raise TransportError(
                        f"Unexpected content type '{content_type}'",
                        url=self.url,
                        status_code=response.status_code,
                    )
                if self._closed:
                    return
                self.logger.info(f"Stream connected: {self.url}")
                self._on_open()

                async for event in iter_sse_events(response.aiter_lines()):
                    if self._closed:
                        return
                    if event.event != "message":
                        self.logger.debug(f"Ignoring '{event.event}' event")
                        continue
                    self._on_message(event.data)

            if not self._closed:
                raise TransportError("Stream closed by server", url=self.url)
        except TransportError as exc:
            self._fail(exc)
        except httpx.HTTPError as exc:
            self._fail(TransportError(f"Stream connection failed: {exc}", url=self.url))
        except Exception as exc:
            self.logger.exception(f"Stream pump crashed: {self.url}")
            self._fail(TransportError(f"Stream processing failed: {exc}", url=self.url))

    def _fail(self, exc: TransportError) -> None:
        if self._closed:
            return
        self.logger.error(f"Stream error: {exc}")
        self._on_error(exc)


class SseTransport:
    """Open push subscriptions over HTTP with httpx."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = 10.0,
        read_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect_timeout, connect=connect_timeout, read=read_timeout),
        )
        self.logger = logger or logging.getLogger("prompt_runner.stream")

    def open(
        self,
        url: str,
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_error: ErrorCallback,
    ) -> SseStreamHandle:
        self.logger.info(f"Opening stream: {url}")
        return SseStreamHandle(self.client, url, on_open, on_message, on_error, self.logger)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
