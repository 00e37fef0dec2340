"""Unit tests for stream_client module."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Tuple

import httpx
import pytest

from config import StreamConfig
from exceptions import TransportError
from history_store import HistoryStore
from run_types import RunStatus
from session_controller import CONNECTED_TEXT, SessionController
from stream_client import SseEvent, SseTransport, build_stream_url, iter_sse_events

URL = "http://runner.test/api/v1/prompts?prompt=ping"


async def _lines(items: List[str]):
    for item in items:
        yield item


def _collect(lines: List[str]) -> List[SseEvent]:
    async def run() -> List[SseEvent]:
        return [event async for event in iter_sse_events(_lines(lines))]

    return asyncio.run(run())


def _sse_response(body: str, status_code: int = 200, content_type: str = "text/event-stream") -> httpx.Response:
    return httpx.Response(status_code, headers={"content-type": content_type}, content=body.encode("utf-8"))


def _run_transport(
    handler: Callable[[httpx.Request], httpx.Response],
    on_message_hook: Callable[[Any, str], None] = None,
) -> Tuple[List[Tuple[str, Any]], List[httpx.Request]]:
    """Open one stream against ``handler`` and record callbacks until it ends."""
    events: List[Tuple[str, Any]] = []
    requests: List[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    async def scenario() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
        transport = SseTransport(client=client)
        holder = {}

        def on_message(data: str) -> None:
            events.append(("message", data))
            if on_message_hook:
                on_message_hook(holder["handle"], data)

        handle = transport.open(
            URL,
            on_open=lambda: events.append(("open", None)),
            on_message=on_message,
            on_error=lambda exc: events.append(("error", exc)),
        )
        holder["handle"] = handle
        await asyncio.gather(handle.task, return_exceptions=True)
        await transport.aclose()
        await client.aclose()

    asyncio.run(scenario())
    return events, requests


class TestIterSseEvents:
    """Tests for EventSource line decoding."""

    def test_single_line_events(self):
        events = _collect(["data: Hello ", "", "data: World", ""])
        assert [e.data for e in events] == ["Hello ", "World"]
        assert all(e.event == "message" for e in events)

    def test_multi_line_data_joined(self):
        events = _collect(["data: line one", "data: line two", ""])
        assert events[0].data == "line one\nline two"

    def test_only_one_leading_space_removed(self):
        events = _collect(["data:  indented", "", "data:no-space", ""])
        assert [e.data for e in events] == [" indented", "no-space"]

    def test_comments_ignored(self):
        events = _collect([": keep-alive", "", "data: x", ""])
        assert [e.data for e in events] == ["x"]

    def test_event_type_and_id(self):
        events = _collect(["event: progress", "id: 7", "data: 50%", "", "data: next", ""])
        assert events[0].event == "progress"
        assert events[0].id == "7"
        assert events[1].event == "message"
        assert events[1].id == "7"

    def test_empty_data_field_dispatches_empty_string(self):
        events = _collect(["data", ""])
        assert [e.data for e in events] == [""]

    def test_unterminated_event_dropped(self):
        events = _collect(["data: complete", "", "data: partial"])
        assert [e.data for e in events] == ["complete"]

    def test_blank_lines_without_data_ignored(self):
        assert _collect(["", "", "retry: 1000", ""]) == []

    def test_escape_markers_passed_through(self):
        events = _collect(["data: a\\u0020b", ""])
        assert events[0].data == "a\\u0020b"


class TestBuildStreamUrl:
    """Tests for the subscription URL."""

    def test_basic(self):
        assert build_stream_url("http://localhost:8080", "ping") == "http://localhost:8080/api/v1/prompts?prompt=ping"

    def test_trailing_slash(self):
        assert build_stream_url("http://localhost:8080/", "ping").startswith("http://localhost:8080/api/")

    def test_encodes_like_encode_uri_component(self):
        url = build_stream_url("http://h", "a b&c=d/e?f#g+h")
        assert url == "http://h/api/v1/prompts?prompt=a%20b%26c%3Dd%2Fe%3Ff%23g%2Bh"

    def test_keeps_unreserved_marks(self):
        url = build_stream_url("http://h", "-_.!~*'()")
        assert url.endswith("?prompt=-_.!~*'()")

    def test_encodes_unicode_and_newlines(self):
        url = build_stream_url("http://h", "İstanbul\n1.")
        assert url.endswith("?prompt=%C4%B0stanbul%0A1.")

    def test_custom_path(self):
        assert build_stream_url("http://h", "x", "/v2/run") == "http://h/v2/run?prompt=x"


class TestSseTransport:
    """Tests for the httpx-backed transport."""

    def test_delivers_messages_then_reports_server_close(self):
        events, requests = _run_transport(
            lambda request: _sse_response("data: Hello \n\ndata: World\n\n")
        )

        assert events[0] == ("open", None)
        assert events[1:3] == [("message", "Hello "), ("message", "World")]
        kind, error = events[3]
        assert kind == "error"
        assert isinstance(error, TransportError)
        assert "closed by server" in error.message
        assert requests[0].headers["accept"] == "text/event-stream"
        assert str(requests[0].url) == URL

    def test_non_message_events_skipped(self):
        events, _ = _run_transport(
            lambda request: _sse_response("event: ping\ndata: {}\n\ndata: real\n\n")
        )
        assert [data for kind, data in events if kind == "message"] == ["real"]

    def test_http_error_status(self):
        events, _ = _run_transport(lambda request: _sse_response("oops", status_code=500))

        assert [kind for kind, _ in events] == ["error"]
        assert events[0][1].status_code == 500

    def test_wrong_content_type(self):
        events, _ = _run_transport(lambda request: _sse_response("{}", content_type="application/json"))

        assert [kind for kind, _ in events] == ["error"]
        assert "content type" in events[0][1].message

    def test_connection_error(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        events, _ = _run_transport(refuse)

        assert [kind for kind, _ in events] == ["error"]
        assert "connection refused" in events[0][1].message

    def test_close_stops_delivery(self):
        def close_on_first(handle, data: str) -> None:
            handle.close()

        events, _ = _run_transport(
            lambda request: _sse_response("data: one\n\ndata: two\n\ndata: three\n\n"),
            on_message_hook=close_on_first,
        )

        assert events == [("open", None), ("message", "one")]

    def test_callback_exception_reported_as_error(self):
        def explode(handle, data: str) -> None:
            raise RuntimeError("subscriber blew up")

        events, _ = _run_transport(
            lambda request: _sse_response("data: one\n\ndata: two\n\n"),
            on_message_hook=explode,
        )

        assert [kind for kind, _ in events] == ["open", "message", "error"]
        assert isinstance(events[2][1], TransportError)
        assert "subscriber blew up" in events[2][1].message

    def test_open_requires_running_loop(self):
        transport = SseTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: _sse_response(""))))
        with pytest.raises(TransportError):
            transport.open(URL, on_open=lambda: None, on_message=lambda d: None, on_error=lambda e: None)


class TestControllerOverSse:
    """Session controller driven by the real transport."""

    def _run(self, history_store: HistoryStore, body: str) -> SessionController:
        async def scenario() -> SessionController:
            client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: _sse_response(body)))
            controller = SessionController(
                history=history_store,
                transport=SseTransport(client=client),
                stream=StreamConfig(base_url="http://runner.test"),
            )
            done = asyncio.Event()
            controller.status.subscribe(lambda status: done.set() if status is not RunStatus.RUNNING else None)
            controller.start("ping")
            await asyncio.wait_for(done.wait(), timeout=5)
            pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            await asyncio.gather(*pending, return_exceptions=True)
            await client.aclose()
            return controller

        return asyncio.run(scenario())

    def test_successful_run(self, history_store: HistoryStore):
        controller = self._run(history_store, "data: Hello\\u0020\n\ndata: World\n\ndata:  test is success\n\n")

        assert controller.status.get() is RunStatus.SUCCESS
        assert controller.messages.get()[0].content == CONNECTED_TEXT + "Hello World test is success"
        assert history_store.entries.get()[0].content == "ping"

    def test_stream_ending_without_verdict_fails(self, history_store: HistoryStore):
        controller = self._run(history_store, "data: still working\n\n")

        assert controller.status.get() is RunStatus.FAILURE
        assert controller.messages.get()[0].content.endswith("still workingError: Connection to server failed")
