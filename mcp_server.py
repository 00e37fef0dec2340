"""MCP server bridge for the prompt runner.

This exposes the run controller and prompt history as tools so a coding
agent can:
- start a streamed run and poll its status and accumulated output
- stop the active run
- list, favorite and delete stored prompts

Transport: stdio (local-first), or HTTP SSE with --http.
"""
from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import anyio
import mcp.types as types
import uvicorn
from mcp.server import InitializationOptions, Server
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Mount, Route

from config import RunnerConfig, load_config
from console import build_controller, build_history
from run_types import HistoryView, StoredPrompt
from session_controller import SessionController

logger = logging.getLogger("prompt_runner_mcp")
logger.propagate = False
LOG_FILE = Path(__file__).with_name("mcp_server.log")

SERVER_NAME = "prompt-runner-mcp"


def _prompt_summary(entry: StoredPrompt) -> dict[str, Any]:
    return entry.to_dict()


def build_status_payload(controller: SessionController, tail_chars: Optional[int] = None) -> dict[str, Any]:
    """Compact view of the controller's read models."""
    message = controller.latest_message
    content = message.content if message else ""
    if tail_chars is not None and len(content) > tail_chars:
        content = content[-tail_chars:]
    return {
        "status": controller.status.get().value,
        "label": controller.status.get().label,
        "run_id": controller.run_id,
        "message_count": len(controller.messages.get()),
        "content": content,
        "is_complete": message.is_complete if message else False,
    }


def build_history_payload(view: HistoryView, favorites_only: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {"favorites": [_prompt_summary(p) for p in view.favorites]}
    if not favorites_only:
        payload["recent"] = [_prompt_summary(p) for p in view.recent]
    return payload


class PromptRunnerMCPServer:
    """Glue layer between MCP and the session controller."""

    def __init__(self, config: RunnerConfig) -> None:
        self.server = Server(SERVER_NAME, instructions="Run natural-language browser tests and manage prompts")
        self.history = build_history(config, logger=logger)
        self.controller = build_controller(config, self.history, logger=logger)
        self._register_handlers()

    def _register_handlers(self) -> None:
        @self.server.list_tools()
        async def list_tools() -> list[types.Tool]:
            return [
                types.Tool(
                    name="start_run",
                    description="Submit a prompt and start streaming its run (ignored while a run is active)",
                    inputSchema={
                        "type": "object",
                        "properties": {"prompt": {"type": "string"}},
                        "required": ["prompt"],
                    },
                ),
                types.Tool(
                    name="stop_run",
                    description="Stop the active run",
                    inputSchema={"type": "object", "properties": {}},
                ),
                types.Tool(
                    name="get_run_status",
                    description="Get status and accumulated output of the current run",
                    inputSchema={
                        "type": "object",
                        "properties": {"tail_chars": {"type": "integer"}},
                    },
                ),
                types.Tool(
                    name="list_prompts",
                    description="List stored prompts, favorites first",
                    inputSchema={
                        "type": "object",
                        "properties": {"favorites_only": {"type": "boolean"}},
                    },
                ),
                types.Tool(
                    name="toggle_favorite",
                    description="Toggle the favorite flag of a stored prompt",
                    inputSchema={"type": "object", "properties": {"id": {"type": "string"}}, "required": ["id"]},
                ),
                types.Tool(
                    name="delete_prompt",
                    description="Delete a stored prompt",
                    inputSchema={"type": "object", "properties": {"id": {"type": "string"}}, "required": ["id"]},
                ),
            ]

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
            def _wrap(payload: dict[str, Any]) -> list[types.TextContent]:
                return [types.TextContent(type="text", text=json.dumps(payload, indent=2))]

            logger.info("call_tool start: %s args=%s", name, arguments)
            try:
                payload = self.dispatch(name, arguments or {})
            except Exception as exc:
                logger.exception("Tool call failed: %s", name)
                payload = {"error": str(exc), "tool": name}

            logger.info("call_tool done: %s", name)
            return _wrap(payload)

    def dispatch(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        if name == "start_run":
            started = self.controller.start(str(arguments.get("prompt") or ""))
            payload = build_status_payload(self.controller)
            payload["started"] = started
            return payload
        if name == "stop_run":
            self.controller.stop()
            return build_status_payload(self.controller)
        if name == "get_run_status":
            tail = arguments.get("tail_chars")
            return build_status_payload(self.controller, int(tail) if tail is not None else None)
        if name == "list_prompts":
            return build_history_payload(self.history.list(), bool(arguments.get("favorites_only", False)))
        if name == "toggle_favorite":
            updated = self.history.toggle_favorite(self._require_id(arguments))
            if updated is None:
                return {"error": f"Prompt not found: {arguments['id']}"}
            return _prompt_summary(updated)
        if name == "delete_prompt":
            prompt_id = self._require_id(arguments)
            return {"id": prompt_id, "deleted": self.history.delete(prompt_id)}
        return {"error": f"Unknown tool: {name}"}

    @staticmethod
    def _require_id(arguments: dict[str, Any]) -> str:
        prompt_id = arguments.get("id")
        if not prompt_id:
            raise ValueError("id is required")
        return str(prompt_id)

    def initialization_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=SERVER_NAME,
            server_version="0.1.0",
            capabilities=self.server.get_capabilities(
                notification_options=self.server.notification_options,
                experimental_capabilities={},
            ),
            instructions=self.server.instructions,
        )

    async def serve_stdio(self) -> None:
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                initialization_options=self.initialization_options(),
            )

    async def serve_http(self, bind: str) -> None:
        host, port = bind.split(":")
        transport = SseServerTransport("/messages/")

        async def handle_sse(request):
            async with transport.connect_sse(request.scope, request.receive, request._send) as streams:
                await self.server.run(
                    streams[0],
                    streams[1],
                    initialization_options=self.initialization_options(),
                )
            return Response()

        async def handle_root(request):
            return Response("prompt-runner MCP server", media_type="text/plain")

        routes = [
            Route("/", endpoint=handle_root, methods=["GET"]),
            Route("/sse", endpoint=handle_sse, methods=["GET"]),
            Mount("/messages/", app=transport.handle_post_message),
        ]

        app = Starlette(routes=routes)
        logger.info("HTTP SSE server listening on http://%s:%s", host, port)
        config = uvicorn.Config(app, host=host, port=int(port), log_level="info")
        await uvicorn.Server(config).serve()


def _configure_file_logging() -> None:
    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"))
        # stdout belongs to the MCP stdio transport
        logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
        logger.handlers = [handler]
        logging.getLogger("anyio").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logger.info("MCP server logging to %s", LOG_FILE)
    except OSError:
        logger.exception("Failed to set up file logging")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Prompt runner MCP server (stdio or HTTP SSE)")
    parser.add_argument("--http", help="Run HTTP SSE server on host:port (e.g., 127.0.0.1:8765)")
    parser.add_argument("--config", help="Path to config file")
    args = parser.parse_args()

    _configure_file_logging()
    config = load_config(Path(args.config) if args.config else None)
    srv = PromptRunnerMCPServer(config)

    try:
        if args.http:
            anyio.run(srv.serve_http, args.http)
        else:
            anyio.run(srv.serve_stdio)
    except Exception:
        logger.exception("MCP server crashed")
        raise


if __name__ == "__main__":
    main()
