"""
Minimal MCP tool server.

Serves registered ToolHandlers over any Transport: stdin/stdout when run
as a subprocess, or a MemoryTransport end when embedded in the same event
loop as the adapter.

To create a tool server:

    from mcp_adapter.server import ToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }
        required = ["input"]

        async def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = ToolServer("my-server")
        server.register(MyTool())
        server.run_stdio()
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any

from mcp_adapter.errors import TransportClosed, TransportError
from mcp_adapter.protocol import (
    CALL_TOOL,
    INTERNAL_ERROR,
    LIST_TOOLS,
    METHOD_NOT_FOUND,
    NEGOTIATE,
    PARSE_ERROR,
    PING,
    SUPPORTED_PROTOCOL_VERSIONS,
    TOOLS_CHANGED,
    EnvelopeError,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    decode_message,
    select_version,
    version_key,
)
from mcp_adapter.transport import Transport

logger = logging.getLogger(__name__)


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    async def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given parameters.

        Returns:
            A JSON-serializable value. Strings become a single text
            content block; anything else is returned as JSON text plus
            structuredContent.
        """
        ...

    def get_schema(self) -> dict:
        """Return the tool schema for discovery."""
        schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


class ToolServer:
    """
    JSON-RPC tool server speaking the MCP subset the adapter uses.

    Protocol:
    - "initialize"  → protocol version + capabilities
    - "tools/list"  → registered tool schemas
    - "tools/call"  → calls a tool by name with arguments
    - "ping"        → health check
    - notifications are accepted and ignored
    """

    def __init__(self, name: str = "mcp-adapter-server", versions: tuple[str, ...] = SUPPORTED_PROTOCOL_VERSIONS):
        self.name = name
        self.versions = versions
        self._handlers: dict[str, ToolHandler] = {}
        self._transport: Transport | None = None
        self._tasks: set[asyncio.Task] = set()

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    async def announce_tools_changed(self) -> None:
        """Tell the connected client that the tool list changed."""
        if self._transport is not None:
            await self._transport.send(JsonRpcNotification(method=TOOLS_CHANGED).to_json())

    async def serve(self, transport: Transport) -> None:
        """
        Main loop: read frames, dispatch each request concurrently, write responses.

        Returns when the transport closes.
        """
        self._transport = transport
        logger.info(f"Tool server starting with {len(self._handlers)} tools: {list(self._handlers.keys())}")
        try:
            while True:
                try:
                    frame = await transport.receive()
                except TransportError:
                    break
                if not frame:
                    continue
                try:
                    message = decode_message(frame)
                except EnvelopeError as e:
                    await self._reply(JsonRpcResponse(id=None, error={"code": PARSE_ERROR, "message": str(e)}))
                    continue
                if isinstance(message, JsonRpcRequest):
                    task = asyncio.create_task(self._handle(message))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
        finally:
            for task in self._tasks:
                task.cancel()
            self._transport = None

    async def _handle(self, request: JsonRpcRequest) -> None:
        try:
            result = await self._dispatch(request.method, request.params)
            response = JsonRpcResponse(id=request.id, result=result)
        except LookupError as e:
            response = JsonRpcResponse(id=request.id, error={"code": METHOD_NOT_FOUND, "message": str(e)})
        except Exception as e:
            logger.exception(f"Request {request.method} failed")
            response = JsonRpcResponse(id=request.id, error={"code": INTERNAL_ERROR, "message": str(e)})
        await self._reply(response)

    async def _reply(self, response: JsonRpcResponse) -> None:
        if self._transport is None:
            return
        try:
            await self._transport.send(response.to_json())
        except TransportError as e:
            logger.debug(f"Could not send response {response.id}: {e}")

    async def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == NEGOTIATE:
            offered = params.get("supportedVersions") or [params.get("protocolVersion")]
            version = select_version(self.versions, [v for v in offered if isinstance(v, str)])
            return {
                "protocolVersion": version or max(self.versions, key=version_key),
                "supportedVersions": list(self.versions),
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": {"name": self.name, "version": "0.1.0"},
            }

        if method == PING:
            return {}

        if method == LIST_TOOLS:
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == CALL_TOOL:
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if not handler:
                raise LookupError(
                    f"Unknown tool: '{tool_name}'. "
                    f"Available: {list(self._handlers.keys())}"
                )
            try:
                value = await handler.handle(params.get("arguments") or {})
            except Exception as e:
                return {"content": [{"type": "text", "text": str(e)}], "isError": True}
            if isinstance(value, str):
                return {"content": [{"type": "text", "text": value}]}
            return {
                "content": [{"type": "text", "text": json.dumps(value)}],
                "structuredContent": value,
            }

        raise LookupError(f"Unknown method: '{method}'")

    def run_stdio(self) -> None:
        """Serve over this process's stdin/stdout until stdin closes."""
        logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s: %(message)s")
        asyncio.run(self.serve(_ProcessStdio()))


class _ProcessStdio(Transport):
    """The current process's own stdin/stdout as a transport."""

    def __init__(self):
        self._reader: asyncio.StreamReader | None = None
        self._alive = False

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._reader = asyncio.StreamReader(limit=16 * 1024 * 1024)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(self._reader), sys.stdin)
        self._alive = True

    async def stop(self) -> None:
        self._alive = False

    def is_alive(self) -> bool:
        return self._alive

    async def send(self, frame: str) -> None:
        sys.stdout.write(frame + "\n")
        sys.stdout.flush()

    async def receive(self) -> str:
        if self._reader is None:
            await self.start()
        line = await self._reader.readline()
        if not line:
            self._alive = False
            raise TransportClosed("stdin closed")
        return line.decode().strip()
