"""Shared fixtures: an in-process, test-driven fake tool server."""

import asyncio
import copy
import json

import pytest

from mcp_adapter.connection import Connection, InvocationRequest
from mcp_adapter.errors import TransportError
from mcp_adapter.negotiator import CapabilityNegotiator
from mcp_adapter.protocol import SUPPORTED_PROTOCOL_VERSIONS
from mcp_adapter.transport import MemoryTransport

SEARCH_TOOL = {
    "name": "search",
    "description": "Search documents",
    "inputSchema": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Text to look for"},
            "limit": {"type": "integer"},
        },
        "required": ["query"],
    },
}

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo a message",
    "inputSchema": {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    },
}


class ScriptedServer:
    """
    Fake tool server driven by the test.

    Answers initialize, tools/list and ping by itself. tools/call requests
    are queued so the test decides when (and how) each one is answered.
    """

    def __init__(
        self,
        transport,
        tools=None,
        versions=SUPPORTED_PROTOCOL_VERSIONS,
        advertise_versions=True,
        handshake=True,
        init_delay=0.0,
        init_reply=None,
        hold_list=False,
    ):
        self.transport = transport
        self.tools = copy.deepcopy(tools if tools is not None else [SEARCH_TOOL])
        self.pages = None
        self.versions = list(versions)
        self.advertise_versions = advertise_versions
        self.handshake = handshake
        self.init_delay = init_delay
        self.init_reply = init_reply
        self.hold_list = hold_list
        self.list_error = False
        self.received = []
        self.calls = asyncio.Queue()
        self.lists = asyncio.Queue()
        self._task = None

    def start(self):
        self._task = asyncio.create_task(self._loop())
        return self

    async def _loop(self):
        while True:
            try:
                frame = await self.transport.receive()
            except TransportError:
                return
            message = json.loads(frame)
            self.received.append(message)
            method = message.get("method")
            if method is None or "id" not in message:
                continue
            if method == "initialize":
                asyncio.create_task(self._initialize(message))
            elif method == "tools/list":
                if self.hold_list:
                    await self.lists.put(message)
                else:
                    await self.answer_list(message)
            elif method == "tools/call":
                await self.calls.put(message)
            elif method == "ping":
                await self.respond(message, {})
            else:
                await self.fail(message, -32601, f"Unknown method: {method}")

    async def _initialize(self, message):
        if not self.handshake:
            return
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_reply is not None:
            await self.send({"jsonrpc": "2.0", "id": message["id"], **self.init_reply})
            return
        result = {
            "protocolVersion": self.versions[-1],
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {"name": "scripted", "version": "1.0"},
        }
        if self.advertise_versions:
            result["supportedVersions"] = self.versions
        await self.respond(message, result)

    async def answer_list(self, message, tools=None):
        if self.list_error:
            await self.fail(message, -32603, "listing failed")
            return
        if tools is not None:
            await self.respond(message, {"tools": tools})
            return
        if self.pages is None:
            await self.respond(message, {"tools": self.tools})
            return
        index = int(message["params"].get("cursor") or 0)
        result = {"tools": self.pages[index]}
        if index + 1 < len(self.pages):
            result["nextCursor"] = str(index + 1)
        await self.respond(message, result)

    async def send(self, message):
        await self.transport.send(message if isinstance(message, str) else json.dumps(message))

    async def respond(self, request, result):
        await self.send({"jsonrpc": "2.0", "id": request["id"], "result": result})

    async def fail(self, request, code, message, **extra):
        await self.send({"jsonrpc": "2.0", "id": request["id"], "error": {"code": code, "message": message, **extra}})

    async def notify(self, method, params=None):
        await self.send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def next_call(self, timeout=1.0):
        return await asyncio.wait_for(self.calls.get(), timeout)

    async def disconnect(self):
        await self.transport.stop()

    def frames(self, method):
        return [m for m in self.received if m.get("method") == method]


async def eventually(predicate, timeout=1.0):
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def search_tool():
    return copy.deepcopy(SEARCH_TOOL)


@pytest.fixture
def echo_tool():
    return copy.deepcopy(ECHO_TOOL)


@pytest.fixture
def wait_until():
    return eventually


@pytest.fixture
def make_session():
    """Open a negotiated Connection to a ScriptedServer."""

    async def _make(
        server_id="srv",
        on_notification=None,
        on_disconnect=None,
        threshold=3,
        timeout=1.0,
        **server_options,
    ):
        client, server_end = MemoryTransport.pair()
        server = ScriptedServer(server_end, **server_options).start()
        connection = Connection(
            server_id,
            client,
            on_notification=on_notification,
            on_disconnect=on_disconnect,
            violation_threshold=threshold,
        )
        session = await connection.open(CapabilityNegotiator(timeout=timeout))
        return connection, session, server

    return _make


@pytest.fixture
def make_request():
    """Build an InvocationRequest with a deadline `timeout` seconds out."""

    def _make(connection, tool="search", arguments=None, timeout=5.0, on_progress=None):
        loop = asyncio.get_running_loop()
        return InvocationRequest(
            tool_name=tool,
            arguments=arguments if arguments is not None else {"query": "foo"},
            correlation_id=connection.next_id(),
            deadline=loop.time() + timeout,
            timeout=timeout,
            on_progress=on_progress,
        )

    return _make


@pytest.fixture
def scripted_factory():
    """
    Transport factory for ToolServerManager backed by ScriptedServers.

    Returns (factory, spawned); `overrides` maps a connect attempt index to
    server options for that attempt only.
    """

    def _factory(overrides=None, **options):
        spawned = []

        def factory():
            attempt_options = {**options, **(overrides or {}).get(len(spawned), {})}
            client, server_end = MemoryTransport.pair()
            spawned.append(ScriptedServer(server_end, **attempt_options).start())
            return client

        return factory, spawned

    return _factory


@pytest.fixture
def tool_server_factory():
    """Transport factory for ToolServerManager backed by real ToolServers."""

    def _factory(build):
        servers = []

        def factory():
            client, server_end = MemoryTransport.pair()
            server = build()
            servers.append(server)
            asyncio.create_task(server.serve(server_end))
            return client

        return factory, servers

    return _factory

