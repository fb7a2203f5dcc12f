"""
Tool Server Manager: the adapter's front door.

The manager owns one Connection per configured tool server, runs the
negotiate → discover sequence on connect and reconnect, and exposes the
two operations an agent needs:

    definitions = manager.list_tools()              # agent tool definitions
    outcome = await manager.invoke("search", {"query": "foo"}, timeout=10)

Usage:
    config = load_config("servers.yaml")
    async with ToolServerManager(config) as manager:
        for tool in manager.list_tools():
            print(tool.to_openai())
        outcome = await manager.invoke("echo", {"message": "hi"})
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_adapter.config import AdapterConfig, ServerConfig
from mcp_adapter.connection import Connection, ProgressHandler
from mcp_adapter.dispatcher import Dispatcher
from mcp_adapter.errors import (
    DiscoveryError,
    DuplicateTool,
    HandshakeError,
    HandshakeTimeout,
    McpAdapterError,
    TransportError,
    UnsupportedSchemaShape,
)
from mcp_adapter.negotiator import CapabilityNegotiator, ServerSession
from mcp_adapter.outcome import Disconnected, InvocationOutcome, Timeout
from mcp_adapter.protocol import PING, TOOLS_CHANGED, JsonRpcNotification
from mcp_adapter.registry import ToolDescriptor, ToolRegistry
from mcp_adapter.schema import AgentToolDefinition
from mcp_adapter.transport import StdioTransport, Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]


class ServerState(enum.Enum):
    REGISTERED = "registered"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(eq=False)
class _ManagedServer:
    config: ServerConfig
    transport_factory: TransportFactory
    state: ServerState = ServerState.REGISTERED
    connection: Connection | None = None
    session: ServerSession | None = None
    known_tools: set[str] = field(default_factory=set)
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    reconnect_task: asyncio.Task | None = None
    last_error: str | None = None


class ToolServerManager:
    """
    Manages tool server connections and routes tool calls to them.

    Responsibilities:
    - Connect (with bounded handshake retry) and discover tools
    - Keep the Tool Registry in step with connects, disconnects and
      tools-changed notifications
    - Reconnect when configured, holding or failing calls meanwhile
    - Provide agent tool definitions and a never-raising invoke()
    """

    def __init__(self, config: AdapterConfig | None = None):
        self.config = config or AdapterConfig()
        self.registry = ToolRegistry()
        self.dispatcher = Dispatcher(self.registry, self.config)
        self._servers: dict[str, _ManagedServer] = {}
        for server in list(self.config.servers):
            self.register_server(server)

    # ── Registration ───────────────────────────────────────

    def register_server(
        self,
        server: ServerConfig,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        """
        Register a tool server (does not start it yet).

        Args:
            server: The server's configuration.
            transport_factory: Builds a fresh transport for every connect
                attempt. Defaults to a StdioTransport over `server.command`.
        """
        if transport_factory is None:
            if not server.command:
                raise ValueError(f"Server {server.server_id} has no command and no transport factory")
            transport_factory = lambda: StdioTransport(server.command, server.env)  # noqa: E731

        if self.config.server(server.server_id) is None:
            self.config.servers.append(server)
        self._servers[server.server_id] = _ManagedServer(config=server, transport_factory=transport_factory)
        logger.info(f"Registered server: {server.server_id}")

    def _get(self, server_id: str) -> _ManagedServer:
        server = self._servers.get(server_id)
        if server is None:
            raise ValueError(f"Unknown server: {server_id}")
        return server

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self, server_id: str) -> list[ToolDescriptor]:
        """
        Connect to a tool server and discover its tools.

        Raises:
            TransportError, HandshakeError: the server could not be negotiated.
            DiscoveryError, DuplicateTool: its catalog could not be registered.
        """
        server = self._get(server_id)
        if server.state is ServerState.READY and server.session is not None and server.session.is_live:
            return self.registry.tools_for(server.session)

        server.state = ServerState.CONNECTING
        server.settled.clear()
        try:
            return await self._connect_and_discover(server)
        except McpAdapterError as e:
            server.state = ServerState.FAILED
            server.last_error = str(e)
            raise
        finally:
            server.settled.set()

    async def start_all(self) -> dict[str, list[ToolDescriptor]]:
        """Start all registered servers. Failures are logged, not raised."""
        results = {}
        for server_id in self._servers:
            try:
                results[server_id] = await self.start(server_id)
            except McpAdapterError as e:
                logger.error(f"Failed to start {server_id}: {e}")
                results[server_id] = []
        return results

    async def _open(self, server: _ManagedServer) -> tuple[Connection, ServerSession]:
        """Open a connection, retrying the handshake with backoff."""
        config = server.config
        attempts = config.handshake_retries + 1
        delay = config.handshake_backoff

        for attempt in range(1, attempts + 1):
            connection = Connection(
                config.server_id,
                server.transport_factory(),
                on_notification=self._on_notification,
                on_disconnect=self._on_disconnect,
                violation_threshold=config.protocol_violation_threshold,
            )
            negotiator = CapabilityNegotiator(
                client_versions=self.config.protocol_versions,
                client_name=self.config.client_name,
                client_version=self.config.client_version,
                timeout=config.handshake_timeout,
            )
            # Claim the server before the handshake so disconnect callbacks match it
            server.connection = connection
            try:
                session = await connection.open(negotiator)
                return connection, session
            except (TransportError, HandshakeTimeout) as e:
                server.connection = None
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Handshake with {config.server_id} failed (attempt {attempt}/{attempts}): {e}; "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                delay *= 2
            except HandshakeError:
                server.connection = None
                raise
        raise AssertionError("unreachable")

    async def _connect_and_discover(self, server: _ManagedServer) -> list[ToolDescriptor]:
        connection, session = await self._open(server)
        try:
            descriptors = await self.registry.discover(session, namespace=server.config.namespace_tools)
        except (DiscoveryError, DuplicateTool):
            server.connection = None
            await connection.close()
            raise

        server.session = session
        server.known_tools = {d.name for d in descriptors}
        server.state = ServerState.READY
        server.last_error = None
        logger.info(f"Started {server.config.server_id}: tools={sorted(server.known_tools)}")
        return descriptors

    def _drop_session(self, server: _ManagedServer) -> None:
        if server.session is not None:
            self.registry.invalidate(server.session)
            self.dispatcher.forget(server.session)
        server.session = None
        server.connection = None

    async def stop(self, server_id: str) -> None:
        """Close a server's connection and remove its tools."""
        server = self._get(server_id)
        if server.reconnect_task is not None:
            server.reconnect_task.cancel()
            server.reconnect_task = None
        connection = server.connection
        self._drop_session(server)
        server.known_tools = set()
        server.state = ServerState.STOPPED
        server.settled.set()
        if connection is not None:
            await connection.close()
            logger.info(f"Stopped {server_id}")

    async def stop_all(self) -> None:
        """Stop all servers."""
        for server_id in list(self._servers.keys()):
            await self.stop(server_id)

    async def __aenter__(self) -> "ToolServerManager":
        await self.start_all()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop_all()

    # ── Connection events ──────────────────────────────────

    def _server_for(self, connection: Connection) -> _ManagedServer | None:
        for server in self._servers.values():
            if server.connection is connection:
                return server
        return None

    async def _on_disconnect(self, connection: Connection, reason: str) -> None:
        server = self._server_for(connection)
        if server is None or server.state is not ServerState.READY:
            return
        self._drop_session(server)
        server.last_error = reason

        if server.config.reconnect:
            server.state = ServerState.RECONNECTING
            server.settled.clear()
            server.reconnect_task = asyncio.create_task(
                self._reconnect(server), name=f"mcp-reconnect-{server.config.server_id}"
            )
        else:
            server.state = ServerState.FAILED
            logger.error(f"{server.config.server_id} disconnected: {reason}")

    async def _reconnect(self, server: _ManagedServer) -> None:
        server_id = server.config.server_id
        logger.info(f"Reconnecting {server_id}")
        try:
            await self._connect_and_discover(server)
        except McpAdapterError as e:
            server.state = ServerState.FAILED
            server.last_error = str(e)
            logger.error(f"Reconnect of {server_id} failed: {e}")
        finally:
            server.reconnect_task = None
            server.settled.set()

    async def _on_notification(self, connection: Connection, notification: JsonRpcNotification) -> None:
        if notification.method != TOOLS_CHANGED:
            logger.debug(f"{connection.server_id}: unhandled notification {notification.method}")
            return
        server = self._server_for(connection)
        if server is None or server.session is None:
            return
        logger.info(f"{connection.server_id}: tool list changed, re-discovering")
        await self._rediscover(server)

    async def _rediscover(self, server: _ManagedServer) -> list[ToolDescriptor]:
        try:
            descriptors = await self.registry.discover(server.session, namespace=server.config.namespace_tools)
        except (DiscoveryError, DuplicateTool) as e:
            logger.warning(f"Re-discovery of {server.config.server_id} failed, keeping prior catalog: {e}")
            return self.registry.tools_for(server.session)
        server.known_tools = {d.name for d in descriptors}
        return descriptors

    async def refresh(self, server_id: str) -> list[ToolDescriptor]:
        """Re-discover a running server's tools."""
        server = self._get(server_id)
        if server.session is None or not server.session.is_live:
            raise DiscoveryError(f"Server {server_id} is not running")
        return await self._rediscover(server)

    async def ping(self, server_id: str, timeout: float | None = None) -> bool:
        """Health check a running server."""
        server = self._servers.get(server_id)
        if server is None or server.connection is None or not server.connection.is_open:
            return False
        try:
            response = await server.connection.request(PING, {}, timeout=timeout or server.config.call_timeout)
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Ping to {server_id} failed: {e}")
            return False
        return not response.is_error

    # ── Agent-facing operations ────────────────────────────

    def list_tools(self) -> list[AgentToolDefinition]:
        """Agent tool definitions, by discovery order then tool name."""
        definitions = []
        for descriptor in self.registry.descriptors():
            translator = self.dispatcher.translator(descriptor.server_id)
            try:
                definitions.append(translator.to_agent_definition(
                    descriptor, hidden=self.dispatcher.hidden_arguments(descriptor.server_id)
                ))
            except UnsupportedSchemaShape as e:
                logger.warning(f"Skipping tool '{descriptor.name}': {e}")
        return definitions

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
        on_progress: ProgressHandler | None = None,
    ) -> InvocationOutcome:
        """Call a tool by its agent-facing name. Always returns an outcome."""
        if name not in self.registry:
            gated = await self._wait_for_owner(name, timeout)
            if gated is not None:
                outcome, timeout = gated
                if outcome is not None:
                    return outcome
        return await self.dispatcher.invoke(name, arguments, timeout=timeout, on_progress=on_progress)

    async def _wait_for_owner(
        self,
        name: str,
        timeout: float | None,
    ) -> tuple[InvocationOutcome | None, float | None] | None:
        """Hold or fail a call whose server is reconnecting or lost.

        Returns None when no server claims `name`; otherwise an outcome to
        return immediately, or None plus the remaining timeout to proceed.
        """
        server = next((s for s in self._servers.values() if name in s.known_tools), None)
        if server is None:
            return None
        server_id = server.config.server_id

        if server.state is ServerState.RECONNECTING:
            if not server.config.queue_during_reconnect:
                return Disconnected(f"{server_id} is reconnecting"), timeout
            loop = asyncio.get_running_loop()
            allowance = min(server.config.call_timeout if timeout is None else timeout, self.config.max_call_timeout)
            started = loop.time()
            try:
                await asyncio.wait_for(server.settled.wait(), timeout=allowance)
            except asyncio.TimeoutError:
                return Timeout(allowance), timeout
            remaining = allowance - (loop.time() - started)
            if server.state is not ServerState.READY:
                return Disconnected(f"{server_id}: {server.last_error or 'reconnect failed'}"), timeout
            return None, remaining

        if server.state is ServerState.FAILED:
            return Disconnected(f"{server_id}: {server.last_error or 'disconnected'}"), timeout
        return None

    # ── Introspection ──────────────────────────────────────

    def list_servers(self) -> dict[str, ServerState]:
        """All servers and their connection state."""
        return {sid: s.state for sid, s in self._servers.items()}

    def is_running(self, server_id: str) -> bool:
        """Check if a specific server is connected and negotiated."""
        server = self._servers.get(server_id)
        return server is not None and server.session is not None and server.session.is_live

    def session(self, server_id: str) -> ServerSession | None:
        server = self._servers.get(server_id)
        return server.session if server else None
