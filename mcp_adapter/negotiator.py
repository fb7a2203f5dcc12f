"""
Capability negotiation: the handshake that turns an open connection into a
ServerSession.

    Unconnected -> Negotiating -> Negotiated   (session produced)
                              \\-> Failed       (no session, connection closed)

A negotiator is single-use. Reconnects build a fresh one so nothing from a
previous attempt leaks into the next.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from mcp_adapter.errors import HandshakeError, HandshakeTimeout, IncompatibleProtocol, TransportError
from mcp_adapter.protocol import (
    INITIALIZED,
    NEGOTIATE,
    SUPPORTED_PROTOCOL_VERSIONS,
    select_version,
    version_key,
)

if TYPE_CHECKING:
    from mcp_adapter.connection import Connection

logger = logging.getLogger(__name__)


class NegotiationState(enum.Enum):
    UNCONNECTED = "unconnected"
    NEGOTIATING = "negotiating"
    NEGOTIATED = "negotiated"
    FAILED = "failed"


@dataclass(eq=False)
class ServerSession:
    """A negotiated channel to one tool server.

    Only the negotiator creates sessions, and only on success. The session
    dies with its connection; `is_live` turns False on disconnect or close.
    """

    server_id: str
    protocol_version: str
    capabilities: frozenset[str]
    connection: "Connection" = field(repr=False)
    server_info: dict[str, Any] = field(default_factory=dict)
    instructions: str | None = None
    session_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def is_live(self) -> bool:
        return self.connection.session is self and self.connection.is_open

    def supports(self, flag: str) -> bool:
        return flag in self.capabilities


def parse_capabilities(capabilities: Any) -> frozenset[str]:
    """Flatten a capabilities object into feature flags.

    {"tools": {"listChanged": true}, "logging": {}}
        -> {"tools", "tools.listChanged", "logging"}
    """
    if not isinstance(capabilities, dict):
        return frozenset()
    flags: set[str] = set()
    for name, value in capabilities.items():
        flags.add(name)
        if isinstance(value, dict):
            flags.update(f"{name}.{sub}" for sub, enabled in value.items() if enabled is True)
    return frozenset(flags)


class CapabilityNegotiator:
    """Runs the initialize handshake once on one connection."""

    def __init__(
        self,
        client_versions: list[str] | tuple[str, ...] = SUPPORTED_PROTOCOL_VERSIONS,
        client_name: str = "mcp-adapter",
        client_version: str = "0.1.0",
        timeout: float = 10.0,
    ):
        if not client_versions:
            raise ValueError("At least one client protocol version is required")
        self.client_versions = list(client_versions)
        self.client_name = client_name
        self.client_version = client_version
        self.timeout = timeout
        self.state = NegotiationState.UNCONNECTED

    def _handshake_params(self) -> dict[str, Any]:
        ordered = sorted(self.client_versions, key=version_key)
        return {
            "protocolVersion": ordered[-1],
            "supportedVersions": ordered,
            "capabilities": {},
            "clientInfo": {"name": self.client_name, "version": self.client_version},
        }

    def _fail(self, error: Exception) -> Exception:
        self.state = NegotiationState.FAILED
        return error

    async def negotiate(self, connection: "Connection") -> ServerSession:
        """Perform the handshake and return the resulting session.

        Raises:
            HandshakeTimeout: no answer within `timeout`.
            IncompatibleProtocol: no common protocol version.
            HandshakeError: the server rejected or garbled the handshake.
            TransportError: the transport failed mid-handshake.
        """
        if self.state is not NegotiationState.UNCONNECTED:
            raise RuntimeError(f"Negotiator already used (state={self.state.value})")
        self.state = NegotiationState.NEGOTIATING
        server_id = connection.server_id

        try:
            response = await connection.request(NEGOTIATE, self._handshake_params(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise self._fail(HandshakeTimeout(
                f"{server_id}: no handshake response within {self.timeout}s"
            )) from None
        except TransportError as e:
            raise self._fail(e)

        if response.is_error:
            raise self._fail(HandshakeError(f"{server_id}: server rejected initialize: {response.error}"))

        result = response.result
        if not isinstance(result, dict) or not isinstance(result.get("protocolVersion"), str):
            raise self._fail(HandshakeError(f"{server_id}: malformed initialize result: {result!r}"))

        offered = result.get("supportedVersions")
        if not isinstance(offered, list) or not all(isinstance(v, str) for v in offered) or not offered:
            offered = [result["protocolVersion"]]

        version = select_version(self.client_versions, offered)
        if version is None:
            raise self._fail(IncompatibleProtocol(self.client_versions, offered))

        try:
            await connection.notify(INITIALIZED, {})
        except TransportError as e:
            raise self._fail(e)

        server_info = result.get("serverInfo")
        instructions = result.get("instructions")
        session = ServerSession(
            server_id=server_id,
            protocol_version=version,
            capabilities=parse_capabilities(result.get("capabilities")),
            connection=connection,
            server_info=server_info if isinstance(server_info, dict) else {},
            instructions=instructions if isinstance(instructions, str) else None,
        )
        self.state = NegotiationState.NEGOTIATED
        logger.info(
            f"Negotiated {server_id}: protocol={version} "
            f"capabilities={sorted(session.capabilities)} server={session.server_info}"
        )
        return session
