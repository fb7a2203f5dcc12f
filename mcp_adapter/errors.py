"""
Error taxonomy for the MCP adapter.

Lifecycle operations (connect, discover, resolve, translate) raise these
directly. The invocation path never lets them escape: the Dispatcher turns
each one into an InvocationOutcome variant before it reaches the agent.
"""

from __future__ import annotations

from typing import Any


class McpAdapterError(Exception):
    """Base class for every error raised by the adapter."""


class TransportError(McpAdapterError):
    """Connect/read/write failure on the underlying transport."""


class TransportClosed(TransportError):
    """The transport reached end-of-stream or was closed locally."""


class HandshakeError(McpAdapterError):
    """The capability handshake did not produce a session."""


class HandshakeTimeout(HandshakeError):
    """The server did not answer the handshake in time."""


class IncompatibleProtocol(HandshakeError):
    """Client and server share no protocol version."""

    def __init__(self, client_versions: list[str], server_versions: list[str]):
        self.client_versions = list(client_versions)
        self.server_versions = list(server_versions)
        super().__init__(
            f"No common protocol version (client={self.client_versions}, "
            f"server={self.server_versions})"
        )


class DiscoveryError(McpAdapterError):
    """Listing tools from a session failed."""


class DuplicateTool(McpAdapterError):
    """A tool name is already owned by another live session."""

    def __init__(self, name: str, owner: str | None = None):
        self.name = name
        self.owner = owner
        detail = f" (owned by {owner})" if owner else ""
        super().__init__(f"Duplicate tool: '{name}'{detail}")


class UnknownTool(McpAdapterError):
    """No live session exposes the requested tool."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: '{name}'")


class UnsupportedSchemaShape(McpAdapterError):
    """A tool schema uses a construct the agent format cannot express."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Unsupported schema at {path}: {reason}")


class ArgumentValidationError(McpAdapterError):
    """Model-produced arguments do not match the tool's input schema."""

    def __init__(self, path: str, reason: str, errors: list[dict[str, Any]] | None = None):
        self.path = path
        self.reason = reason
        self.errors = errors or []
        super().__init__(f"Invalid argument at {path}: {reason}")
