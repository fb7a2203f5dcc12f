"""
MCP Adapter: connects agent runtimes to MCP tool servers.

Architecture:
    ┌──────────────┐  invoke()   ┌────────────┐  JSON-RPC  ┌─────────────┐
    │ Agent Runtime │ ─────────→ │ Dispatcher  │ ─────────→ │ Tool Server │
    │ (LangChain)  │ ←───────── │ + Registry  │ ←───────── │ (stdio/mem) │
    └──────────────┘  outcome    └────────────┘ Connection  └─────────────┘

Each server gets one Connection: a reader task demultiplexes responses by
correlation id and delivers notifications in order. The CapabilityNegotiator
agrees on a protocol version, the ToolRegistry holds the discovered tools,
the SchemaTranslator turns input schemas into agent tool definitions and
validates arguments, and the Dispatcher turns every call into exactly one
InvocationOutcome.

The ToolServerManager owns all of that per configured server, including
handshake retries and reconnects.
"""

from mcp_adapter.config import AdapterConfig, SecureValue, ServerConfig, load_config
from mcp_adapter.manager import ServerState, ToolServerManager
from mcp_adapter.outcome import (
    Disconnected,
    InvocationOutcome,
    ProtocolViolation,
    Success,
    Timeout,
    ToolError,
)
from mcp_adapter.schema import AgentToolDefinition
from mcp_adapter.server import ToolHandler, ToolServer
from mcp_adapter.transport import MemoryTransport, StdioTransport, Transport


# Bridge requires langchain; lazy import to keep servers standalone
def mcp_to_langchain_tool(*args, **kwargs):
    from mcp_adapter.bridge import mcp_to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def langchain_tools(*args, **kwargs):
    from mcp_adapter.bridge import langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "AdapterConfig",
    "AgentToolDefinition",
    "Disconnected",
    "InvocationOutcome",
    "MemoryTransport",
    "ProtocolViolation",
    "SecureValue",
    "ServerConfig",
    "ServerState",
    "StdioTransport",
    "Success",
    "Timeout",
    "ToolError",
    "ToolHandler",
    "ToolServer",
    "ToolServerManager",
    "Transport",
    "langchain_tools",
    "load_config",
    "mcp_to_langchain_tool",
]
