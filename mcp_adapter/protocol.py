"""
Wire envelopes for MCP over JSON-RPC 2.0.

Three shapes travel on a connection:
  - requests      {"id", "method", "params"}      (correlated by id)
  - responses     {"id", "result" | "error"}
  - notifications {"method", "params"}            (no id)

Framing (newline-delimited, length-prefixed, ...) belongs to the transport;
this module only encodes and classifies decoded frames.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

# Logical method -> MCP method name
NEGOTIATE = "initialize"
INITIALIZED = "notifications/initialized"
LIST_TOOLS = "tools/list"
CALL_TOOL = "tools/call"
PING = "ping"
TOOLS_CHANGED = "notifications/tools/list_changed"
CANCELLED = "notifications/cancelled"
PROGRESS = "notifications/progress"

# Newest last
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
TOOL_EXECUTION_ERROR = -32000


class EnvelopeError(ValueError):
    """A frame that cannot be read as any known envelope."""


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: int | str

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
            "id": self.id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (a request without an id)."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "method": self.method, "params": self.params}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response. `raw` keeps the decoded frame for normalization."""
    id: int | str | None
    result: Any = None
    error: Any = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        message = decode_message(data)
        if not isinstance(message, JsonRpcResponse):
            raise EnvelopeError(f"Expected a response, got {type(message).__name__}")
        return message

    @property
    def is_error(self) -> bool:
        return "error" in self.raw

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"jsonrpc": "2.0", "id": self.id}
        if self.error is not None:
            body["error"] = self.error
        else:
            body["result"] = self.result
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


Message = JsonRpcRequest | JsonRpcNotification | JsonRpcResponse


def decode_message(data: str | bytes) -> Message:
    """Classify one decoded frame by envelope shape.

    Raises:
        EnvelopeError: the frame is not JSON, not an object, or matches no shape.
    """
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EnvelopeError(f"Undecodable frame: {e}") from e
    except RecursionError as e:
        raise EnvelopeError("Frame is nested too deeply") from e

    if not isinstance(parsed, dict):
        raise EnvelopeError(f"Frame is not an object: {type(parsed).__name__}")

    method = parsed.get("method")
    has_id = parsed.get("id") is not None

    if isinstance(method, str):
        params = parsed.get("params") or {}
        if not isinstance(params, dict):
            raise EnvelopeError(f"params of '{method}' is not an object")
        if has_id:
            return JsonRpcRequest(method=method, params=params, id=parsed["id"])
        return JsonRpcNotification(method=method, params=params)

    if "result" in parsed or "error" in parsed or has_id:
        return JsonRpcResponse(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
            raw=parsed,
        )

    raise EnvelopeError("Frame has neither a method nor an id")


def version_key(version: str) -> tuple[int, ...]:
    """Order protocol versions by their numeric components.

    "2025-06-18" -> (2025, 6, 18); "1.10" -> (1, 10).
    """
    parts = re.findall(r"\d+", version)
    if not parts:
        raise ValueError(f"Protocol version has no numeric part: {version!r}")
    return tuple(int(p) for p in parts)


def select_version(client: Iterable[str], server: Iterable[str]) -> str | None:
    """Highest version both sides support, or None."""
    common = set(client) & set(server)
    if not common:
        return None
    return max(common, key=version_key)
