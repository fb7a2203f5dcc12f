"""
Invocation outcomes and the result normalizer.

Every call the agent makes resolves to exactly one of five variants:

    Success(payload)                  the server's raw result, unchanged
    ToolError(code, message, details) server-reported or caller-input failure
    Timeout()                         the deadline expired before any response
    Disconnected()                    the connection was lost
    ProtocolViolation(reason)         the response did not fit the envelope

No other shape, and no exception, crosses the adapter boundary.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from mcp_adapter.protocol import TOOL_EXECUTION_ERROR, JsonRpcResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    payload: Any
    partials: tuple[dict[str, Any], ...] = ()
    ok = True


@dataclass(frozen=True)
class ToolError:
    code: int
    message: str
    details: Any = None
    ok = False


@dataclass(frozen=True)
class Timeout:
    timeout: float | None = None
    ok = False


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""
    ok = False


@dataclass(frozen=True)
class ProtocolViolation:
    reason: str
    ok = False


InvocationOutcome = Union[Success, ToolError, Timeout, Disconnected, ProtocolViolation]


def _is_structured_error(error: Any) -> bool:
    return (
        isinstance(error, dict)
        and isinstance(error.get("code"), int)
        and not isinstance(error.get("code"), bool)
        and isinstance(error.get("message"), str)
    )


def _text_content(result: dict[str, Any]) -> str:
    content = result.get("content")
    if not isinstance(content, list):
        return ""
    texts = [
        item["text"] for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
    ]
    return "\n".join(texts)


def normalize_response(
    response: JsonRpcResponse,
    partials: tuple[dict[str, Any], ...] = (),
) -> InvocationOutcome:
    """Map a correlated response envelope to an outcome."""
    raw = response.raw
    has_result = "result" in raw
    has_error = "error" in raw

    if has_result == has_error:
        return ProtocolViolation(
            "response carries both result and error" if has_result
            else "response carries neither result nor error"
        )

    if has_error:
        error = raw["error"]
        if not _is_structured_error(error):
            return ProtocolViolation(f"malformed error object: {error!r}")
        details = error["details"] if "details" in error else error.get("data")
        return ToolError(code=error["code"], message=error["message"], details=details)

    result = raw["result"]
    if isinstance(result, dict) and result.get("isError") is True:
        message = _text_content(result) or "Tool reported an error"
        return ToolError(code=TOOL_EXECUTION_ERROR, message=message, details=result)
    return Success(payload=result, partials=partials)


def render(outcome: InvocationOutcome) -> str:
    """Plain-text rendering of an outcome for an agent's tool message."""
    if isinstance(outcome, Success):
        payload = outcome.payload
        if isinstance(payload, dict):
            text = _text_content(payload)
            if text and "structuredContent" not in payload:
                return text
        if isinstance(payload, str):
            return payload
        return json.dumps(payload, indent=2, default=str)
    if isinstance(outcome, ToolError):
        return f"Error {outcome.code}: {outcome.message}"
    if isinstance(outcome, Timeout):
        return "Error: tool call timed out"
    if isinstance(outcome, Disconnected):
        return f"Error: tool server disconnected{': ' + outcome.reason if outcome.reason else ''}"
    if isinstance(outcome, ProtocolViolation):
        return f"Error: malformed response from tool server ({outcome.reason})"
    raise TypeError(f"Not an invocation outcome: {outcome!r}")
