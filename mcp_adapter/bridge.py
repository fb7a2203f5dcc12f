"""
Bridge between the adapter and LangChain.

Each discovered tool becomes a LangChain StructuredTool whose coroutine
routes the call through ToolServerManager.invoke(). The tool's
args_schema is the translated JSON-Schema parameters object, so LangChain
binds it to any chat model as-is; argument validation happens in the
adapter, before the call reaches the server.

Usage:
    from mcp_adapter.bridge import langchain_tools

    tools = langchain_tools(manager)
    agent = create_react_agent(model, tools)
"""

from __future__ import annotations

from typing import Any

from langchain_core.tools import StructuredTool

from mcp_adapter.manager import ToolServerManager
from mcp_adapter.outcome import render
from mcp_adapter.schema import AgentToolDefinition


def mcp_to_langchain_tool(
    manager: ToolServerManager,
    definition: AgentToolDefinition,
    description_override: str | None = None,
    timeout: float | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that proxies one adapter tool.

    Args:
        manager: The running ToolServerManager
        definition: The agent tool definition (from manager.list_tools())
        description_override: Optional override for the tool description
        timeout: Per-call timeout; the server's default when None

    Returns:
        An async-only StructuredTool. Every outcome, including failures,
        is rendered to text for the model rather than raised.
    """

    async def _call_mcp(**kwargs: Any) -> str:
        outcome = await manager.invoke(definition.name, kwargs, timeout=timeout)
        return render(outcome)

    return StructuredTool(
        name=definition.name,
        description=description_override or definition.description,
        args_schema=definition.parameters,
        coroutine=_call_mcp,
    )


def langchain_tools(
    manager: ToolServerManager,
    timeout: float | None = None,
) -> list[StructuredTool]:
    """All currently discovered tools as LangChain tools, in listing order."""
    return [
        mcp_to_langchain_tool(manager, definition, timeout=timeout)
        for definition in manager.list_tools()
    ]


def prompt_instructions(definition: AgentToolDefinition) -> str:
    """Generate system-prompt instructions from an agent tool definition."""
    lines = [f"## Tool: {definition.name}", definition.description, ""]
    params = definition.parameters.get("properties", {})
    required = set(definition.parameters.get("required", []))
    if params:
        lines.append("Parameters:")
        for pname, pinfo in params.items():
            ptype = pinfo.get("type", "any")
            if isinstance(ptype, list):
                ptype = " | ".join(ptype)
            pdesc = pinfo.get("description", "")
            marker = "" if pname in required else ", optional"
            entry = f"  - {pname} ({ptype}{marker})"
            lines.append(f"{entry}: {pdesc}" if pdesc else entry)

    return "\n".join(lines)
