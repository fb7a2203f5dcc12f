"""
Echo MCP Tool Server: minimal reference implementation.

Use this as a template for building new tool servers.
It implements an echo tool and a toy search tool, useful for
exercising the adapter end to end.

Launch:
    python -m mcp_adapter.servers.echo

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":1}' | python -m mcp_adapter.servers.echo
"""

from mcp_adapter.server import ToolHandler, ToolServer

DOCUMENTS = [
    "The adapter negotiates a protocol version before discovering tools.",
    "Tool calls are validated against the input schema before they are sent.",
    "Each server connection has its own concurrency limit.",
    "A lost connection resolves every pending call as disconnected.",
]


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }
    required = ["message"]

    async def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class SearchTool(ToolHandler):
    name = "search"
    description = "Case-insensitive substring search over a small built-in document set."
    parameters = {
        "query": {"type": "string", "description": "Text to look for"},
        "limit": {"type": "integer", "minimum": 1, "description": "Maximum number of hits"},
    }
    required = ["query"]

    async def handle(self, params: dict) -> dict:
        query = params["query"].lower()
        hits = [doc for doc in DOCUMENTS if query in doc.lower()]
        limit = params.get("limit")
        if limit is not None:
            hits = hits[:limit]
        return {"query": params["query"], "hits": hits}


def build_server() -> ToolServer:
    server = ToolServer("echo")
    server.register(EchoTool())
    server.register(SearchTool())
    return server


if __name__ == "__main__":
    build_server().run_stdio()
