"""
mcp-adapter: connect to configured tool servers from the command line.

Usage:
    # List discovered tools
    mcp-adapter --config servers.yaml --list

    # Show the tools as OpenAI / Anthropic tool definitions
    mcp-adapter --config servers.yaml --list --format openai

    # Call a tool
    mcp-adapter --config servers.yaml --call search --args '{"query": "schema"}' --timeout 10
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from mcp_adapter.config import AdapterConfig, load_config
from mcp_adapter.manager import ToolServerManager
from mcp_adapter.outcome import Success, render

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-adapter",
        description="Connect to MCP tool servers, list their tools, and call them.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-adapter --config servers.yaml --list
  mcp-adapter --config servers.yaml --list --format anthropic
  mcp-adapter --config servers.yaml --call echo --args '{"message": "hi"}'
        """,
    )
    parser.add_argument("--config", "-c", type=str, required=True, help="YAML file with server definitions")
    parser.add_argument("--list", action="store_true", help="List discovered tools and exit")
    parser.add_argument("--format", "-f", choices=["text", "openai", "anthropic", "cohere"], default="text",
                        help="Output format for --list")
    parser.add_argument("--call", type=str, default=None, help="Tool to call")
    parser.add_argument("--args", type=str, default="{}", help="Tool arguments as a JSON object")
    parser.add_argument("--timeout", type=float, default=None, help="Per-call timeout in seconds")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    return parser


def print_tools(manager: ToolServerManager, fmt: str) -> None:
    definitions = manager.list_tools()
    if fmt == "openai":
        print(json.dumps([d.to_openai() for d in definitions], indent=2))
        return
    if fmt == "anthropic":
        print(json.dumps([d.to_anthropic() for d in definitions], indent=2))
        return
    if fmt == "cohere":
        print(json.dumps([d.to_cohere() for d in definitions], indent=2))
        return

    print(f"\nAvailable tools ({len(definitions)}):\n")
    for definition in definitions:
        params = ", ".join(definition.parameters.get("properties", {}))
        print(f"  {definition.name:<30} {definition.description} ({params or 'no parameters'})")
    states = manager.list_servers()
    print(f"\nServers: {', '.join(f'{sid}={state.value}' for sid, state in states.items())}")


async def run(config: AdapterConfig, args: argparse.Namespace) -> int:
    async with ToolServerManager(config) as manager:
        if args.list or not args.call:
            print_tools(manager, args.format)
            return 0

        arguments = json.loads(args.args)
        outcome = await manager.invoke(args.call, arguments, timeout=args.timeout)
        print(render(outcome))
        return 0 if isinstance(outcome, Success) else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s: %(message)s",
    )

    try:
        json.loads(args.args)
    except json.JSONDecodeError as e:
        parser.error(f"--args is not valid JSON: {e}")

    config = load_config(args.config)
    return asyncio.run(run(config, args))


if __name__ == "__main__":
    sys.exit(main())
