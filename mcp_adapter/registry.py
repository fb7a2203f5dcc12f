"""
Tool Registry: the adapter's catalog of callable tools.

Maps a globally unique tool name to the descriptor that owns it and tracks
which session owns which names. Two rules keep the map honest:

  * a name belongs to at most one live session; a second server exposing
    the same name is rejected with DuplicateTool unless tools are
    namespaced ("<server_id>__<tool>")
  * descriptors never outlive their session; invalidate() removes them
    synchronously, so a resolve() after invalidate() cannot see them

Writers (discover/invalidate) swap in a new map; readers never wait on
them. Discovery for one session is serialized by a per-session lock, and
network I/O happens outside any shared critical section.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any

from mcp_adapter.errors import DiscoveryError, DuplicateTool, TransportError, UnknownTool
from mcp_adapter.negotiator import ServerSession
from mcp_adapter.protocol import LIST_TOOLS

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "__"
MAX_PAGES = 100


def schema_hash(schema: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a schema."""
    return hashlib.sha256(json.dumps(schema, sort_keys=True, default=str).encode()).hexdigest()


@dataclass(frozen=True)
class ToolDescriptor:
    """A tool discovered on one session.

    `name` is the registry-wide name (possibly namespaced); `remote_name` is
    what the server calls it. The session is held weakly: a descriptor does
    not keep its session alive.
    """

    name: str
    remote_name: str
    server_id: str
    session_id: str
    input_schema: dict[str, Any]
    description: str = ""
    output_schema: dict[str, Any] | None = None
    annotations: dict[str, Any] | None = None
    schema_hash: str = ""
    _session_ref: Any = field(default=None, repr=False, compare=False)

    @property
    def session(self) -> ServerSession | None:
        return self._session_ref() if self._session_ref is not None else None


class ToolRegistry:
    """Name → ToolDescriptor map with explicit session ownership."""

    def __init__(self, namespace_tools: bool = False, discovery_timeout: float = 30.0):
        self.namespace_tools = namespace_tools
        self.discovery_timeout = discovery_timeout
        self._tools: dict[str, ToolDescriptor] = {}
        self._owners: dict[str, str] = {}          # tool name -> session id
        self._order: dict[str, int] = {}           # session id -> discovery order
        self._generation: dict[str, int] = {}      # session id -> invalidation count
        self._locks: dict[str, asyncio.Lock] = {}
        self._sequence = itertools.count()

    # ── Reads ──────────────────────────────────────────────

    def resolve(self, name: str) -> ToolDescriptor:
        """Return the live descriptor for `name` or raise UnknownTool."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownTool(name)
        session = descriptor.session
        if session is None or not session.is_live:
            raise UnknownTool(name)
        return descriptor

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        """All descriptors, by session discovery order then tool name."""
        tools = self._tools
        order = self._order
        return sorted(tools.values(), key=lambda d: (order.get(d.session_id, 0), d.name))

    def tools_for(self, session: ServerSession) -> list[ToolDescriptor]:
        return [d for d in self.descriptors() if d.session_id == session.session_id]

    def owner(self, name: str) -> str | None:
        """Session id owning `name`, if any."""
        return self._owners.get(name)

    # ── Writes ─────────────────────────────────────────────

    async def discover(self, session: ServerSession, namespace: bool | None = None) -> list[ToolDescriptor]:
        """Fetch the session's tool catalog and (re)register it.

        Re-discovering a session replaces its previous descriptors. On any
        failure the previous catalog for the session stays in place.

        Raises:
            DiscoveryError: listing failed, was malformed, or the session died.
            DuplicateTool: a name is owned by another live session.
        """
        namespace = self.namespace_tools if namespace is None else namespace
        session_id = session.session_id
        lock = self._locks.setdefault(session_id, asyncio.Lock())

        async with lock:
            generation = self._generation.get(session_id, 0)
            if not session.is_live:
                raise DiscoveryError(f"{session.server_id}: session is not live")

            raw_tools = await self._fetch(session)
            descriptors = self._build(session, raw_tools, namespace)

            if not session.is_live or self._generation.get(session_id, 0) != generation:
                raise DiscoveryError(f"{session.server_id}: session invalidated during discovery")
            self._commit(session, descriptors)

        logger.info(f"Discovered {session.server_id}: tools={[d.name for d in descriptors]}")
        return descriptors

    async def _fetch(self, session: ServerSession) -> list[Any]:
        tools: list[Any] = []
        cursor: str | None = None
        seen_cursors: set[str] = set()

        for _ in range(MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            try:
                response = await session.connection.request(LIST_TOOLS, params, timeout=self.discovery_timeout)
            except asyncio.TimeoutError:
                raise DiscoveryError(
                    f"{session.server_id}: tools/list timed out after {self.discovery_timeout}s"
                ) from None
            except TransportError as e:
                raise DiscoveryError(f"{session.server_id}: tools/list failed: {e}") from e

            if response.is_error:
                raise DiscoveryError(f"{session.server_id}: tools/list returned error: {response.error}")
            result = response.result
            if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
                raise DiscoveryError(f"{session.server_id}: malformed tools/list result: {result!r}")

            tools.extend(result["tools"])
            cursor = result.get("nextCursor")
            if not cursor:
                return tools
            if cursor in seen_cursors:
                raise DiscoveryError(f"{session.server_id}: tools/list repeated cursor {cursor!r}")
            seen_cursors.add(cursor)

        raise DiscoveryError(f"{session.server_id}: tools/list exceeded {MAX_PAGES} pages")

    def _build(self, session: ServerSession, raw_tools: list[Any], namespace: bool) -> list[ToolDescriptor]:
        descriptors: list[ToolDescriptor] = []
        seen: set[str] = set()
        session_ref = weakref.ref(session)

        for raw in raw_tools:
            if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw["name"]:
                raise DiscoveryError(f"{session.server_id}: tool entry without a name: {raw!r}")
            remote_name = raw["name"]
            if remote_name in seen:
                raise DiscoveryError(f"{session.server_id}: server lists '{remote_name}' twice")
            seen.add(remote_name)

            input_schema = raw.get("inputSchema")
            if input_schema is None:
                input_schema = {"type": "object", "properties": {}}
            if not isinstance(input_schema, dict):
                raise DiscoveryError(f"{session.server_id}: inputSchema of '{remote_name}' is not an object")
            output_schema = raw.get("outputSchema")
            annotations = raw.get("annotations")

            name = f"{session.server_id}{NAMESPACE_SEPARATOR}{remote_name}" if namespace else remote_name
            descriptors.append(ToolDescriptor(
                name=name,
                remote_name=remote_name,
                server_id=session.server_id,
                session_id=session.session_id,
                input_schema=input_schema,
                description=raw.get("description") or "",
                output_schema=output_schema if isinstance(output_schema, dict) else None,
                annotations=annotations if isinstance(annotations, dict) else None,
                schema_hash=schema_hash(input_schema),
                _session_ref=session_ref,
            ))

        return sorted(descriptors, key=lambda d: d.name)

    def _commit(self, session: ServerSession, descriptors: list[ToolDescriptor]) -> None:
        """Swap the session's descriptors in. Synchronous: no awaits."""
        session_id = session.session_id
        for descriptor in descriptors:
            owner = self._owners.get(descriptor.name)
            if owner is not None and owner != session_id:
                existing = self._tools.get(descriptor.name)
                raise DuplicateTool(descriptor.name, existing.server_id if existing else owner)

        tools = {n: d for n, d in self._tools.items() if d.session_id != session_id}
        owners = {n: s for n, s in self._owners.items() if s != session_id}
        for descriptor in descriptors:
            tools[descriptor.name] = descriptor
            owners[descriptor.name] = session_id

        self._order.setdefault(session_id, next(self._sequence))
        self._tools = tools
        self._owners = owners

    def invalidate(self, session: ServerSession) -> list[str]:
        """Remove every descriptor owned by `session`. Returns the removed names."""
        session_id = session.session_id
        self._generation[session_id] = self._generation.get(session_id, 0) + 1
        removed = [n for n, s in self._owners.items() if s == session_id]
        if removed:
            self._tools = {n: d for n, d in self._tools.items() if d.session_id != session_id}
            self._owners = {n: s for n, s in self._owners.items() if s != session_id}
        self._order.pop(session_id, None)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        logger.info(f"Invalidated {session.server_id} ({session_id[:8]}): removed {removed}")
        return removed
