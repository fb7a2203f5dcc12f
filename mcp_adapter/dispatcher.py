"""
Dispatcher: routes one model-issued tool call to the server that owns it.

    resolve (Registry) → inject secrets → validate (Translator)
        → wait for a slot on that connection → Connection.send → outcome

Validation failures and unknown tools short-circuit before anything touches
the network. Concurrency is limited per connection, so a hung server only
queues calls bound for itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from mcp_adapter.config import AdapterConfig, ServerConfig
from mcp_adapter.connection import InvocationRequest, ProgressHandler
from mcp_adapter.errors import ArgumentValidationError, UnknownTool, UnsupportedSchemaShape
from mcp_adapter.negotiator import ServerSession
from mcp_adapter.outcome import Disconnected, InvocationOutcome, Success, Timeout, ToolError
from mcp_adapter.protocol import INVALID_PARAMS, METHOD_NOT_FOUND
from mcp_adapter.registry import ToolDescriptor, ToolRegistry
from mcp_adapter.schema import SchemaTranslator

logger = logging.getLogger(__name__)


class FifoLimiter:
    """Counting limiter that hands slots to waiters strictly in arrival order."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self, timeout: float | None = None) -> bool:
        """Take a slot. Returns False if `timeout` expires while queued."""
        if self.active < self.limit and not self.waiting:
            self.active += 1
            return True

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return self._granted(waiter)
        except asyncio.CancelledError:
            if self._granted(waiter):
                self.release()
            raise
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
        return True

    @staticmethod
    def _granted(waiter: asyncio.Future) -> bool:
        return waiter.done() and not waiter.cancelled()

    def release(self) -> None:
        # Hand the slot straight to the next live waiter; `active` is unchanged
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active -= 1


class Dispatcher:
    """
    Turns invoke(name, args, timeout) into exactly one InvocationOutcome.

    Per-server policy (timeouts, concurrency, schema depth, secure values)
    comes from the AdapterConfig; servers without an entry get defaults.
    """

    def __init__(self, registry: ToolRegistry, config: AdapterConfig | None = None):
        self.registry = registry
        self.config = config or AdapterConfig()
        self._translators: dict[int, SchemaTranslator] = {}
        self._limiters: dict[str, FifoLimiter] = {}
        self._background: set[asyncio.Task] = set()

    # ── Policy ─────────────────────────────────────────────

    def policy(self, server_id: str) -> ServerConfig:
        return self.config.server(server_id) or ServerConfig(server_id=server_id)

    def translator(self, server_id: str) -> SchemaTranslator:
        depth = self.policy(server_id).max_schema_depth
        translator = self._translators.get(depth)
        if translator is None:
            translator = self._translators[depth] = SchemaTranslator(max_depth=depth)
        return translator

    def limiter(self, session: ServerSession) -> FifoLimiter | None:
        limit = self.policy(session.server_id).max_concurrent_calls
        if limit is None:
            return None
        limiter = self._limiters.get(session.session_id)
        if limiter is None:
            limiter = self._limiters[session.session_id] = FifoLimiter(limit)
        return limiter

    def forget(self, session: ServerSession) -> None:
        """Drop per-connection state for a session that is gone."""
        self._limiters.pop(session.session_id, None)

    def hidden_arguments(self, server_id: str) -> set[str]:
        return set(self.policy(server_id).secure_values)

    def _inject_secrets(
        self,
        policy: ServerConfig,
        descriptor: ToolDescriptor,
        arguments: Any,
    ) -> Any:
        if not policy.secure_values or not isinstance(arguments, dict):
            return arguments
        properties = descriptor.input_schema.get("properties") or {}
        injected = dict(arguments)
        for name, secret in policy.secure_values.items():
            if name not in properties:
                continue
            value = secret.resolve()
            if value is None:
                if policy.strict_secure_values:
                    raise ArgumentValidationError(f"$.{name}", "secure value is not available")
                injected.pop(name, None)
                continue
            injected[name] = value
        return injected

    # ── Invocation ─────────────────────────────────────────

    async def invoke(
        self,
        name: str,
        arguments: Any = None,
        timeout: float | None = None,
        on_progress: ProgressHandler | None = None,
    ) -> InvocationOutcome:
        """Run one tool call. Never raises for adapter or transport faults."""
        loop = asyncio.get_running_loop()

        try:
            descriptor = self.registry.resolve(name)
        except UnknownTool as e:
            if name in self.registry:
                # Registered, but its session died and is not yet invalidated
                return Disconnected(f"{name}: session closed")
            logger.warning(f"Call to unknown tool '{name}'")
            return ToolError(code=METHOD_NOT_FOUND, message=str(e), details={"tool": name})

        session = descriptor.session

        policy = self.policy(descriptor.server_id)
        try:
            arguments = self._inject_secrets(policy, descriptor, arguments)
            payload = self.translator(descriptor.server_id).validate_arguments(descriptor, arguments)
        except ArgumentValidationError as e:
            logger.info(f"Rejected arguments for '{name}' at {e.path}: {e.reason}")
            return ToolError(
                code=INVALID_PARAMS,
                message=f"Invalid arguments for '{name}': {e.path}: {e.reason}",
                details={"path": e.path, "reason": e.reason, "errors": e.errors},
            )
        except UnsupportedSchemaShape as e:
            logger.warning(f"Cannot validate arguments for '{name}': {e}")
            return ToolError(
                code=INVALID_PARAMS,
                message=f"Tool '{name}' has an unsupported input schema: {e.reason}",
                details={"path": e.path, "reason": e.reason},
            )

        allowance = policy.call_timeout if timeout is None else timeout
        allowance = min(allowance, self.config.max_call_timeout)
        deadline = loop.time() + allowance

        limiter = self.limiter(session)
        if limiter is not None:
            if not await limiter.acquire(timeout=max(deadline - loop.time(), 0)):
                logger.warning(f"'{name}' timed out after {allowance}s waiting for a slot on {session.server_id}")
                return Timeout(allowance)

        connection = session.connection
        request = InvocationRequest(
            tool_name=descriptor.remote_name,
            arguments=payload,
            correlation_id=connection.next_id(),
            deadline=deadline,
            timeout=allowance,
            on_progress=on_progress,
        )
        try:
            outcome = await connection.send(request)
        finally:
            if limiter is not None:
                limiter.release()

        if isinstance(outcome, Timeout):
            logger.warning(f"'{name}' timed out after {allowance}s (call {request.correlation_id})")
            self._cancel_in_background(connection, request.correlation_id)
        elif isinstance(outcome, Success):
            logger.debug(f"'{name}' succeeded (call {request.correlation_id})")
        else:
            logger.info(f"'{name}' → {type(outcome).__name__}: {outcome}")
        return outcome

    def _cancel_in_background(self, connection, correlation_id: int) -> None:
        task = asyncio.create_task(connection.cancel(correlation_id, reason="deadline exceeded"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
