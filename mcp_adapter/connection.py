"""
Connection: one logical channel to one tool server.

A connection owns the transport, a reader task that demultiplexes incoming
frames, and the table of in-flight calls keyed by correlation id:

    transport ──► reader ──┬─► response       → pending[id] future
                           ├─► progress       → pending[token].partials
                           ├─► notification   → ordered queue → on_notification
                           └─► server request → answered inline (ping)

Responses may arrive in any order. Notifications are handed to the
notification handler strictly in arrival order by a single consumer task.
When the transport drops, every pending call resolves to Disconnected.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from mcp_adapter.errors import HandshakeError, TransportClosed, TransportError
from mcp_adapter.outcome import (
    Disconnected,
    InvocationOutcome,
    ProtocolViolation,
    Timeout,
    normalize_response,
)
from mcp_adapter.protocol import (
    CALL_TOOL,
    CANCELLED,
    METHOD_NOT_FOUND,
    PING,
    PROGRESS,
    EnvelopeError,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    decode_message,
)
from mcp_adapter.transport import Transport

if TYPE_CHECKING:
    from mcp_adapter.negotiator import CapabilityNegotiator, ServerSession

logger = logging.getLogger(__name__)

NotificationHandler = Callable[["Connection", JsonRpcNotification], Awaitable[None]]
DisconnectHandler = Callable[["Connection", str], Awaitable[None]]
ProgressHandler = Callable[[dict[str, Any]], None]


@dataclass
class InvocationRequest:
    """One tool call in flight. `deadline` is in event-loop time."""
    tool_name: str
    arguments: dict[str, Any]
    correlation_id: int
    deadline: float
    timeout: float
    on_progress: ProgressHandler | None = None


@dataclass
class _Pending:
    future: asyncio.Future
    partials: list[dict[str, Any]] = field(default_factory=list)
    on_progress: ProgressHandler | None = None


class Connection:
    """
    Request/response correlation over a single transport.

    `open()` negotiates and yields the ServerSession; `send()` runs one tool
    call and never raises; `close()` tears everything down and invalidates
    the session.
    """

    def __init__(
        self,
        server_id: str,
        transport: Transport,
        on_notification: NotificationHandler | None = None,
        on_disconnect: DisconnectHandler | None = None,
        violation_threshold: int = 3,
    ):
        self.server_id = server_id
        self.transport = transport
        self.on_notification = on_notification
        self.on_disconnect = on_disconnect
        self.violation_threshold = violation_threshold
        self.session: "ServerSession | None" = None
        self.violations = 0

        self._ids = itertools.count(1)
        self._pending: dict[int | str, _Pending] = {}
        self._notifications: asyncio.Queue = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._notifier: asyncio.Task | None = None
        self._negotiation_lock = asyncio.Lock()
        self._open = False
        self._closing = False

    # ── Lifecycle ──────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def open(self, negotiator: "CapabilityNegotiator") -> "ServerSession":
        """Start the transport, run the handshake, and return the session.

        On any failure the connection is closed and no session exists.
        """
        async with self._negotiation_lock:
            if self.session is not None and self._open:
                return self.session
            if self._closing:
                raise TransportClosed(f"{self.server_id}: connection already closed")

            await self.transport.start()
            self._open = True
            self._reader = asyncio.create_task(self._read_loop(), name=f"mcp-reader-{self.server_id}")
            self._notifier = asyncio.create_task(self._notify_loop(), name=f"mcp-notify-{self.server_id}")

            try:
                session = await negotiator.negotiate(self)
            except (HandshakeError, TransportError):
                await self.close()
                raise
            if not self._open:
                raise TransportClosed(f"{self.server_id}: connection lost during handshake")
            self.session = session
            return session

    async def close(self) -> None:
        """Release the transport and resolve every pending call as Disconnected."""
        if self._closing:
            return
        self._closing = True
        self._teardown("connection closed")
        for task in (self._reader, self._notifier):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        await self.transport.stop()
        logger.info(f"Closed connection to {self.server_id}")

    def _teardown(self, reason: str) -> None:
        """Mark closed, drop the session, fail all pending calls. Synchronous."""
        self._open = False
        self.session = None
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(TransportClosed(reason))
        if pending:
            logger.warning(f"{self.server_id}: {len(pending)} pending call(s) disconnected ({reason})")

    async def _lost(self, reason: str) -> None:
        """The transport went away underneath us."""
        if self._closing:
            return
        logger.error(f"Connection to {self.server_id} lost: {reason}")
        await self.close()
        if self.on_disconnect is not None:
            await self.on_disconnect(self, reason)

    # ── Outbound ───────────────────────────────────────────

    def next_id(self) -> int:
        """Generate the next correlation id."""
        return next(self._ids)

    async def _write(self, message: JsonRpcRequest | JsonRpcNotification | JsonRpcResponse) -> None:
        if not self._open:
            raise TransportClosed(f"{self.server_id}: connection is not open")
        logger.debug(f"→ {self.server_id}: {message.to_json()[:500]}")
        await self.transport.send(message.to_json())

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        await self._write(JsonRpcNotification(method=method, params=params))

    async def request(
        self,
        method: str,
        params: dict[str, Any],
        timeout: float | None = None,
    ) -> JsonRpcResponse:
        """Send a request and wait for its correlated response.

        Raises:
            TransportError: the connection is closed or drops before the answer.
            asyncio.TimeoutError: no answer within `timeout`.
        """
        correlation_id = self.next_id()
        future = self._register(correlation_id)
        try:
            await self._write(JsonRpcRequest(method=method, params=params, id=correlation_id))
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(correlation_id, None)

    def _register(self, correlation_id: int, on_progress: ProgressHandler | None = None) -> asyncio.Future:
        if not self._open:
            raise TransportClosed(f"{self.server_id}: connection is not open")
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = _Pending(future=future, on_progress=on_progress)
        return future

    async def send(self, request: InvocationRequest) -> InvocationOutcome:
        """Issue one tool call. Transport failures become outcomes, never exceptions."""
        loop = asyncio.get_running_loop()
        remaining = request.deadline - loop.time()
        if remaining <= 0:
            return Timeout(request.timeout)

        try:
            future = self._register(request.correlation_id, request.on_progress)
        except TransportError as e:
            return Disconnected(str(e))

        params = {
            "name": request.tool_name,
            "arguments": request.arguments,
            "_meta": {"progressToken": request.correlation_id},
        }
        try:
            await self._write(JsonRpcRequest(method=CALL_TOOL, params=params, id=request.correlation_id))
            response = await asyncio.wait_for(future, timeout=remaining)
        except asyncio.TimeoutError:
            return Timeout(request.timeout)
        except TransportError as e:
            return Disconnected(str(e))
        finally:
            entry = self._pending.pop(request.correlation_id, None)

        outcome = normalize_response(response, tuple(entry.partials) if entry else ())
        if isinstance(outcome, ProtocolViolation):
            await self._violation(f"call {request.correlation_id} ({request.tool_name}): {outcome.reason}")
        return outcome

    async def cancel(self, correlation_id: int, reason: str = "timeout") -> bool:
        """Best-effort cancellation notice. Returns whether it was written."""
        try:
            await self.notify(CANCELLED, {"requestId": correlation_id, "reason": reason})
        except TransportError as e:
            logger.debug(f"{self.server_id}: cancel notice for {correlation_id} not sent: {e}")
            return False
        return True

    # ── Inbound ────────────────────────────────────────────

    async def _violation(self, reason: str) -> None:
        self.violations += 1
        logger.warning(
            f"Protocol violation from {self.server_id} "
            f"({self.violations}/{self.violation_threshold}): {reason}"
        )
        if self.violations >= self.violation_threshold and self._open:
            await self._lost(f"protocol violations exceeded threshold ({self.violations})")

    async def _read_loop(self) -> None:
        try:
            await self._read_frames()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"{self.server_id}: reader failed")
            await self._lost(f"reader failed: {e!r}")

    async def _read_frames(self) -> None:
        while True:
            try:
                frame = await self.transport.receive()
            except TransportError as e:
                await self._lost(str(e))
                return

            logger.debug(f"← {self.server_id}: {frame[:500]}")
            try:
                message = decode_message(frame)
            except EnvelopeError as e:
                await self._violation(str(e))
                if not self._open:
                    return
                continue

            if isinstance(message, JsonRpcResponse):
                await self._on_response(message)
            elif isinstance(message, JsonRpcNotification):
                self._on_notification(message)
            else:
                await self._on_server_request(message)
            if not self._open:
                return

    async def _on_response(self, response: JsonRpcResponse) -> None:
        if response.id is None:
            await self._violation(f"uncorrelated response: {response.raw}")
            return
        entry = self._pending.get(response.id)
        if entry is None or entry.future.done():
            logger.warning(f"{self.server_id}: dropping response for unknown or expired call {response.id}")
            return
        entry.future.set_result(response)

    def _on_notification(self, notification: JsonRpcNotification) -> None:
        if notification.method == PROGRESS:
            token = notification.params.get("progressToken")
            entry = self._pending.get(token)
            if entry is not None:
                entry.partials.append(notification.params)
                if entry.on_progress is not None:
                    try:
                        entry.on_progress(notification.params)
                    except Exception:
                        logger.exception(f"{self.server_id}: progress handler failed for call {token}")
                return
        self._notifications.put_nowait(notification)

    async def _on_server_request(self, request: JsonRpcRequest) -> None:
        if request.method == PING:
            reply = JsonRpcResponse(id=request.id, result={})
        else:
            reply = JsonRpcResponse(
                id=request.id,
                error={"code": METHOD_NOT_FOUND, "message": f"Client does not support '{request.method}'"},
            )
        try:
            await self._write(reply)
        except TransportError as e:
            logger.debug(f"{self.server_id}: could not answer server request {request.id}: {e}")

    async def _notify_loop(self) -> None:
        while True:
            notification = await self._notifications.get()
            if self.on_notification is None:
                logger.debug(f"{self.server_id}: ignoring notification {notification.method}")
                continue
            try:
                await self.on_notification(self, notification)
            except Exception:
                logger.exception(f"{self.server_id}: notification handler failed for {notification.method}")
