"""
Transport layer abstraction for MCP tool communication.

A transport moves opaque text frames; it knows nothing about envelopes,
correlation or sessions. Implementations:
  - StdioTransport: newline-delimited frames over subprocess pipes
  - MemoryTransport: an in-process pair, for embedding a server in the
    same event loop (tests, local tool servers)
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod

from mcp_adapter.errors import TransportClosed, TransportError

logger = logging.getLogger(__name__)

# Large tool results (base64 images etc.) overflow the 64 KiB default
STDIO_READ_LIMIT = 16 * 1024 * 1024


class Transport(ABC):
    """Abstract transport layer for MCP communication."""

    @abstractmethod
    async def start(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport. Idempotent."""
        ...

    @abstractmethod
    async def send(self, frame: str) -> None:
        """Write one frame. Raises TransportError on failure."""
        ...

    @abstractmethod
    async def receive(self) -> str | bytes:
        """Read the next frame. Raises TransportClosed at end-of-stream.

        A frame that is not valid UTF-8 is returned as raw bytes.
        """
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...


class StdioTransport(Transport):
    """
    Newline-delimited frames over stdin/stdout of a subprocess.

    This is MCP's native local transport. The tool server runs as a
    child process; one line = one message.
    """

    def __init__(self, command: list[str], env: dict[str, str] | None = None):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["python", "-m", "mcp_adapter.servers.echo"]
            env: Extra environment variables for the subprocess.
        """
        if not command:
            raise ValueError("StdioTransport needs a command")
        self.command = command
        self.env = env
        self._process: asyncio.subprocess.Process | None = None

    async def start(self) -> None:
        """Launch the tool server subprocess."""
        if self.is_alive():
            logger.warning("Transport already running, stopping first")
            await self.stop()

        env = {**os.environ, **self.env} if self.env else None
        logger.info(f"Starting stdio transport: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command[0],
                *self.command[1:],
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDIO_READ_LIMIT,
            )
        except OSError as e:
            raise TransportError(f"Failed to launch {self.command[0]}: {e}") from e

    async def stop(self) -> None:
        """Terminate the tool server subprocess."""
        process, self._process = self._process, None
        if process is None:
            return
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        logger.info("Stdio transport stopped")

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return self._process is not None and self._process.returncode is None

    async def send(self, frame: str) -> None:
        if not self.is_alive() or self._process.stdin is None:
            raise TransportClosed("Transport not running. Call start() first.")
        try:
            self._process.stdin.write((frame + "\n").encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportClosed(f"Tool server stdin closed: {e}") from e

    async def receive(self) -> str | bytes:
        process = self._process
        if process is None or process.stdout is None:
            raise TransportClosed("Transport not running")
        try:
            line = await process.stdout.readline()
        except (ValueError, asyncio.LimitOverrunError) as e:
            raise TransportError(f"Frame exceeds {STDIO_READ_LIMIT} bytes") from e
        if not line:
            stderr = await self._stderr_tail(process)
            raise TransportClosed(f"Tool server process exited. stderr: {stderr}")
        try:
            return line.decode("utf-8", errors="strict").strip()
        except UnicodeDecodeError:
            return line.strip()

    @staticmethod
    async def _stderr_tail(process: asyncio.subprocess.Process) -> str:
        if process.stderr is None:
            return ""
        try:
            data = await asyncio.wait_for(process.stderr.read(4096), timeout=1)
        except asyncio.TimeoutError:
            return ""
        return data.decode("utf-8", errors="replace")[:500]


_CLOSED = None


class MemoryTransport(Transport):
    """
    One end of an in-process frame pipe.

    Use MemoryTransport.pair() to get two connected ends; stopping either
    end closes the stream for both.
    """

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue):
        self._inbox = inbox
        self._outbox = outbox
        self._alive = False
        self.sent: list[str] = []

    @classmethod
    def pair(cls) -> tuple["MemoryTransport", "MemoryTransport"]:
        """Return (client_end, server_end), both started."""
        a_to_b: asyncio.Queue = asyncio.Queue()
        b_to_a: asyncio.Queue = asyncio.Queue()
        client = cls(inbox=b_to_a, outbox=a_to_b)
        server = cls(inbox=a_to_b, outbox=b_to_a)
        client._alive = server._alive = True
        return client, server

    async def start(self) -> None:
        self._alive = True

    async def stop(self) -> None:
        if not self._alive:
            return
        self._alive = False
        self._outbox.put_nowait(_CLOSED)
        self._inbox.put_nowait(_CLOSED)

    def is_alive(self) -> bool:
        return self._alive

    async def send(self, frame: str) -> None:
        if not self._alive:
            raise TransportClosed("Memory transport closed")
        self.sent.append(frame)
        self._outbox.put_nowait(frame)

    async def receive(self) -> str:
        frame = await self._inbox.get()
        if frame is _CLOSED:
            self._alive = False
            # Leave the marker for any other reader
            self._inbox.put_nowait(_CLOSED)
            raise TransportClosed("Memory transport closed")
        return frame
