"""Tests for invocation routing, validation gating and concurrency limits."""

import asyncio
import json

import pytest

from mcp_adapter.config import AdapterConfig, ServerConfig
from mcp_adapter.dispatcher import Dispatcher, FifoLimiter
from mcp_adapter.outcome import Disconnected, Success, Timeout, ToolError
from mcp_adapter.protocol import INVALID_PARAMS, METHOD_NOT_FOUND, TOOL_EXECUTION_ERROR
from mcp_adapter.registry import ToolRegistry

TWEET_TOOL = {
    "name": "tweet",
    "inputSchema": {
        "type": "object",
        "properties": {"text": {"type": "string"}, "api_key": {"type": "string"}},
        "required": ["text"],
    },
}


def config_for(server_id="srv", max_call_timeout=120.0, **policy):
    return AdapterConfig(
        servers=[ServerConfig(server_id=server_id, **policy)],
        max_call_timeout=max_call_timeout,
    )


def tool_calls(connection):
    return [f for f in connection.transport.sent if json.loads(f).get("method") == "tools/call"]


@pytest.fixture
def dispatcher_for(make_session):
    """Negotiate, discover, and wrap the registry in a Dispatcher."""

    async def _setup(config=None, server_id="srv", registry=None, **server_options):
        connection, session, server = await make_session(server_id, **server_options)
        registry = registry if registry is not None else ToolRegistry()
        await registry.discover(session)
        return Dispatcher(registry, config), connection, server

    return _setup


class TestInvoke:

    @pytest.mark.asyncio
    async def test_success_returns_raw_payload(self, dispatcher_for):
        dispatcher, connection, server = await dispatcher_for()
        task = asyncio.create_task(dispatcher.invoke("search", {"query": "foo"}))

        call = await server.next_call()
        assert call["params"]["name"] == "search"
        assert call["params"]["arguments"] == {"query": "foo"}
        result = {"content": [{"type": "text", "text": "2 hits"}], "structuredContent": {"hits": ["a", "b"]}}
        await server.respond(call, result)

        outcome = await task
        assert outcome == Success(payload=result)
        await connection.close()

    @pytest.mark.asyncio
    async def test_invalid_arguments_never_reach_the_server(self, dispatcher_for):
        dispatcher, connection, _ = await dispatcher_for()

        outcome = await dispatcher.invoke("search", {"query": 123})

        assert isinstance(outcome, ToolError)
        assert outcome.code == INVALID_PARAMS
        assert outcome.details["path"] == "$.query"
        assert tool_calls(connection) == []
        await connection.close()

    @pytest.mark.asyncio
    async def test_malformed_required_is_a_tool_error(self, dispatcher_for):
        """A server schema with a non-list `required` is reported, not raised."""
        broken = {
            "name": "broken",
            "inputSchema": {"type": "object", "properties": {"a": {"type": "string"}}, "required": 5},
        }
        dispatcher, connection, _ = await dispatcher_for(tools=[broken])

        outcome = await dispatcher.invoke("broken", {"a": "x"})

        assert isinstance(outcome, ToolError)
        assert outcome.code == INVALID_PARAMS
        assert "required" in outcome.details["reason"]
        assert tool_calls(connection) == []
        await connection.close()

    @pytest.mark.asyncio
    async def test_unknown_tool(self, dispatcher_for):
        dispatcher, connection, _ = await dispatcher_for()

        outcome = await dispatcher.invoke("nope", {})

        assert outcome.code == METHOD_NOT_FOUND
        assert outcome.details == {"tool": "nope"}
        await connection.close()

    @pytest.mark.asyncio
    async def test_closed_session(self, dispatcher_for):
        dispatcher, connection, _ = await dispatcher_for()
        await connection.close()

        assert isinstance(await dispatcher.invoke("search", {"query": "foo"}), Disconnected)

    @pytest.mark.asyncio
    async def test_server_reported_error(self, dispatcher_for):
        dispatcher, connection, server = await dispatcher_for()
        task = asyncio.create_task(dispatcher.invoke("search", {"query": "foo"}))
        call = await server.next_call()
        await server.respond(call, {"content": [{"type": "text", "text": "quota exceeded"}], "isError": True})

        outcome = await task
        assert outcome.code == TOOL_EXECUTION_ERROR
        assert outcome.message == "quota exceeded"
        await connection.close()

    @pytest.mark.asyncio
    async def test_validates_against_latest_schema(self, dispatcher_for):
        registry = ToolRegistry()
        dispatcher, connection, server = await dispatcher_for(registry=registry)
        server.tools[0]["inputSchema"]["properties"]["query"] = {"type": "integer"}
        await registry.discover(connection.session)

        outcome = await dispatcher.invoke("search", {"query": "foo"})
        assert outcome.code == INVALID_PARAMS

        task = asyncio.create_task(dispatcher.invoke("search", {"query": 5}))
        call = await server.next_call()
        await server.respond(call, {})
        assert isinstance(await task, Success)
        await connection.close()


class TestTimeouts:

    @pytest.mark.asyncio
    async def test_timeout_sends_cancellation(self, dispatcher_for, wait_until):
        dispatcher, connection, server = await dispatcher_for()

        outcome = await dispatcher.invoke("search", {"query": "foo"}, timeout=0.05)

        assert outcome == Timeout(0.05)
        call = await server.next_call()
        await wait_until(lambda: server.frames("notifications/cancelled"))
        assert server.frames("notifications/cancelled")[0]["params"]["requestId"] == call["id"]
        await connection.close()

    @pytest.mark.asyncio
    async def test_timeout_is_capped(self, dispatcher_for):
        dispatcher, connection, _ = await dispatcher_for(config_for(max_call_timeout=0.05))

        outcome = await dispatcher.invoke("search", {"query": "foo"}, timeout=10)

        assert outcome == Timeout(0.05)
        await connection.close()

    @pytest.mark.asyncio
    async def test_server_default_timeout(self, dispatcher_for):
        dispatcher, connection, _ = await dispatcher_for(config_for(call_timeout=0.05))
        assert await dispatcher.invoke("search", {"query": "foo"}) == Timeout(0.05)
        await connection.close()


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_timed_out_call_releases_its_slot(self, dispatcher_for):
        dispatcher, connection, server = await dispatcher_for(config_for(max_concurrent_calls=1))

        assert isinstance(await dispatcher.invoke("search", {"query": "1"}, timeout=0.05), Timeout)

        task = asyncio.create_task(dispatcher.invoke("search", {"query": "2"}))
        await server.next_call()
        call = await server.next_call()
        assert call["params"]["arguments"] == {"query": "2"}
        await server.respond(call, {})
        assert isinstance(await task, Success)
        await connection.close()

    @pytest.mark.asyncio
    async def test_queued_calls_run_in_arrival_order(self, dispatcher_for, wait_until):
        dispatcher, connection, server = await dispatcher_for(config_for(max_concurrent_calls=1))
        limiter = dispatcher.limiter(connection.session)

        first = asyncio.create_task(dispatcher.invoke("search", {"query": "1"}))
        held = await server.next_call()
        rest = [asyncio.create_task(dispatcher.invoke("search", {"query": str(n)})) for n in (2, 3)]
        await wait_until(lambda: limiter.waiting == 2)
        assert len(tool_calls(connection)) == 1

        order = []
        await server.respond(held, {})
        for _ in range(2):
            call = await server.next_call()
            order.append(call["params"]["arguments"]["query"])
            await server.respond(call, {})

        assert order == ["2", "3"]
        assert all(isinstance(o, Success) for o in await asyncio.gather(first, *rest))
        assert limiter.active == 0
        await connection.close()

    @pytest.mark.asyncio
    async def test_waiting_for_a_slot_counts_against_the_deadline(self, dispatcher_for):
        dispatcher, connection, server = await dispatcher_for(config_for(max_concurrent_calls=1))
        first = asyncio.create_task(dispatcher.invoke("search", {"query": "1"}))
        held = await server.next_call()

        outcome = await dispatcher.invoke("search", {"query": "2"}, timeout=0.05)

        assert isinstance(outcome, Timeout)
        assert len(tool_calls(connection)) == 1
        await server.respond(held, {})
        await first
        await connection.close()

    @pytest.mark.asyncio
    async def test_slow_server_does_not_block_another(self, make_session, echo_tool):
        config = AdapterConfig(servers=[
            ServerConfig(server_id="a", max_concurrent_calls=1),
            ServerConfig(server_id="b", max_concurrent_calls=1),
        ])
        registry = ToolRegistry()
        conn_a, session_a, server_a = await make_session("a")
        conn_b, session_b, server_b = await make_session("b", tools=[echo_tool])
        await registry.discover(session_a)
        await registry.discover(session_b)
        dispatcher = Dispatcher(registry, config)

        stuck = asyncio.create_task(dispatcher.invoke("search", {"query": "slow"}))
        await server_a.next_call()

        task = asyncio.create_task(dispatcher.invoke("echo", {"message": "hi"}))
        call = await server_b.next_call()
        await server_b.respond(call, {"echoed": "hi"})

        assert await asyncio.wait_for(task, 1.0) == Success({"echoed": "hi"})
        assert not stuck.done()
        await conn_a.close()
        assert isinstance(await stuck, Disconnected)
        await conn_b.close()


class TestSecureValues:

    @pytest.mark.asyncio
    async def test_injected_and_hidden(self, dispatcher_for):
        config = config_for(secure_values={"api_key": "s3cret"})
        dispatcher, connection, server = await dispatcher_for(config, tools=[TWEET_TOOL])

        assert dispatcher.hidden_arguments("srv") == {"api_key"}
        task = asyncio.create_task(dispatcher.invoke("tweet", {"text": "hello"}))
        call = await server.next_call()
        assert call["params"]["arguments"] == {"text": "hello", "api_key": "s3cret"}
        await server.respond(call, {})
        await task
        await connection.close()

    @pytest.mark.asyncio
    async def test_missing_secret_in_strict_mode(self, dispatcher_for, monkeypatch):
        monkeypatch.delenv("MCP_ADAPTER_TEST_MISSING", raising=False)
        config = config_for(secure_values={"api_key": {"env": "MCP_ADAPTER_TEST_MISSING"}}, strict_secure_values=True)
        dispatcher, connection, _ = await dispatcher_for(config, tools=[TWEET_TOOL])

        outcome = await dispatcher.invoke("tweet", {"text": "hello"})

        assert outcome.code == INVALID_PARAMS
        assert outcome.details["path"] == "$.api_key"
        assert tool_calls(connection) == []
        await connection.close()

    @pytest.mark.asyncio
    async def test_missing_secret_is_omitted(self, dispatcher_for, monkeypatch):
        monkeypatch.delenv("MCP_ADAPTER_TEST_MISSING", raising=False)
        config = config_for(secure_values={"api_key": {"env": "MCP_ADAPTER_TEST_MISSING"}})
        dispatcher, connection, server = await dispatcher_for(config, tools=[TWEET_TOOL])

        task = asyncio.create_task(dispatcher.invoke("tweet", {"text": "hello", "api_key": "from-model"}))
        call = await server.next_call()
        assert call["params"]["arguments"] == {"text": "hello"}
        await server.respond(call, {})
        await task
        await connection.close()


class TestFifoLimiter:

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            FifoLimiter(0)

    @pytest.mark.asyncio
    async def test_acquire_times_out(self):
        limiter = FifoLimiter(1)
        assert await limiter.acquire()
        assert await limiter.acquire(timeout=0.01) is False
        assert limiter.active == 1
        assert limiter.waiting == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak_a_slot(self):
        limiter = FifoLimiter(1)
        assert await limiter.acquire()
        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        limiter.release()
        assert limiter.active == 0
        assert await limiter.acquire(timeout=0.1)
