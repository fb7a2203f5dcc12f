"""Tests for request correlation, notification ordering and teardown."""

import asyncio
import json
from unittest.mock import patch

import pytest

from mcp_adapter.outcome import Disconnected, ProtocolViolation, Success, Timeout


def sent_methods(connection):
    return [json.loads(frame).get("method") for frame in connection.transport.sent]


class TestCorrelation:

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, make_session, make_request):
        """Each call gets its own response regardless of arrival order."""
        connection, _, server = await make_session()
        first = asyncio.create_task(connection.send(make_request(connection, arguments={"query": "a"})))
        second = asyncio.create_task(connection.send(make_request(connection, arguments={"query": "b"})))

        call_a = await server.next_call()
        call_b = await server.next_call()
        await server.respond(call_b, {"answer": call_b["params"]["arguments"]["query"]})
        await server.respond(call_a, {"answer": call_a["params"]["arguments"]["query"]})

        assert await first == Success({"answer": "a"})
        assert await second == Success({"answer": "b"})
        assert connection.pending_count == 0
        await connection.close()

    @pytest.mark.asyncio
    async def test_call_envelope(self, make_session, make_request):
        connection, _, server = await make_session()
        request = make_request(connection, arguments={"query": "x"})
        task = asyncio.create_task(connection.send(request))

        call = await server.next_call()
        assert call["id"] == request.correlation_id
        assert call["params"] == {
            "name": "search",
            "arguments": {"query": "x"},
            "_meta": {"progressToken": request.correlation_id},
        }
        await server.respond(call, {})
        await task
        await connection.close()

    @pytest.mark.asyncio
    async def test_late_response_is_dropped(self, make_session, make_request):
        """A response after the deadline is discarded and does not count as a violation."""
        connection, _, server = await make_session()

        outcome = await connection.send(make_request(connection, timeout=0.05))
        assert outcome == Timeout(0.05)
        late_call = await server.next_call()
        await server.respond(late_call, {"late": True})

        task = asyncio.create_task(connection.send(make_request(connection)))
        call = await server.next_call()
        await server.respond(call, {"fresh": True})

        assert await task == Success({"fresh": True})
        assert connection.violations == 0
        assert connection.is_open
        await connection.close()

    @pytest.mark.asyncio
    async def test_expired_deadline_sends_nothing(self, make_session, make_request):
        connection, _, _ = await make_session()
        request = make_request(connection, timeout=5.0)
        request.deadline = asyncio.get_running_loop().time() - 1

        assert isinstance(await connection.send(request), Timeout)
        assert "tools/call" not in sent_methods(connection)
        await connection.close()

    @pytest.mark.asyncio
    async def test_progress_is_collected(self, make_session, make_request):
        connection, _, server = await make_session()
        seen = []
        request = make_request(connection, on_progress=seen.append)
        task = asyncio.create_task(connection.send(request))

        call = await server.next_call()
        progress = {"progressToken": call["id"], "progress": 1, "total": 2}
        await server.notify("notifications/progress", progress)
        await server.respond(call, {"done": True})

        outcome = await task
        assert outcome.payload == {"done": True}
        assert outcome.partials == (progress,)
        assert seen == [progress]
        await connection.close()


class TestNotifications:

    @pytest.mark.asyncio
    async def test_delivered_in_order(self, make_session, wait_until):
        received = []

        async def on_notification(connection, notification):
            await asyncio.sleep(0)
            received.append(notification.params["n"])

        connection, _, server = await make_session(on_notification=on_notification)
        for n in range(10):
            await server.notify("notifications/message", {"n": n})

        await wait_until(lambda: len(received) == 10)
        assert received == list(range(10))
        await connection.close()

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_delivery(self, make_session, wait_until):
        received = []

        async def on_notification(connection, notification):
            if notification.params["n"] == 0:
                raise RuntimeError("handler bug")
            received.append(notification.params["n"])

        connection, _, server = await make_session(on_notification=on_notification)
        await server.notify("notifications/message", {"n": 0})
        await server.notify("notifications/message", {"n": 1})

        await wait_until(lambda: received == [1])
        await connection.close()

    @pytest.mark.asyncio
    async def test_server_ping_is_answered(self, make_session, wait_until):
        connection, _, server = await make_session()
        await server.send({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})

        await wait_until(lambda: any(m.get("id") == "srv-1" for m in server.received))
        reply = next(m for m in server.received if m.get("id") == "srv-1")
        assert reply["result"] == {}
        await connection.close()


class TestTeardown:

    @pytest.mark.asyncio
    async def test_disconnect_resolves_every_pending_call(self, make_session, make_request, wait_until):
        """All in-flight calls resolve to Disconnected, and the disconnect is reported once."""
        disconnects = []

        async def on_disconnect(connection, reason):
            disconnects.append(reason)

        connection, session, server = await make_session(on_disconnect=on_disconnect)
        tasks = [asyncio.create_task(connection.send(make_request(connection))) for _ in range(3)]
        for _ in range(3):
            await server.next_call()

        await server.disconnect()
        outcomes = await asyncio.gather(*tasks)

        assert all(isinstance(o, Disconnected) for o in outcomes)
        assert connection.pending_count == 0
        assert not session.is_live
        await wait_until(lambda: len(disconnects) == 1)
        await connection.close()
        assert len(disconnects) == 1

    @pytest.mark.asyncio
    async def test_send_after_close(self, make_session, make_request):
        connection, _, _ = await make_session()
        await connection.close()
        assert isinstance(await connection.send(make_request(connection)), Disconnected)

    @pytest.mark.asyncio
    async def test_violations_below_threshold_keep_connection(self, make_session, make_request):
        connection, _, server = await make_session(threshold=3)
        await server.send("this is not json")

        task = asyncio.create_task(connection.send(make_request(connection)))
        call = await server.next_call()
        await server.respond(call, {})

        assert isinstance(await task, Success)
        assert connection.violations == 1
        assert connection.is_open
        await connection.close()

    @pytest.mark.asyncio
    async def test_violation_threshold_tears_down(self, make_session, wait_until):
        disconnects = []

        async def on_disconnect(connection, reason):
            disconnects.append(reason)

        connection, session, server = await make_session(threshold=2, on_disconnect=on_disconnect)
        await server.send("garbage")
        await server.send({"jsonrpc": "2.0", "result": {}})

        await wait_until(lambda: not connection.is_open)
        assert not session.is_live
        await wait_until(lambda: disconnects)
        assert "protocol violations" in disconnects[0]

    @pytest.mark.asyncio
    async def test_malformed_response_is_a_violation(self, make_session, make_request):
        connection, _, server = await make_session()
        task = asyncio.create_task(connection.send(make_request(connection)))
        call = await server.next_call()
        await server.send({"jsonrpc": "2.0", "id": call["id"], "result": {}, "error": {"code": 1, "message": "x"}})

        assert isinstance(await task, ProtocolViolation)
        assert connection.violations == 1
        await connection.close()


class TestBadServerInput:

    @pytest.mark.asyncio
    async def test_invalid_utf8_frame_is_a_violation(self, make_session, make_request):
        """Undecodable bytes count as one violation and the reader keeps going."""
        connection, _, server = await make_session()
        task = asyncio.create_task(connection.send(make_request(connection)))
        call = await server.next_call()

        await server.transport.send(b"\xc3\x28 garbage")
        await server.respond(call, {"ok": True})

        assert await task == Success({"ok": True})
        assert connection.violations == 1
        assert connection.is_open
        await connection.close()

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_is_a_violation(self, make_session, make_request):
        connection, _, server = await make_session()
        task = asyncio.create_task(connection.send(make_request(connection)))
        call = await server.next_call()

        await server.send("[" * 100000)
        await server.respond(call, {"ok": True})

        assert await task == Success({"ok": True})
        assert connection.violations == 1
        assert connection.is_open
        await connection.close()

    @pytest.mark.asyncio
    async def test_failing_progress_handler_does_not_stop_the_reader(self, make_session, make_request):
        """A raising progress callback is logged; both calls still complete."""
        connection, _, server = await make_session()

        def explode(params):
            raise RuntimeError("callback bug")

        first = asyncio.create_task(connection.send(make_request(connection, on_progress=explode)))
        call = await server.next_call()
        await server.notify("notifications/progress", {"progressToken": call["id"], "progress": 1})

        second = asyncio.create_task(connection.send(make_request(connection)))
        other = await server.next_call()
        await server.respond(other, {"second": True})
        await server.respond(call, {"first": True})

        assert await second == Success({"second": True})
        outcome = await first
        assert isinstance(outcome, Success)
        assert outcome.payload == {"first": True}
        assert connection.is_open
        await connection.close()

    @pytest.mark.asyncio
    async def test_reader_crash_disconnects_pending_calls(self, make_session, make_request, wait_until):
        """An unexpected reader failure tears the connection down instead of hanging calls."""
        disconnects = []

        async def on_disconnect(connection, reason):
            disconnects.append(reason)

        connection, session, server = await make_session(on_disconnect=on_disconnect)
        task = asyncio.create_task(connection.send(make_request(connection, timeout=5.0)))
        await server.next_call()

        with patch("mcp_adapter.connection.decode_message", side_effect=RuntimeError("boom")):
            await server.send({"jsonrpc": "2.0", "method": "notifications/message", "params": {}})
            outcome = await asyncio.wait_for(task, 1.0)

        assert isinstance(outcome, Disconnected)
        assert not connection.is_open
        assert not session.is_live
        await wait_until(lambda: disconnects)
        assert "reader failed" in disconnects[0]
