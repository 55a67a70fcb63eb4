"""
Tests for the Electrum transport: request correlation, subscriptions and
connection lifecycle, over an in-memory connection.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import FakeConnection, wait_for

from watchwallet.constants import REQUEST_ID_MAX
from watchwallet.electrum.transport import (
    ConnectionState,
    ElectrumTransport,
    TransportClosedError,
)
from watchwallet.protocol import ProtocolError


@pytest.fixture
def transport():
    return ElectrumTransport("localhost", 50001, keepalive_interval=3600)


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_resolves_with_result(self, transport, connection):
        transport.attach(connection)
        task = asyncio.create_task(transport.request("server.version", "watchwallet", "1.4"))

        request = await connection.next_request()
        assert request["method"] == "server.version"
        assert request["params"] == ["watchwallet", "1.4"]
        assert 1 <= request["id"] <= REQUEST_ID_MAX

        connection.reply(request, ["ElectrumX 1.16", "1.4"])
        assert await task == ["ElectrumX 1.16", "1.4"]
        assert transport.pending_ids == set()
        await transport.close()

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, transport, connection):
        transport.attach(connection)
        first = asyncio.create_task(transport.request("blockchain.block.header", 1))
        second = asyncio.create_task(transport.request("blockchain.block.header", 2))

        await connection.next_request(2)
        req_first, req_second = connection.sent
        connection.reply(req_second, "header-2")
        connection.reply(req_first, "header-1")

        assert await first == "header-1"
        assert await second == "header-2"
        await transport.close()

    @pytest.mark.asyncio
    async def test_duplicate_response_is_ignored(self, transport, connection):
        """A second response with the same id must not resolve anything again."""
        transport.attach(connection)
        task = asyncio.create_task(transport.request("server.ping"))
        request = await connection.next_request()

        connection.reply(request, "first")
        connection.reply(request, "second")
        assert await task == "first"

        # Transport keeps working after the stray duplicate
        follow_up = asyncio.create_task(transport.request("server.ping"))
        next_request = await connection.next_request(2)
        connection.reply(next_request, "third")
        assert await follow_up == "third"
        await transport.close()

    @pytest.mark.asyncio
    async def test_error_response_raises(self, transport, connection):
        transport.attach(connection)
        task = asyncio.create_task(transport.request("blockchain.transaction.get", "00" * 32))
        request = await connection.next_request()

        connection.push({"id": request["id"], "error": {"code": 2, "message": "not found"}})
        with pytest.raises(ProtocolError) as exc_info:
            await task
        assert exc_info.value.code == 2
        assert exc_info.value.method == "blockchain.transaction.get"
        await transport.close()

    @pytest.mark.asyncio
    async def test_unknown_id_and_garbage_are_dropped(self, transport, connection):
        transport.attach(connection)
        connection.push({"id": 123456789, "result": "nobody asked"})
        connection.push_raw(b"this is not json")

        task = asyncio.create_task(transport.request("server.ping"))
        request = await connection.next_request()
        connection.reply(request, None)
        assert await task is None
        await transport.close()

    @pytest.mark.asyncio
    async def test_id_collision_draws_again(self, transport, connection, monkeypatch):
        draws = iter([5, 5, 6])
        monkeypatch.setattr(
            "watchwallet.electrum.transport.random.randint", lambda a, b: next(draws)
        )
        transport.attach(connection)

        first = asyncio.create_task(transport.request("server.ping"))
        await connection.next_request()
        second = asyncio.create_task(transport.request("server.ping"))
        await connection.next_request(2)

        assert [r["id"] for r in connection.sent] == [5, 6]
        connection.reply(connection.sent[1], "b")
        connection.reply(connection.sent[0], "a")
        assert await first == "a"
        assert await second == "b"
        await transport.close()


class TestConnectionLifecycle:
    @pytest.mark.asyncio
    async def test_request_waits_for_connection(self, transport, connection):
        task = asyncio.create_task(transport.request("server.ping"))
        await asyncio.sleep(0.01)
        assert not task.done()
        assert transport.state == ConnectionState.CONNECTING

        transport.attach(connection)
        request = await connection.next_request()
        connection.reply(request, None)
        assert await task is None
        await transport.close()

    @pytest.mark.asyncio
    async def test_peer_drop_rejects_in_flight(self, transport, connection):
        closed = MagicMock()
        transport.on_close(closed)
        transport.attach(connection)

        task = asyncio.create_task(transport.request("blockchain.block.header", 10))
        await connection.next_request()
        connection.drop()

        with pytest.raises(TransportClosedError):
            await task
        assert transport.state == ConnectionState.CLOSED
        assert not transport.is_open()
        assert transport.pending_ids == set()
        closed.assert_called_once()

    @pytest.mark.asyncio
    async def test_requests_after_close_go_out_on_reconnect(self, transport, connection):
        transport.attach(connection)
        connection.drop()
        await wait_for(lambda: transport.state == ConnectionState.CLOSED)

        task = asyncio.create_task(transport.request("server.ping"))
        await asyncio.sleep(0.01)
        assert not task.done()

        second = FakeConnection()
        transport.attach(second)
        request = await second.next_request()
        assert request["method"] == "server.ping"
        second.reply(request, None)
        assert await task is None
        assert connection.sent == []
        await transport.close()

    @pytest.mark.asyncio
    async def test_close_rejects_in_flight(self, transport, connection):
        transport.attach(connection)
        task = asyncio.create_task(transport.request("server.ping"))
        await connection.next_request()

        await transport.close()
        with pytest.raises(TransportClosedError):
            await task
        assert connection.closed

    @pytest.mark.asyncio
    async def test_keepalive_pings(self, connection):
        transport = ElectrumTransport("localhost", 50001, keepalive_interval=0.01)
        transport.attach(connection)

        request = await connection.next_request()
        assert request["method"] == "server.ping"
        connection.reply(request, None)
        await transport.close()


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_initial_result_and_pushes_reach_callback(self, transport, connection):
        received = []
        transport.attach(connection)

        task = asyncio.create_task(
            transport.subscribe("blockchain.scripthash", received.append, "aa11")
        )
        request = await connection.next_request()
        assert request["method"] == "blockchain.scripthash.subscribe"
        assert request["params"] == ["aa11"]
        connection.reply(request, "status-1")
        assert await task == "status-1"

        connection.push(
            {"method": "blockchain.scripthash.subscribe", "params": ["aa11", "status-2"]}
        )
        await wait_for(lambda: len(received) == 2)
        assert received == [["aa11", "status-1"], ["aa11", "status-2"]]
        assert transport.subscription_keys == {"blockchain.scripthash.subscribe-aa11"}
        await transport.close()

    @pytest.mark.asyncio
    async def test_unmatched_routing_key_is_dropped(self, transport, connection):
        received = []
        transport.attach(connection)

        task = asyncio.create_task(
            transport.subscribe("blockchain.scripthash", received.append, "aa11")
        )
        connection.reply(await connection.next_request(), None)
        await task
        await wait_for(lambda: len(received) == 1)

        connection.push(
            {"method": "blockchain.scripthash.subscribe", "params": ["bb22", "status"]}
        )
        connection.push(
            {"method": "blockchain.scripthash.subscribe", "params": ["aa11", "status"]}
        )
        await wait_for(lambda: len(received) == 2)
        assert received[1] == ["aa11", "status"]
        await transport.close()

    @pytest.mark.asyncio
    async def test_pushes_delivered_in_arrival_order(self, transport, connection):
        received = []

        async def slow_callback(params):
            await asyncio.sleep(0)
            received.append(params[0]["height"])

        transport.attach(connection)
        task = asyncio.create_task(transport.subscribe("blockchain.headers", slow_callback))
        connection.reply(await connection.next_request(), {"height": 0, "hex": ""})
        await task

        for height in range(1, 6):
            connection.push(
                {"method": "blockchain.headers.subscribe", "params": [{"height": height}]}
            )
        await wait_for(lambda: len(received) == 6)
        assert received == [0, 1, 2, 3, 4, 5]
        await transport.close()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_delivery(self, transport, connection):
        received = []

        def callback(params):
            received.append(params)
            if len(received) == 1:
                raise RuntimeError("boom")

        transport.attach(connection)
        task = asyncio.create_task(transport.subscribe("blockchain.headers", callback))
        connection.reply(await connection.next_request(), {"height": 1})
        await task

        connection.push({"method": "blockchain.headers.subscribe", "params": [{"height": 2}]})
        await wait_for(lambda: len(received) == 2)
        await transport.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, transport, connection):
        received = []
        transport.attach(connection)

        task = asyncio.create_task(
            transport.subscribe("blockchain.scripthash", received.append, "aa11")
        )
        connection.reply(await connection.next_request(), "s1")
        await task

        task = asyncio.create_task(transport.unsubscribe("blockchain.scripthash", "aa11"))
        request = await connection.next_request(2)
        assert request["method"] == "blockchain.scripthash.unsubscribe"
        assert request["params"] == ["aa11"]
        connection.reply(request, True)
        assert await task is True
        assert transport.subscription_keys == set()

        connection.push({"method": "blockchain.scripthash.subscribe", "params": ["aa11", "s2"]})
        await asyncio.sleep(0.01)
        assert received == [["aa11", "s1"]]
        await transport.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_accepts_full_subscribe_name(self, transport, connection):
        transport.attach(connection)

        task = asyncio.create_task(
            transport.subscribe("blockchain.scripthash.subscribe", lambda params: None, "bb22")
        )
        connection.reply(await connection.next_request(), "s1")
        await task
        assert transport.subscription_keys == {"blockchain.scripthash.subscribe-bb22"}

        task = asyncio.create_task(
            transport.unsubscribe("blockchain.scripthash.subscribe", "bb22")
        )
        request = await connection.next_request(2)
        assert request["method"] == "blockchain.scripthash.unsubscribe"
        connection.reply(request, True)
        assert await task is True
        assert transport.subscription_keys == set()
        await transport.close()

    @pytest.mark.asyncio
    async def test_resubscribe_after_reconnect(self, transport, connection):
        received = []
        transport.attach(connection)

        task = asyncio.create_task(
            transport.subscribe("blockchain.scripthash", received.append, "aa11")
        )
        connection.reply(await connection.next_request(), "s1")
        await task

        connection.drop()
        await wait_for(lambda: transport.state == ConnectionState.CLOSED)
        # Registrations survive a drop
        assert transport.subscription_keys == {"blockchain.scripthash.subscribe-aa11"}

        second = FakeConnection()
        transport.attach(second)
        task = asyncio.create_task(transport.resubscribe())
        request = await second.next_request()
        assert request["method"] == "blockchain.scripthash.subscribe"
        assert request["params"] == ["aa11"]
        second.reply(request, "s2")
        await task

        await wait_for(lambda: len(received) == 2)
        assert received == [["aa11", "s1"], ["aa11", "s2"]]
        await transport.close()
