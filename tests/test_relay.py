"""Tests for the Redis pub/sub to WebSocket relay."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from orderflow.services.notifications.real import RedisChannelRelay
from orderflow.services.notifications.websocket import ConnectionManager


class FakePubSub:
    """Plays one scripted step per subscription: an exception or a list of messages."""

    def __init__(self, step):
        self.step = step
        self.pattern = None
        self.closed = False

    async def psubscribe(self, pattern):
        self.pattern = pattern

    async def listen(self):
        if isinstance(self.step, Exception):
            raise self.step
        for message in self.step:
            yield message
        # Stay subscribed until cancelled
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self, steps):
        self.steps = list(steps)
        self.subscriptions = []
        self.closed = False

    def pubsub(self):
        pubsub = FakePubSub(self.steps.pop(0) if self.steps else [])
        self.subscriptions.append(pubsub)
        return pubsub

    async def aclose(self):
        self.closed = True


def pmessage(channel, body):
    return {"type": "pmessage", "pattern": "orderflow:*", "channel": f"orderflow:{channel}", "data": body}


async def wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)


@pytest.fixture
def connections():
    return AsyncMock(spec=ConnectionManager)


class TestRedisChannelRelay:

    @pytest.mark.asyncio
    async def test_forwards_pmessages_without_prefix(self, connections):
        client = FakeRedis([[
            {"type": "psubscribe", "pattern": None, "channel": "orderflow:*", "data": 1},
            pmessage("staff_4", json.dumps({"event": "order:assigned", "data": {"orderId": 9}})),
        ]])
        relay = RedisChannelRelay(prefix="orderflow", connections=connections, client=client)

        await relay.start()
        await wait_for(lambda: connections.broadcast.await_count)
        await relay.stop()

        connections.broadcast.assert_awaited_once_with("staff_4", {"event": "order:assigned", "data": {"orderId": 9}})
        assert client.subscriptions[0].pattern == "orderflow:*"
        assert client.subscriptions[0].closed

    @pytest.mark.asyncio
    async def test_malformed_message_is_skipped(self, connections):
        client = FakeRedis([[
            pmessage("branch_b1", "not json"),
            pmessage("branch_b1", json.dumps({"event": "order:completed"})),
        ]])
        relay = RedisChannelRelay(prefix="orderflow", connections=connections, client=client)

        await relay.start()
        await wait_for(lambda: connections.broadcast.await_count)
        await relay.stop()

        connections.broadcast.assert_awaited_once_with("branch_b1", {"event": "order:completed"})

    @pytest.mark.asyncio
    async def test_reconnects_after_connection_error(self, connections):
        client = FakeRedis([
            RedisConnectionError("blip"),
            [pmessage("manager_m1", json.dumps({"event": "order:cancelled"}))],
        ])
        relay = RedisChannelRelay(
            prefix="orderflow", connections=connections, client=client, initial_backoff=0.01,
        )

        await relay.start()
        await wait_for(lambda: connections.broadcast.await_count)

        assert relay.running
        assert relay.reconnects == 1
        assert len(client.subscriptions) == 2
        assert client.subscriptions[0].closed
        connections.broadcast.assert_awaited_once_with("manager_m1", {"event": "order:cancelled"})

        await relay.stop()
        assert not relay.running
        # Injected clients belong to the caller
        assert client.closed is False

    @pytest.mark.asyncio
    async def test_keeps_retrying_until_stopped(self, connections):
        client = FakeRedis([RedisConnectionError("down")] * 3)
        relay = RedisChannelRelay(
            prefix="orderflow", connections=connections, client=client,
            initial_backoff=0.01, max_backoff=0.02,
        )

        await relay.start()
        await wait_for(lambda: relay.reconnects >= 3)

        assert relay.running
        await relay.stop()
        connections.broadcast.assert_not_awaited()
