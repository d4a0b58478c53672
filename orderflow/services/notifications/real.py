"""
Redis Notification Transport

Production implementation using Redis pub/sub:
- RedisNotificationTransport publishes every event to ``<prefix>:<channel>``
- RedisChannelRelay pattern-subscribes in each API process and forwards
  messages to that process's WebSocket subscribers

Redis pub/sub is fire-and-forget: messages published while nobody listens
are lost, which matches the at-most-once notification contract.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from orderflow.core.config import get_settings
from orderflow.services.notifications.base import (
    BaseNotificationTransport,
    PublishResult,
)
from orderflow.services.notifications.websocket import ConnectionManager, ws_manager

logger = logging.getLogger(__name__)
settings = get_settings()


class RedisNotificationTransport(BaseNotificationTransport):
    """Production notification transport using Redis PUBLISH."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.prefix = prefix or settings.notification_channel_prefix
        self.client = client or redis.from_url(
            redis_url or settings.redis_url,
            decode_responses=True,
        )
        logger.info(f"RedisNotificationTransport initialized (prefix={self.prefix})")

    @property
    def provider_name(self) -> str:
        return "redis"

    def _redis_channel(self, channel: str) -> str:
        return f"{self.prefix}:{channel}"

    async def publish(
        self,
        channel: str,
        event: str,
        payload: dict[str, Any],
    ) -> PublishResult:
        """Publish via Redis."""
        message = json.dumps({"event": event, "data": payload}, default=str)

        try:
            receivers = await self.client.publish(self._redis_channel(channel), message)
        except RedisError as e:
            logger.error(f"Redis publish error on {channel}: {e}")
            return PublishResult(
                success=False,
                channel=channel,
                event=event,
                error_message=str(e),
                provider="redis",
            )

        return PublishResult(
            success=True,
            channel=channel,
            event=event,
            receivers=receivers,
            provider="redis",
        )

    async def health_check(self) -> bool:
        """Ping Redis."""
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()


class RedisChannelRelay:
    """
    Forwards Redis pub/sub messages to local WebSocket subscribers.

    One relay runs per API process so a client connected to any instance
    receives events published by every instance. A lost connection is
    retried with exponential backoff until the relay is stopped; messages
    published while it is reconnecting are lost.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        connections: Optional[ConnectionManager] = None,
        client: Optional[redis.Redis] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
    ):
        self.prefix = prefix or settings.notification_channel_prefix
        self.redis_url = redis_url or settings.redis_url
        self.connections = connections if connections is not None else ws_manager
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._client = client
        self._task: Optional[asyncio.Task] = None
        self.reconnects = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="redis-channel-relay")
            logger.info(f"Redis channel relay listening on {self.prefix}:*")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        client = self._client or redis.from_url(self.redis_url, decode_responses=True)
        backoff = self.initial_backoff
        try:
            while True:
                pubsub = client.pubsub()
                try:
                    await pubsub.psubscribe(f"{self.prefix}:*")
                    backoff = self.initial_backoff
                    await self._forward(pubsub)
                    logger.warning("Redis channel relay subscription ended")
                except RedisError as e:
                    logger.warning(f"Redis channel relay lost connection: {e}; retrying in {backoff:.1f}s")
                finally:
                    await self._close_pubsub(pubsub)

                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                self.reconnects += 1
        finally:
            if self._client is None:
                await client.aclose()

    async def _forward(self, pubsub) -> None:
        strip = len(self.prefix) + 1
        async for message in pubsub.listen():
            if message.get("type") != "pmessage":
                continue
            channel = message["channel"][strip:]
            try:
                body = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning(f"Dropping malformed relay message on {channel}")
                continue
            await self.connections.broadcast(channel, body)

    @staticmethod
    async def _close_pubsub(pubsub) -> None:
        try:
            await pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Ignoring error while closing relay subscription: {e}")
