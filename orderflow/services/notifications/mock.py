"""
Mock Notification Transport

In-process transport for development and tests. Every publish is recorded
in memory and pushed straight to local WebSocket subscribers; nothing
leaves the process.
"""

import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from orderflow.services.notifications.base import (
    BaseNotificationTransport,
    PublishResult,
)
from orderflow.services.notifications.websocket import ConnectionManager, ws_manager

logger = logging.getLogger(__name__)


@dataclass
class PublishedMessage:
    channel: str
    event: str
    payload: dict[str, Any]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MockNotificationTransport(BaseNotificationTransport):
    """Mock notification transport for development."""

    def __init__(
        self,
        failure_rate: float = 0.0,
        connections: Optional[ConnectionManager] = None,
        history_size: int = 1000,
    ):
        self.failure_rate = failure_rate
        self.connections = connections if connections is not None else ws_manager
        self.published: deque[PublishedMessage] = deque(maxlen=history_size)
        logger.info(f"MockNotificationTransport initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def publish(
        self,
        channel: str,
        event: str,
        payload: dict[str, Any],
    ) -> PublishResult:
        """Record the event and deliver it to local subscribers."""
        if self._should_fail():
            logger.warning(f"Mock publish failed (simulated): {event} -> {channel}")
            return PublishResult(
                success=False,
                channel=channel,
                event=event,
                error_message="Simulated publish failure",
                provider="mock",
            )

        self.published.append(PublishedMessage(channel=channel, event=event, payload=payload))
        receivers = await self.connections.broadcast(
            channel, {"event": event, "data": payload}
        )
        logger.debug(f"Mock publish {event} -> {channel} ({receivers} receivers)")

        return PublishResult(
            success=True,
            channel=channel,
            event=event,
            receivers=receivers,
            provider="mock",
        )

    def messages_for(self, channel: str) -> list[PublishedMessage]:
        """Everything published on one channel, oldest first."""
        return [m for m in self.published if m.channel == channel]

    def clear(self) -> None:
        self.published.clear()

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
