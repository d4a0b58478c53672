"""
Notification Transport Abstract Base Class

Defines the single primitive the fan-out needs from a real-time messaging
layer: publish an event to a named logical channel. Supports both Mock
(development) and Redis (staging/production) implementations.

Delivery is best-effort and at-most-once. Implementations may either return
an unsuccessful PublishResult or raise; the fan-out handles both.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class PublishResult:
    """Result from publishing one event to one channel."""
    success: bool
    channel: str
    event: str
    receivers: int = 0
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationTransport(ABC):
    """Abstract base class for notification transports."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def publish(
        self,
        channel: str,
        event: str,
        payload: dict[str, Any],
    ) -> PublishResult:
        """Publish an event on a logical channel."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check transport connectivity."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
