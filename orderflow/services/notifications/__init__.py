"""
Notification Service Factory

Returns the Mock or Redis notification transport based on ENV_MODE, and
the fan-out built on top of it.
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.notifications.base import (
    BaseNotificationTransport,
    PublishResult,
)
from orderflow.services.notifications.fanout import FanoutReport, NotificationFanout
from orderflow.services.notifications.mock import MockNotificationTransport
from orderflow.services.notifications.routing import AssignmentEvent, EventKind

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_transport() -> BaseNotificationTransport:
    """Get the configured notification transport."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Transport: Using MockNotificationTransport (development mode)")
        return MockNotificationTransport(failure_rate=settings.notification_failure_rate)
    else:
        from orderflow.services.notifications.real import RedisNotificationTransport

        logger.info(f"Notification Transport: Using RedisNotificationTransport ({settings.env_mode.value} mode)")
        return RedisNotificationTransport()


@lru_cache()
def get_notification_fanout() -> NotificationFanout:
    """Get the process-wide fan-out."""
    return NotificationFanout(get_notification_transport())


def reset_notification_service() -> None:
    """Clear the cached instances."""
    get_notification_fanout.cache_clear()
    get_notification_transport.cache_clear()


__all__ = [
    "get_notification_transport",
    "get_notification_fanout",
    "reset_notification_service",
    "BaseNotificationTransport",
    "PublishResult",
    "NotificationFanout",
    "FanoutReport",
    "AssignmentEvent",
    "EventKind",
]
