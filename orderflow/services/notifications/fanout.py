"""
Notification Fan-out

Turns one AssignmentEvent into publishes on every routed channel. Delivery
never blocks or fails the assignment that produced the event: ``emit``
schedules delivery in the background, and every transport error is caught,
logged and counted.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from orderflow.core.exceptions import NotificationDeliveryFailure
from orderflow.services.notifications.base import BaseNotificationTransport
from orderflow.services.notifications.routing import AssignmentEvent

logger = logging.getLogger(__name__)


@dataclass
class FanoutReport:
    """Outcome of delivering one event."""
    event: str
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class NotificationFanout:
    """The only caller of the notification transport."""

    def __init__(self, transport: BaseNotificationTransport):
        self.transport = transport
        self._pending: set[asyncio.Task] = set()

    def emit(self, event: AssignmentEvent) -> None:
        """Fire-and-forget delivery of an event."""
        try:
            task = asyncio.get_running_loop().create_task(self.dispatch(event))
        except RuntimeError:
            logger.error(f"No running loop, dropping {event.event_name} for order {event.order_id}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def dispatch(self, event: AssignmentEvent) -> FanoutReport:
        """Publish an event to all of its channels. Never raises."""
        report = FanoutReport(event=event.event_name)
        payload = event.payload()

        for channel in event.channels():
            try:
                result = await self.transport.publish(channel, event.event_name, payload)
                if not result.success:
                    raise NotificationDeliveryFailure(channel, event.event_name, result.error_message)
            except Exception as e:
                failure = e if isinstance(e, NotificationDeliveryFailure) else NotificationDeliveryFailure(
                    channel, event.event_name, str(e)
                )
                logger.error(f"Notification dropped: {failure}")
                report.failed.append(channel)
                continue
            report.delivered.append(channel)

        if report.delivered:
            logger.debug(f"{event.event_name} for order {event.order_id} -> {report.delivered}")
        return report

    async def drain(self) -> None:
        """Wait for outstanding deliveries (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
