"""
                        Services Module

Business logic of the assignment service. Pluggable pieces have a Mock
(development) and a Real (production) implementation.

Services:
    - assignment: Capacity tracking, round-robin allocation, manual override
    - orders: Order lifecycle around the assignment engine
    - queue: Per-branch waiting line for orders nobody can take yet
    - notifications: Event routing and in-memory / Redis pub/sub fan-out
    - scheduler: Daily round-robin reset
"""

from orderflow.services.assignment import get_assignment_service
from orderflow.services.notifications import get_notification_fanout, get_notification_transport
from orderflow.services.orders import get_order_service
from orderflow.services.scheduler import get_reset_scheduler

__all__ = [
    "get_assignment_service",
    "get_notification_fanout",
    "get_notification_transport",
    "get_order_service",
    "get_reset_scheduler",
]
