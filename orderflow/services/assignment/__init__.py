"""
Assignment Engine Factory

Builds the process-wide AssignmentService from settings and the shared
notification fan-out.
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.assignment.allocator import RoundRobinAllocator
from orderflow.services.assignment.capacity import CapacityTracker
from orderflow.services.assignment.directory import StaffDirectory
from orderflow.services.assignment.locks import ScopeLocks
from orderflow.services.assignment.override import ManualOverride
from orderflow.services.assignment.service import AssignmentResult, AssignmentService
from orderflow.services.notifications import get_notification_fanout

logger = logging.getLogger(__name__)


@lru_cache()
def get_assignment_service() -> AssignmentService:
    """Get the configured assignment engine."""
    settings = get_settings()
    return AssignmentService(
        fanout=get_notification_fanout(),
        assignable_roles=tuple(settings.assignable_roles_list),
        default_capacity=settings.default_max_orders_capacity,
    )


def reset_assignment_service() -> None:
    """Clear the cached instance."""
    get_assignment_service.cache_clear()


__all__ = [
    "get_assignment_service",
    "reset_assignment_service",
    "AssignmentService",
    "AssignmentResult",
    "CapacityTracker",
    "StaffDirectory",
    "RoundRobinAllocator",
    "ManualOverride",
    "ScopeLocks",
]
