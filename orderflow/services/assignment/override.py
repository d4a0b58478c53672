"""
Manual Override

Manager/admin assignment that bypasses the round-robin choice. Capacity is
still enforced and counted; the round-robin pointer is never touched, so
manual work does not shift the rotation for later automatic assignments.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    CapacityExceeded,
    StaffAtCapacity,
    StaffNotInBranch,
    StaffUnavailable,
)
from orderflow.models import Order, Staff, StaffStatus
from orderflow.services.assignment.capacity import CapacityTracker

logger = logging.getLogger(__name__)


class ManualOverride:
    """Validates a hand-picked target and moves capacity for it."""

    def __init__(self, tracker: CapacityTracker):
        self.tracker = tracker

    def validate_target(self, order: Order, staff: Staff) -> None:
        """
        Raises:
            StaffNotInBranch: staff belongs to another hotel or branch
            StaffUnavailable: staff inactive or marked unavailable
            StaffAtCapacity: staff has no spare capacity
        """
        if staff.hotel_id != order.hotel_id or staff.branch_id != order.branch_id:
            raise StaffNotInBranch(
                f"Staff {staff.id} does not belong to branch {order.branch_id}",
                staff_id=staff.id,
                branch_id=order.branch_id,
            )
        if staff.status != StaffStatus.ACTIVE or not staff.is_available:
            raise StaffUnavailable(
                f"Staff {staff.id} is not available for assignments",
                staff_id=staff.id,
            )
        if staff.active_order_count >= staff.max_orders_capacity:
            raise StaffAtCapacity(
                f"Staff {staff.id} is at maximum capacity ({staff.max_orders_capacity} orders)",
                staff_id=staff.id,
                max_orders_capacity=staff.max_orders_capacity,
            )

    async def claim(self, db: AsyncSession, order: Order, staff: Staff) -> Staff:
        """Validate and take one unit of the target's capacity."""
        self.validate_target(order, staff)
        try:
            return await self.tracker.increment(db, staff.id)
        except CapacityExceeded as e:
            raise StaffAtCapacity(
                f"Staff {staff.id} reached capacity before the assignment committed",
                staff_id=staff.id,
            ) from e

    async def transfer(
        self,
        db: AsyncSession,
        order: Order,
        new_staff: Staff,
    ) -> tuple[Staff, Optional[Staff]]:
        """
        Move one unit of load from the order's current assignee to
        ``new_staff``. Both writes land in the caller's transaction, so the
        change is visible all at once or not at all.

        Returns:
            (new staff, previous staff) after the counter changes
        """
        previous_id = order.staff_id
        claimed = await self.claim(db, order, new_staff)
        released = await self.tracker.decrement(db, previous_id)
        logger.info(
            f"Transfer order {order.id}: staff {previous_id} -> {claimed.id} "
            f"(loads now {released.active_order_count if released else '?'} / {claimed.active_order_count})"
        )
        return claimed, released
