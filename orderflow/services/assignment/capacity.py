"""
Capacity Tracker

Authoritative per-staff count of active assignments. Every change is a
single conditional UPDATE so concurrent requests can never push a counter
past ``max_orders_capacity`` or below zero, whatever they read earlier.
"""

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import CapacityExceeded, StaffNotFound
from orderflow.models import TERMINAL_STATUSES, Order, Staff, StaffStatus, utcnow

logger = logging.getLogger(__name__)


class CapacityTracker:
    """The only writer of ``Staff.active_order_count``."""

    def can_accept_order(self, staff: Staff) -> bool:
        """True iff the staff member is active, available and below capacity."""
        return (
            staff.status == StaffStatus.ACTIVE
            and bool(staff.is_available)
            and staff.active_order_count < staff.max_orders_capacity
        )

    async def increment(self, db: AsyncSession, staff_id: int) -> Staff:
        """
        Take one unit of capacity.

        Raises:
            CapacityExceeded: the staff member was full (or became
                unavailable) by the time the write happened
        """
        now = utcnow()
        stmt = (
            update(Staff)
            .where(
                Staff.id == staff_id,
                Staff.active_order_count < Staff.max_orders_capacity,
                Staff.is_available.is_(True),
                Staff.status == StaffStatus.ACTIVE,
            )
            .values(
                active_order_count=Staff.active_order_count + 1,
                total_assignments=Staff.total_assignments + 1,
                last_assigned_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

        if result.rowcount != 1:
            raise CapacityExceeded(
                f"Staff {staff_id} cannot take another order",
                staff_id=staff_id,
            )

        return await self._reload(db, staff_id)

    async def decrement(
        self,
        db: AsyncSession,
        staff_id: int,
        completed: bool = False,
    ) -> Optional[Staff]:
        """
        Release one unit of capacity, floored at zero.

        A decrement on a zero counter is logged and otherwise ignored.
        ``completed`` also counts the order in the staff statistics.
        """
        values = {
            "active_order_count": Staff.active_order_count - 1,
            "updated_at": utcnow(),
        }
        if completed:
            values["completed_orders"] = Staff.completed_orders + 1

        stmt = (
            update(Staff)
            .where(Staff.id == staff_id, Staff.active_order_count > 0)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

        if result.rowcount != 1:
            logger.warning(f"Decrement on zero counter for staff {staff_id} ignored")
            try:
                return await self._reload(db, staff_id)
            except StaffNotFound:
                return None

        return await self._reload(db, staff_id)

    async def _reload(self, db: AsyncSession, staff_id: int) -> Staff:
        # The UPDATE bypassed the identity map; pull the fresh row back in
        staff = await db.get(Staff, staff_id, populate_existing=True)
        if staff is None:
            raise StaffNotFound(f"Staff {staff_id} not found", staff_id=staff_id)
        return staff

    async def recount(self, db: AsyncSession) -> dict[int, tuple[int, int]]:
        """
        Align every counter with the open orders actually assigned to that
        staff member. Used once at startup to repair drift left by a crash
        or by manual database edits. The caller commits.

        Returns:
            {staff_id: (old count, repaired count)} for the rows changed
        """
        open_orders = await db.execute(
            select(Order.staff_id, func.count(Order.id))
            .where(Order.staff_id.is_not(None), Order.status.not_in(list(TERMINAL_STATUSES)))
            .group_by(Order.staff_id)
        )
        actual = dict(open_orders.all())

        repaired: dict[int, tuple[int, int]] = {}
        for staff_id, counted in (await db.execute(select(Staff.id, Staff.active_order_count))).all():
            expected = actual.get(staff_id, 0)
            if expected == counted:
                continue
            await db.execute(
                update(Staff)
                .where(Staff.id == staff_id)
                .values(active_order_count=expected, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            logger.warning(f"Staff {staff_id} counter repaired: {counted} -> {expected}")
            repaired[staff_id] = (counted, expected)
        return repaired
