"""
Round-Robin Allocator

Chooses the next staff member for an incoming order, per (hotel, branch)
scope, in a fixed rotating order:

    1. fetch the branch's candidates in creation order (fresh every time)
    2. start just after the last automatically assigned staff member
       (index 0 when the scope has no pointer)
    3. scan the list circularly once and take the first candidate the
       CapacityTracker lets through
    4. move the pointer to the chosen candidate

The scan order is deterministic, so exactly one candidate can be first.
Pointers are persisted rows; this class is their only writer.
"""

import logging
from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import CapacityExceeded, NoEligibleStaff
from orderflow.models import Order, RoundRobinPointer, Staff, utcnow
from orderflow.services.assignment.capacity import CapacityTracker
from orderflow.services.assignment.directory import StaffDirectory

logger = logging.getLogger(__name__)


class RoundRobinAllocator:
    """Rotating, capacity-aware staff selection."""

    def __init__(self, tracker: CapacityTracker, directory: StaffDirectory):
        self.tracker = tracker
        self.directory = directory

    # =========================================================================
    # POINTERS
    # =========================================================================

    async def get_pointer(
        self,
        db: AsyncSession,
        hotel_id: str,
        branch_id: str,
    ) -> Optional[RoundRobinPointer]:
        return await db.get(
            RoundRobinPointer,
            RoundRobinPointer.key_for(hotel_id, branch_id),
            populate_existing=True,
        )

    async def list_pointers(self, db: AsyncSession) -> list[RoundRobinPointer]:
        result = await db.execute(
            select(RoundRobinPointer).order_by(RoundRobinPointer.scope_key)
        )
        return list(result.scalars().all())

    async def reset_pointers(
        self,
        db: AsyncSession,
        hotel_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> int:
        """
        Forget rotation history.

        No arguments clears every scope; ``hotel_id`` alone clears all of a
        hotel's branches; both clear a single branch. Returns the number of
        pointers removed. The caller commits.
        """
        stmt = delete(RoundRobinPointer)
        if hotel_id:
            stmt = stmt.where(RoundRobinPointer.hotel_id == hotel_id)
        if branch_id:
            stmt = stmt.where(RoundRobinPointer.branch_id == branch_id)

        result = await db.execute(stmt.execution_options(synchronize_session="fetch"))
        scope = (
            "global" if not (hotel_id or branch_id)
            else f"hotel={hotel_id or '*'} branch={branch_id or '*'}"
        )
        logger.info(f"Round-robin reset ({scope}): {result.rowcount} pointer(s) cleared")
        return result.rowcount

    async def _advance(
        self,
        db: AsyncSession,
        hotel_id: str,
        branch_id: str,
        staff_id: int,
        index: int,
    ) -> None:
        pointer = await self.get_pointer(db, hotel_id, branch_id)
        if pointer is None:
            db.add(RoundRobinPointer(
                scope_key=RoundRobinPointer.key_for(hotel_id, branch_id),
                hotel_id=hotel_id,
                branch_id=branch_id,
                last_staff_id=staff_id,
                last_index=index,
                updated_at=utcnow(),
            ))
        else:
            pointer.last_staff_id = staff_id
            pointer.last_index = index
            pointer.updated_at = utcnow()

    # =========================================================================
    # SELECTION
    # =========================================================================

    @staticmethod
    def start_index(
        candidates: Sequence[Staff],
        pointer: Optional[RoundRobinPointer],
    ) -> int:
        """
        Position the scan starts from.

        If the last assignee has since left the list, the staff member who
        moved into its slot goes next.
        """
        if pointer is None or not candidates:
            return 0
        for i, staff in enumerate(candidates):
            if staff.id == pointer.last_staff_id:
                return (i + 1) % len(candidates)
        return pointer.last_index % len(candidates)

    async def allocate(self, db: AsyncSession, order: Order) -> tuple[Staff, int]:
        """
        Pick a staff member for ``order``, take one unit of their capacity
        and move the pointer. Nothing is committed here.

        Returns:
            (staff after increment, position in the rotation list)

        Raises:
            NoEligibleStaff: every candidate is full, or there are none
        """
        candidates = await self.directory.eligible_candidates(db, order.hotel_id, order.branch_id)
        if not candidates:
            raise NoEligibleStaff(
                f"No staff available in branch {order.branch_id}",
                hotel_id=order.hotel_id,
                branch_id=order.branch_id,
                order_id=order.id,
            )

        pointer = await self.get_pointer(db, order.hotel_id, order.branch_id)
        start = self.start_index(candidates, pointer)
        total = len(candidates)

        for step in range(total):
            index = (start + step) % total
            candidate = candidates[index]

            if not self.tracker.can_accept_order(candidate):
                continue

            try:
                staff = await self.tracker.increment(db, candidate.id)
            except CapacityExceeded:
                # Another process took the last slot after our read
                logger.warning(f"Lost capacity race on staff {candidate.id}, moving on")
                continue

            await self._advance(db, order.hotel_id, order.branch_id, staff.id, index)
            logger.info(
                f"Round-robin: order {order.id} -> staff {staff.id} ({staff.name}) "
                f"at position {index}/{total}, load {staff.active_order_count}/{staff.max_orders_capacity}"
            )
            return staff, index

        raise NoEligibleStaff(
            f"All {total} staff in branch {order.branch_id} are at capacity",
            hotel_id=order.hotel_id,
            branch_id=order.branch_id,
            order_id=order.id,
        )
