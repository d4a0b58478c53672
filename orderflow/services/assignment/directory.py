"""
Staff Directory

Read side of the staff records the engine needs, plus the small amount of
staff management (create, availability, removal) required to run it.
Candidate lists are fetched fresh for every assignment decision.
"""

import logging
from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import StaffHasActiveOrders, StaffNotFound
from orderflow.models import Staff, StaffRole, StaffStatus, utcnow

logger = logging.getLogger(__name__)


class StaffDirectory:
    """Queries over the ``staff`` table."""

    def __init__(self, assignable_roles: Sequence[str], default_capacity: int = 20):
        self.assignable_roles = [StaffRole(r) for r in assignable_roles]
        self.default_capacity = default_capacity

    async def eligible_candidates(
        self,
        db: AsyncSession,
        hotel_id: str,
        branch_id: str,
    ) -> list[Staff]:
        """
        Active, available staff with an assignable role in one branch, in
        rotation order (creation order).

        Capacity is not filtered here so the rotation order stays stable
        while staff fill up and drain.
        """
        stmt = (
            select(Staff)
            .where(
                Staff.hotel_id == hotel_id,
                Staff.branch_id == branch_id,
                Staff.role.in_(self.assignable_roles),
                Staff.status == StaffStatus.ACTIVE,
                Staff.is_available.is_(True),
            )
            .order_by(Staff.id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_staff(self, db: AsyncSession, staff_id: int) -> Staff:
        staff = await db.get(Staff, staff_id, populate_existing=True)
        if staff is None:
            raise StaffNotFound(f"Staff {staff_id} not found", staff_id=staff_id)
        return staff

    async def list_staff(
        self,
        db: AsyncSession,
        hotel_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> list[Staff]:
        stmt = select(Staff).order_by(Staff.id)
        if hotel_id:
            stmt = stmt.where(Staff.hotel_id == hotel_id)
        if branch_id:
            stmt = stmt.where(Staff.branch_id == branch_id)
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def create_staff(
        self,
        db: AsyncSession,
        name: str,
        hotel_id: str,
        branch_id: str,
        role: StaffRole = StaffRole.WAITER,
        manager_id: Optional[str] = None,
        max_orders_capacity: Optional[int] = None,
        is_available: bool = True,
    ) -> Staff:
        staff = Staff(
            name=name,
            role=role,
            hotel_id=hotel_id,
            branch_id=branch_id,
            manager_id=manager_id,
            max_orders_capacity=max_orders_capacity or self.default_capacity,
            is_available=is_available,
            status=StaffStatus.ACTIVE,
            active_order_count=0,
            total_assignments=0,
            completed_orders=0,
            created_at=utcnow(),
        )
        db.add(staff)
        await db.commit()
        logger.info(f"Staff #{staff.id} ({name}) created in {hotel_id}/{branch_id}")
        return staff

    async def set_availability(
        self,
        db: AsyncSession,
        staff_id: int,
        is_available: bool,
    ) -> Staff:
        staff = await self.get_staff(db, staff_id)
        staff.is_available = is_available
        staff.updated_at = utcnow()
        await db.commit()
        logger.info(f"Staff #{staff_id} availability -> {is_available}")
        return staff

    async def remove_staff(self, db: AsyncSession, staff_id: int) -> None:
        """Delete a staff member who holds no active orders."""
        staff = await self.get_staff(db, staff_id)

        # Conditional so an assignment racing with the removal wins
        result = await db.execute(
            delete(Staff)
            .where(Staff.id == staff_id, Staff.active_order_count == 0)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            active = staff.active_order_count
            await db.rollback()
            raise StaffHasActiveOrders(
                f"Staff {staff_id} still holds {active} active orders; reassign them first",
                staff_id=staff_id,
                active_order_count=active,
            )
        db.expunge(staff)
        await db.commit()
        logger.info(f"Staff #{staff_id} removed")
