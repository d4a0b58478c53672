"""
Order Queue

Orders that found every staff member of their branch at capacity wait
here, one persisted row per order. Urgent orders are served first, then
first come first served. The queue never assigns anything by itself; the
OrderService pops entries and hands them to the assignment engine when
capacity frees up. None of these methods commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.models import TERMINAL_STATUSES, Order, OrderPriority, QueuedOrder, utcnow

logger = logging.getLogger(__name__)

PRIORITY_VALUES = {
    OrderPriority.NORMAL: 0,
    OrderPriority.URGENT: 1,
}


@dataclass
class QueuePosition:
    order_id: int
    hotel_id: str
    branch_id: str
    position: int
    priority: OrderPriority
    queued_at: datetime


class OrderQueue:
    """Persisted per-branch waiting line."""

    @staticmethod
    def _ordered(hotel_id: str, branch_id: str):
        return (
            select(QueuedOrder)
            .where(QueuedOrder.hotel_id == hotel_id, QueuedOrder.branch_id == branch_id)
            .order_by(QueuedOrder.priority_value.desc(), QueuedOrder.id)
        )

    async def enqueue(self, db: AsyncSession, order: Order) -> int:
        """Add ``order`` (no-op when already queued). Returns its 1-based position."""
        existing = await db.execute(select(QueuedOrder).where(QueuedOrder.order_id == order.id))
        if existing.scalar_one_or_none() is None:
            db.add(QueuedOrder(
                order_id=order.id,
                hotel_id=order.hotel_id,
                branch_id=order.branch_id,
                priority_value=PRIORITY_VALUES[order.priority],
                queued_at=utcnow(),
            ))
            await db.flush()

        position = await self.position(db, order.id)
        logger.info(f"Order #{order.id} queued in {order.hotel_id}/{order.branch_id} at position {position}")
        return position

    async def remove(self, db: AsyncSession, order_id: int) -> bool:
        result = await db.execute(
            delete(QueuedOrder)
            .where(QueuedOrder.order_id == order_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def peek(self, db: AsyncSession, hotel_id: str, branch_id: str) -> Optional[QueuedOrder]:
        result = await db.execute(self._ordered(hotel_id, branch_id).limit(1))
        return result.scalar_one_or_none()

    async def position(self, db: AsyncSession, order_id: int) -> Optional[int]:
        entry = (
            await db.execute(select(QueuedOrder).where(QueuedOrder.order_id == order_id))
        ).scalar_one_or_none()
        if entry is None:
            return None
        line = (await db.execute(self._ordered(entry.hotel_id, entry.branch_id))).scalars().all()
        return [e.order_id for e in line].index(order_id) + 1

    async def list_branch(self, db: AsyncSession, hotel_id: str, branch_id: str) -> list[QueuePosition]:
        rows = await db.execute(
            select(QueuedOrder, Order.priority)
            .join(Order, Order.id == QueuedOrder.order_id)
            .where(QueuedOrder.hotel_id == hotel_id, QueuedOrder.branch_id == branch_id)
            .order_by(QueuedOrder.priority_value.desc(), QueuedOrder.id)
        )
        return [
            QueuePosition(
                order_id=entry.order_id,
                hotel_id=entry.hotel_id,
                branch_id=entry.branch_id,
                position=i,
                priority=priority,
                queued_at=entry.queued_at,
            )
            for i, (entry, priority) in enumerate(rows.all(), start=1)
        ]

    async def scopes(self, db: AsyncSession) -> list[tuple[str, str]]:
        """Every (hotel, branch) that has someone waiting."""
        result = await db.execute(
            select(QueuedOrder.hotel_id, QueuedOrder.branch_id)
            .distinct()
            .order_by(QueuedOrder.hotel_id, QueuedOrder.branch_id)
        )
        return [(hotel_id, branch_id) for hotel_id, branch_id in result.all()]

    async def prune(self, db: AsyncSession) -> int:
        """Drop entries whose order is assigned, closed or gone. Returns how many."""
        still_waiting = select(Order.id).where(
            Order.staff_id.is_(None),
            Order.status.not_in(list(TERMINAL_STATUSES)),
        )
        result = await db.execute(
            delete(QueuedOrder)
            .where(QueuedOrder.order_id.not_in(still_waiting))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
