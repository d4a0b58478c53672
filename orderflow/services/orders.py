"""
Order Service

Order lifecycle around the assignment engine: placing orders (with
automatic assignment), status transitions, and the assignee's
acknowledge / viewed signals.

Orders nobody can take yet wait in the branch queue. Whenever capacity
frees up (an order closes, staff join or come back, an order moves to
someone else) the queue is worked off from the head until the branch is
full again.
"""

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    InvalidStatusTransition,
    NoEligibleStaff,
    OrderAlreadyAssigned,
    OrderInTerminalState,
    OrderNotAssignedToStaff,
    OrderNotFound,
)
from orderflow.models import (
    ORDER_TRANSITIONS,
    TERMINAL_STATUSES,
    AssignmentHistory,
    Order,
    OrderPriority,
    OrderStatus,
    QueuedOrder,
    utcnow,
)
from orderflow.services.assignment import AssignmentResult, AssignmentService, get_assignment_service
from orderflow.services.notifications.routing import AssignmentEvent, EventKind
from orderflow.services.queue import OrderQueue

logger = logging.getLogger(__name__)


@dataclass
class OrderPlacement:
    """Result of placing an order."""
    order: Order
    assignment: Optional[AssignmentResult] = None
    assignment_error: Optional[str] = None
    queue_position: Optional[int] = None

    @property
    def assigned(self) -> bool:
        return self.assignment is not None

    @property
    def queued(self) -> bool:
        return self.queue_position is not None


@dataclass
class RecoveryReport:
    """What the startup pass found and fixed."""
    queued: int = 0
    dropped: int = 0
    repaired: dict[int, tuple[int, int]] = field(default_factory=dict)
    assigned: list[AssignmentResult] = field(default_factory=list)


class OrderService:
    """Creates orders and walks them through their lifecycle."""

    def __init__(self, assignment: AssignmentService, queue: Optional[OrderQueue] = None):
        self.assignment = assignment
        self.queue = queue or OrderQueue()

    async def create_order(
        self,
        db: AsyncSession,
        hotel_id: str,
        branch_id: str,
        table_number: Optional[str] = None,
        items: Optional[list[dict[str, Any]]] = None,
        total_amount: float = 0.0,
        priority: OrderPriority = OrderPriority.NORMAL,
        auto_assign: bool = True,
    ) -> OrderPlacement:
        """
        Persist a pending order and, unless disabled, assign it right away.

        When nobody in the branch has spare capacity the order is kept
        unassigned, put at the back of the branch queue, and the reason is
        reported in the placement.
        """
        order = Order(
            hotel_id=hotel_id,
            branch_id=branch_id,
            table_number=table_number,
            items=json.dumps(items or []),
            total_amount=total_amount,
            status=OrderStatus.PENDING,
            priority=priority,
            created_at=utcnow(),
        )
        db.add(order)
        await db.commit()
        order_id = order.id
        logger.info(f"Order #{order_id} created in {hotel_id}/{branch_id}")

        placement = OrderPlacement(order=order)
        if not auto_assign:
            return placement

        try:
            placement.assignment = await self.assignment.assign(db, order_id)
        except NoEligibleStaff as e:
            # The failed attempt rolled back and expired the instance
            logger.warning(f"Order #{order_id} left unassigned: {e.message}")
            placement.assignment_error = e.message
            placement.queue_position = await self._enqueue(db, order_id)
        placement.order = await self.assignment.load_order(db, order_id)
        return placement

    async def get_order(self, db: AsyncSession, order_id: int) -> Order:
        return await self.assignment.load_order(db, order_id)

    async def list_orders(
        self,
        db: AsyncSession,
        hotel_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        staff_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[Order]]:
        """Paginated order listing, newest first. Returns (total, page)."""
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        count_query = select(func.count(Order.id))

        filters = []
        if hotel_id:
            filters.append(Order.hotel_id == hotel_id)
        if branch_id:
            filters.append(Order.branch_id == branch_id)
        if status:
            filters.append(Order.status == status)
        if staff_id is not None:
            filters.append(Order.staff_id == staff_id)
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total = (await db.execute(count_query)).scalar() or 0
        result = await db.execute(
            query.offset(skip).limit(limit).execution_options(populate_existing=True)
        )
        return total, list(result.scalars().all())

    async def history(self, db: AsyncSession, order_id: int) -> list[AssignmentHistory]:
        await self.assignment.load_order(db, order_id)
        result = await db.execute(
            select(AssignmentHistory)
            .where(AssignmentHistory.order_id == order_id)
            .order_by(AssignmentHistory.created_at, AssignmentHistory.id)
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        db: AsyncSession,
        order_id: int,
        new_status: OrderStatus,
    ) -> Order:
        """
        Move an order along its workflow.

        Completion and cancellation go through the assignment engine so the
        assignee's capacity is released in the same transaction. The order
        leaves the queue if it was waiting, and the freed slot goes to the
        head of the branch queue.
        """
        if new_status in TERMINAL_STATUSES:
            if new_status == OrderStatus.COMPLETED:
                order = await self.assignment.on_order_completed(db, order_id)
            else:
                order = await self.assignment.on_order_cancelled(db, order_id)
            hotel_id, branch_id = order.hotel_id, order.branch_id

            await self._dequeue(db, order_id)
            await self.drain_queue(db, hotel_id, branch_id)
            return await self.assignment.load_order(db, order_id)

        order = await self.assignment.load_order(db, order_id)
        if new_status not in ORDER_TRANSITIONS[order.status]:
            raise InvalidStatusTransition(
                f"Order {order.id} cannot move from {order.status.value} to {new_status.value}",
                order_id=order.id,
                current=order.status.value,
                requested=new_status.value,
            )

        order.status = new_status
        order.updated_at = utcnow()
        await db.commit()
        logger.info(f"Order #{order.id} -> {new_status.value}")
        return order

    async def assign(self, db: AsyncSession, order_id: int, actor: str = "system") -> AssignmentResult:
        """
        Explicit automatic assignment of one order.

        Raises:
            NoEligibleStaff: the order is queued (if it was not already)
                before the error propagates
        """
        try:
            result = await self.assignment.assign(db, order_id, actor=actor)
        except NoEligibleStaff:
            await self._enqueue(db, order_id)
            raise
        await self._dequeue(db, order_id)
        return result

    async def manual_assign(
        self,
        db: AsyncSession,
        order_id: int,
        staff_id: int,
        reason: Optional[str] = None,
        actor: str = "manager",
        allow_reassign: bool = False,
    ) -> AssignmentResult:
        """Manager override. A queued order leaves the queue; a moved order frees a slot."""
        result = await self.assignment.manual_assign(
            db, order_id, staff_id, reason=reason, actor=actor, allow_reassign=allow_reassign,
        )
        await self._dequeue(db, order_id)
        if result.previous_staff_id is not None:
            await self._drain_order_branch(db, order_id)
        return result

    async def reassign(
        self,
        db: AsyncSession,
        order_id: int,
        new_staff_id: int,
        reason: Optional[str] = None,
        actor: str = "manager",
    ) -> AssignmentResult:
        result = await self.assignment.reassign(db, order_id, new_staff_id, reason=reason, actor=actor)
        await self._drain_order_branch(db, order_id)
        return result

    async def drain_queue(self, db: AsyncSession, hotel_id: str, branch_id: str) -> list[AssignmentResult]:
        """
        Assign queued orders of one branch, head first, until the queue is
        empty or nobody has spare capacity. Entries whose order was assigned,
        closed or deleted elsewhere are dropped on the way.
        """
        assigned: list[AssignmentResult] = []
        while True:
            entry = await self.queue.peek(db, hotel_id, branch_id)
            if entry is None:
                break
            order_id = entry.order_id

            try:
                result = await self.assignment.assign(db, order_id, actor="queue")
            except NoEligibleStaff:
                break
            except (OrderAlreadyAssigned, OrderInTerminalState, OrderNotFound) as e:
                logger.info(f"Dropping stale queue entry for order #{order_id}: {e.message}")
                await self._dequeue(db, order_id)
                continue

            await self._dequeue(db, order_id)
            assigned.append(result)

        if assigned:
            logger.info(f"Queue {hotel_id}/{branch_id}: assigned {len(assigned)} waiting order(s)")
        return assigned

    async def recover(self, db: AsyncSession) -> RecoveryReport:
        """
        Startup pass over what a previous process may have left behind:
        queue every open unassigned order that is not waiting yet, drop
        queue entries that no longer wait, recount staff counters from the
        orders they actually hold, then work off every branch queue.
        """
        report = RecoveryReport()
        try:
            orphans = await db.execute(
                select(Order)
                .outerjoin(QueuedOrder, QueuedOrder.order_id == Order.id)
                .where(
                    Order.staff_id.is_(None),
                    Order.status.not_in(list(TERMINAL_STATUSES)),
                    QueuedOrder.id.is_(None),
                )
                .order_by(Order.created_at, Order.id)
            )
            for order in orphans.scalars().all():
                await self.queue.enqueue(db, order)
                report.queued += 1

            report.dropped = await self.queue.prune(db)
            report.repaired = await self.assignment.tracker.recount(db)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        for hotel_id, branch_id in await self.queue.scopes(db):
            report.assigned.extend(await self.drain_queue(db, hotel_id, branch_id))

        logger.info(
            f"Recovery: {report.queued} order(s) queued, {report.dropped} stale entr(ies) dropped, "
            f"{len(report.repaired)} counter(s) repaired, {len(report.assigned)} assigned"
        )
        return report

    async def _enqueue(self, db: AsyncSession, order_id: int) -> int:
        try:
            order = await self.assignment.load_order(db, order_id)
            position = await self.queue.enqueue(db, order)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return position

    async def _dequeue(self, db: AsyncSession, order_id: int) -> None:
        if await self.queue.remove(db, order_id):
            await db.commit()

    async def _drain_order_branch(self, db: AsyncSession, order_id: int) -> None:
        order = await self.assignment.load_order(db, order_id)
        await self.drain_queue(db, order.hotel_id, order.branch_id)

    async def acknowledge(self, db: AsyncSession, order_id: int, staff_id: int) -> Order:
        """The assignee confirms they have taken the order."""
        order = await self._assignee_order(db, order_id, staff_id)
        now = utcnow()
        order.acknowledged_at = now
        order.acknowledged_by = staff_id
        order.updated_at = now
        await db.commit()

        await self._notify_manager(db, order, EventKind.ACKNOWLEDGED, staff_id)
        return order

    async def mark_viewed(self, db: AsyncSession, order_id: int, staff_id: int) -> Order:
        """The assignee opened the order."""
        order = await self._assignee_order(db, order_id, staff_id)
        order.viewed_at = utcnow()
        await db.commit()

        await self._notify_manager(db, order, EventKind.VIEWED, staff_id)
        return order

    async def _assignee_order(self, db: AsyncSession, order_id: int, staff_id: int) -> Order:
        order = await self.assignment.load_order(db, order_id)
        if order.staff_id != staff_id:
            raise OrderNotAssignedToStaff(
                f"Order {order.id} is not assigned to staff {staff_id}",
                order_id=order.id,
                staff_id=staff_id,
                assigned_staff_id=order.staff_id,
            )
        return order

    async def _notify_manager(
        self,
        db: AsyncSession,
        order: Order,
        kind: EventKind,
        staff_id: int,
    ) -> None:
        staff = await self.assignment.directory.get_staff(db, staff_id)
        timestamp = order.acknowledged_at if kind == EventKind.ACKNOWLEDGED else order.viewed_at
        self.assignment.fanout.emit(AssignmentEvent(
            kind=kind,
            hotel_id=order.hotel_id,
            branch_id=order.branch_id,
            order_id=order.id,
            staff_id=staff_id,
            manager_id=staff.manager_id,
            actor=f"staff:{staff_id}",
            data={"staffName": staff.name, "at": timestamp.isoformat() if timestamp else None},
        ))


@lru_cache()
def get_order_service() -> OrderService:
    """Get the process-wide order service."""
    return OrderService(get_assignment_service())
