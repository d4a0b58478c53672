"""
Assignment Service

Entry point of the assignment engine. Composes the CapacityTracker, the
RoundRobinAllocator and the ManualOverride, owns the transaction around
every decision and hands the resulting events to the notification fan-out
once the decision is committed.

Every operation here either commits completely or rolls back and raises a
typed AssignmentError; an order is never left half-assigned. Notification
problems are absorbed by the fan-out and never surface here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    InvalidStatusTransition,
    OrderAlreadyAssigned,
    OrderAlreadyAssignedToTarget,
    OrderInTerminalState,
    OrderNotAssigned,
    OrderNotFound,
)
from orderflow.models import (
    ORDER_TRANSITIONS,
    AssignmentAction,
    AssignmentHistory,
    AssignmentMethod,
    Order,
    OrderPriority,
    OrderStatus,
    RoundRobinPointer,
    Staff,
    StaffStatus,
    utcnow,
)
from orderflow.services.assignment.allocator import RoundRobinAllocator
from orderflow.services.assignment.capacity import CapacityTracker
from orderflow.services.assignment.directory import StaffDirectory
from orderflow.services.assignment.locks import ScopeLocks
from orderflow.services.assignment.override import ManualOverride
from orderflow.services.notifications.fanout import NotificationFanout
from orderflow.services.notifications.routing import AssignmentEvent, EventKind

logger = logging.getLogger(__name__)


@dataclass
class AssignmentResult:
    """Outcome of a successful assignment decision."""
    order_id: int
    staff_id: int
    staff_name: str
    active_order_count: int
    max_orders_capacity: int
    method: AssignmentMethod
    assigned_at: datetime
    previous_staff_id: Optional[int] = None
    rotation_index: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "order_id": self.order_id,
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "active_order_count": self.active_order_count,
            "max_orders_capacity": self.max_orders_capacity,
            "method": self.method.value,
            "assigned_at": self.assigned_at.isoformat(),
            "previous_staff_id": self.previous_staff_id,
            "rotation_index": self.rotation_index,
            "reason": self.reason,
        }


class AssignmentService:
    """
    Order-to-staff assignment engine.

    Operations:
        - assign: automatic round-robin assignment
        - manual_assign / reassign: manager override
        - on_order_completed / on_order_cancelled: release capacity
        - reset_round_robin: forget rotation history
        - stats: branch load overview
    """

    def __init__(
        self,
        fanout: NotificationFanout,
        assignable_roles: tuple[str, ...] = ("waiter",),
        default_capacity: int = 20,
        locks: Optional[ScopeLocks] = None,
    ):
        self.tracker = CapacityTracker()
        self.directory = StaffDirectory(assignable_roles, default_capacity=default_capacity)
        self.allocator = RoundRobinAllocator(self.tracker, self.directory)
        self.override = ManualOverride(self.tracker)
        self.locks = locks or ScopeLocks()
        self.fanout = fanout

        logger.info(
            f"AssignmentService initialized (roles={list(assignable_roles)}, "
            f"default_capacity={default_capacity}, transport={fanout.transport.provider_name})"
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def scope_key(order: Order) -> str:
        return RoundRobinPointer.key_for(order.hotel_id, order.branch_id)

    async def load_order(self, db: AsyncSession, order_id: int) -> Order:
        order = await db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    async def _lock_row(self, db: AsyncSession, order: Order) -> None:
        # Re-read under the scope lock; FOR UPDATE guards against other processes
        await db.refresh(order, with_for_update=True)

    @staticmethod
    def _ensure_open(order: Order) -> None:
        if order.is_terminal:
            raise OrderInTerminalState(
                f"Order {order.id} is {order.status.value}",
                order_id=order.id,
                status=order.status.value,
            )

    @staticmethod
    def _record(
        db: AsyncSession,
        order: Order,
        staff: Staff,
        method: AssignmentMethod,
        action: AssignmentAction,
        actor: str,
        reason: Optional[str],
        previous_staff_id: Optional[int] = None,
    ) -> datetime:
        now = utcnow()
        order.staff_id = staff.id
        order.assigned_at = now
        order.assignment_method = method
        order.updated_at = now
        db.add(AssignmentHistory(
            order_id=order.id,
            staff_id=staff.id,
            previous_staff_id=previous_staff_id,
            action=action,
            method=method,
            actor=actor,
            reason=reason,
            created_at=now,
        ))
        return now

    @staticmethod
    def _assigned_event(
        order: Order,
        staff: Staff,
        method: AssignmentMethod,
        actor: str,
        reason: Optional[str],
        previous_staff_id: Optional[int] = None,
    ) -> AssignmentEvent:
        return AssignmentEvent(
            kind=EventKind.ASSIGNED,
            hotel_id=order.hotel_id,
            branch_id=order.branch_id,
            order_id=order.id,
            staff_id=staff.id,
            manager_id=staff.manager_id,
            previous_staff_id=previous_staff_id,
            actor=actor,
            method=method.value,
            reason=reason,
            data={
                "staffName": staff.name,
                "priority": order.priority.value,
                "tableNumber": order.table_number,
                "activeOrderCount": staff.active_order_count,
            },
        )

    def _publish(self, events: list[AssignmentEvent]) -> None:
        for event in events:
            self.fanout.emit(event)

    # =========================================================================
    # AUTOMATIC ASSIGNMENT
    # =========================================================================

    async def assign(
        self,
        db: AsyncSession,
        order_id: int,
        actor: str = "system",
    ) -> AssignmentResult:
        """
        Hand an order to the next eligible staff member of its branch.

        Raises:
            NoEligibleStaff: nobody has spare capacity; the order stays
                unassigned and the caller decides whether to retry or escalate
            OrderAlreadyAssigned / OrderInTerminalState
        """
        order = await self.load_order(db, order_id)

        async with self.locks.hold(self.scope_key(order)):
            try:
                await self._lock_row(db, order)
                self._ensure_open(order)
                if order.staff_id is not None:
                    raise OrderAlreadyAssigned(
                        f"Order {order.id} is already assigned to staff {order.staff_id}",
                        order_id=order.id,
                        staff_id=order.staff_id,
                    )

                staff, index = await self.allocator.allocate(db, order)
                reason = "automatic-assignment"
                assigned_at = self._record(
                    db, order, staff,
                    AssignmentMethod.ROUND_ROBIN, AssignmentAction.ASSIGNED,
                    actor, reason,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        self._publish([
            self._assigned_event(order, staff, AssignmentMethod.ROUND_ROBIN, actor, reason)
        ])

        return AssignmentResult(
            order_id=order.id,
            staff_id=staff.id,
            staff_name=staff.name,
            active_order_count=staff.active_order_count,
            max_orders_capacity=staff.max_orders_capacity,
            method=AssignmentMethod.ROUND_ROBIN,
            assigned_at=assigned_at,
            rotation_index=index,
            reason=reason,
        )

    # =========================================================================
    # MANUAL OVERRIDE
    # =========================================================================

    async def manual_assign(
        self,
        db: AsyncSession,
        order_id: int,
        staff_id: int,
        reason: Optional[str] = None,
        actor: str = "manager",
        allow_reassign: bool = False,
    ) -> AssignmentResult:
        """
        Assign an order to a specific staff member. Does not move the
        round-robin pointer.

        Raises:
            OrderAlreadyAssignedToTarget: the order already sits with staff_id
            OrderAlreadyAssigned: assigned elsewhere and allow_reassign is False
            StaffNotInBranch / StaffUnavailable / StaffAtCapacity
            OrderInTerminalState / OrderNotFound / StaffNotFound
        """
        order = await self.load_order(db, order_id)
        reason = reason or f"manual-assignment by {actor}"

        async with self.locks.hold(self.scope_key(order)):
            try:
                await self._lock_row(db, order)
                self._ensure_open(order)

                if order.staff_id == staff_id:
                    raise OrderAlreadyAssignedToTarget(
                        f"Order {order.id} is already assigned to staff {staff_id}",
                        order_id=order.id,
                        staff_id=staff_id,
                    )

                if order.staff_id is not None:
                    if not allow_reassign:
                        raise OrderAlreadyAssigned(
                            f"Order {order.id} is assigned to staff {order.staff_id}; request a reassignment",
                            order_id=order.id,
                            staff_id=order.staff_id,
                        )
                    result, events = await self._reassign_locked(db, order, staff_id, reason, actor)
                else:
                    staff = await self.directory.get_staff(db, staff_id)
                    staff = await self.override.claim(db, order, staff)
                    order.priority = OrderPriority.URGENT
                    assigned_at = self._record(
                        db, order, staff,
                        AssignmentMethod.MANUAL, AssignmentAction.ASSIGNED,
                        actor, reason,
                    )
                    result = AssignmentResult(
                        order_id=order.id,
                        staff_id=staff.id,
                        staff_name=staff.name,
                        active_order_count=staff.active_order_count,
                        max_orders_capacity=staff.max_orders_capacity,
                        method=AssignmentMethod.MANUAL,
                        assigned_at=assigned_at,
                        reason=reason,
                    )
                    events = [self._assigned_event(order, staff, AssignmentMethod.MANUAL, actor, reason)]

                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"Manual assignment: order {order.id} -> staff {result.staff_id} by {actor}")
        self._publish(events)
        return result

    async def reassign(
        self,
        db: AsyncSession,
        order_id: int,
        new_staff_id: int,
        reason: Optional[str] = None,
        actor: str = "manager",
    ) -> AssignmentResult:
        """
        Move an assigned order to another staff member.

        The previous assignee's counter goes down by one and the new
        assignee's up by one in the same commit. Acknowledgment and view
        marks of the previous assignee are cleared.

        Raises:
            OrderNotAssigned: nothing to move
            OrderAlreadyAssignedToTarget: the order already sits with new_staff_id
            StaffNotInBranch / StaffUnavailable / StaffAtCapacity
        """
        order = await self.load_order(db, order_id)
        reason = reason or f"reassignment by {actor}"

        async with self.locks.hold(self.scope_key(order)):
            try:
                await self._lock_row(db, order)
                self._ensure_open(order)
                result, events = await self._reassign_locked(db, order, new_staff_id, reason, actor)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(
            f"Reassignment: order {order.id} staff {result.previous_staff_id} -> {result.staff_id} by {actor}"
        )
        self._publish(events)
        return result

    async def _reassign_locked(
        self,
        db: AsyncSession,
        order: Order,
        new_staff_id: int,
        reason: str,
        actor: str,
    ) -> tuple[AssignmentResult, list[AssignmentEvent]]:
        if order.staff_id is None:
            raise OrderNotAssigned(
                f"Order {order.id} has no assignee to reassign from",
                order_id=order.id,
            )
        if order.staff_id == new_staff_id:
            raise OrderAlreadyAssignedToTarget(
                f"Order {order.id} is already assigned to staff {new_staff_id}",
                order_id=order.id,
                staff_id=new_staff_id,
            )

        previous_id = order.staff_id
        new_staff = await self.directory.get_staff(db, new_staff_id)
        claimed, released = await self.override.transfer(db, order, new_staff)

        order.acknowledged_at = None
        order.acknowledged_by = None
        order.viewed_at = None
        assigned_at = self._record(
            db, order, claimed,
            AssignmentMethod.REASSIGNMENT, AssignmentAction.REASSIGNED,
            actor, reason, previous_staff_id=previous_id,
        )

        result = AssignmentResult(
            order_id=order.id,
            staff_id=claimed.id,
            staff_name=claimed.name,
            active_order_count=claimed.active_order_count,
            max_orders_capacity=claimed.max_orders_capacity,
            method=AssignmentMethod.REASSIGNMENT,
            assigned_at=assigned_at,
            previous_staff_id=previous_id,
            reason=reason,
        )
        events = [
            AssignmentEvent(
                kind=EventKind.UNASSIGNED,
                hotel_id=order.hotel_id,
                branch_id=order.branch_id,
                order_id=order.id,
                staff_id=previous_id,
                manager_id=released.manager_id if released else claimed.manager_id,
                actor=actor,
                method=AssignmentMethod.REASSIGNMENT.value,
                reason=reason,
                data={"newStaffId": claimed.id},
            ),
            self._assigned_event(
                order, claimed, AssignmentMethod.REASSIGNMENT, actor, reason,
                previous_staff_id=previous_id,
            ),
        ]
        return result, events

    # =========================================================================
    # ORDER CLOSE-OUT
    # =========================================================================

    async def on_order_completed(self, db: AsyncSession, order_id: int) -> Order:
        """Complete an order and release its assignee's capacity."""
        return await self._close(db, order_id, OrderStatus.COMPLETED)

    async def on_order_cancelled(self, db: AsyncSession, order_id: int) -> Order:
        """Cancel an order and release its assignee's capacity."""
        return await self._close(db, order_id, OrderStatus.CANCELLED)

    async def _close(self, db: AsyncSession, order_id: int, target: OrderStatus) -> Order:
        order = await self.load_order(db, order_id)

        async with self.locks.hold(self.scope_key(order)):
            try:
                await self._lock_row(db, order)
                self._ensure_open(order)
                if target not in ORDER_TRANSITIONS[order.status]:
                    raise InvalidStatusTransition(
                        f"Order {order.id} cannot move from {order.status.value} to {target.value}",
                        order_id=order.id,
                        current=order.status.value,
                        requested=target.value,
                    )

                now = utcnow()
                order.status = target
                order.updated_at = now
                if target == OrderStatus.COMPLETED:
                    order.completed_at = now
                else:
                    order.cancelled_at = now

                staff = None
                if order.staff_id is not None:
                    staff = await self.tracker.decrement(
                        db, order.staff_id, completed=(target == OrderStatus.COMPLETED)
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        kind = EventKind.COMPLETED if target == OrderStatus.COMPLETED else EventKind.CANCELLED
        logger.info(f"Order {order.id} {target.value}; staff {order.staff_id} released")
        self._publish([
            AssignmentEvent(
                kind=kind,
                hotel_id=order.hotel_id,
                branch_id=order.branch_id,
                order_id=order.id,
                staff_id=order.staff_id,
                manager_id=staff.manager_id if staff else None,
                data={"activeOrderCount": staff.active_order_count if staff else None},
            )
        ])
        return order

    # =========================================================================
    # STAFF AVAILABILITY
    # =========================================================================

    async def set_staff_availability(
        self,
        db: AsyncSession,
        staff_id: int,
        is_available: bool,
    ) -> Staff:
        staff = await self.directory.set_availability(db, staff_id, is_available)
        self._publish([
            AssignmentEvent(
                kind=EventKind.STAFF_AVAILABILITY,
                hotel_id=staff.hotel_id,
                branch_id=staff.branch_id,
                staff_id=staff.id,
                manager_id=staff.manager_id,
                actor=f"staff:{staff.id}",
                data={"isAvailable": is_available, "staffName": staff.name},
            )
        ])
        return staff

    # =========================================================================
    # RESET & STATISTICS
    # =========================================================================

    async def reset_round_robin(
        self,
        db: AsyncSession,
        hotel_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> int:
        """Clear round-robin pointers (global, per hotel or per branch)."""
        try:
            cleared = await self.allocator.reset_pointers(db, hotel_id, branch_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return cleared

    async def stats(
        self,
        db: AsyncSession,
        hotel_id: str,
        branch_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Load overview of a hotel or one of its branches."""
        staff = [
            s for s in await self.directory.list_staff(db, hotel_id, branch_id)
            if s.role in self.directory.assignable_roles
            and s.status == StaffStatus.ACTIVE
            and s.is_available
        ]
        total = len(staff)
        available = sum(1 for s in staff if self.tracker.can_accept_order(s))
        busy = total - available
        current_load = sum(s.active_order_count for s in staff)

        stmt = (
            select(Order)
            .where(Order.hotel_id == hotel_id, Order.assigned_at.is_not(None))
            .order_by(Order.assigned_at.desc())
            .limit(10)
        )
        if branch_id:
            stmt = stmt.where(Order.branch_id == branch_id)
        recent = (await db.execute(stmt)).scalars().all()

        return {
            "hotel_id": hotel_id,
            "branch_id": branch_id,
            "staff": {
                "total": total,
                "available": available,
                "busy": busy,
                "utilization": round(busy / total * 100, 2) if total else 0.0,
            },
            "average_orders_per_staff": round(current_load / total, 2) if total else 0.0,
            "max_capacity": sum(s.max_orders_capacity for s in staff),
            "current_load": current_load,
            "recent_assignments": [
                {
                    "order_id": o.id,
                    "staff_id": o.staff_id,
                    "method": o.assignment_method.value if o.assignment_method else None,
                    "status": o.status.value,
                    "assigned_at": o.assigned_at,
                }
                for o in recent
            ],
        }
