"""
SQLAlchemy Database Models

Persistent state of the assignment engine:
- Staff with capacity counters and assignment statistics
- Orders with their lifecycle status and current assignee
- Assignment history (audit trail of every assign / reassign / unassign)
- Round-robin pointers, one row per (hotel, branch) scope
- Scheduled job bookkeeping for the daily reset
- The waiting queue of orders nobody could take yet

Version: 1.0.0
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from orderflow.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], **kwargs) -> Column:
    # Store the enum values ("pending"), not the member names ("PENDING")
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class StaffRole(str, enum.Enum):
    WAITER = "waiter"
    KITCHEN_STAFF = "kitchen_staff"
    CASHIER = "cashier"
    CLEANER = "cleaner"
    HOST = "host"


class StaffStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Allowed forward moves; cancellation is allowed from every non-terminal state
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.SERVED, OrderStatus.CANCELLED}),
    OrderStatus.SERVED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class OrderPriority(str, enum.Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class AssignmentMethod(str, enum.Enum):
    ROUND_ROBIN = "round_robin"
    MANUAL = "manual"
    REASSIGNMENT = "reassignment"


class AssignmentAction(str, enum.Enum):
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    UNASSIGNED = "unassigned"


class Staff(Base):
    """
    A person who can receive order assignments.

    ``active_order_count`` is the single source of truth for eligibility and
    is only ever written by the CapacityTracker.
    """
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    role = _enum_column(StaffRole, default=StaffRole.WAITER, nullable=False, index=True)

    # =========================================================================
    # ORGANISATION
    # =========================================================================
    hotel_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    manager_id = Column(String(64), nullable=True)

    # =========================================================================
    # AVAILABILITY & CAPACITY
    # =========================================================================
    status = _enum_column(StaffStatus, default=StaffStatus.ACTIVE, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    active_order_count = Column(Integer, default=0, nullable=False)
    max_orders_capacity = Column(Integer, default=20, nullable=False)

    # =========================================================================
    # STATISTICS
    # =========================================================================
    total_assignments = Column(Integer, default=0, nullable=False)
    completed_orders = Column(Integer, default=0, nullable=False)
    last_assigned_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow, nullable=True)

    __table_args__ = (
        Index("ix_staff_scope", "hotel_id", "branch_id"),
    )

    def __repr__(self):
        return (
            f"<Staff #{self.id} {self.name} - {self.role.value} - "
            f"{self.active_order_count}/{self.max_orders_capacity}>"
        )


class Order(Base):
    """
    A customer's placed order that needs a staff member.

    At most one staff member is assigned at a time; ``completed`` and
    ``cancelled`` are terminal.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    hotel_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    table_number = Column(String(20), nullable=True)
    items = Column(Text, nullable=True)  # JSON string of ordered items
    total_amount = Column(Float, nullable=False, default=0.0)

    status = _enum_column(
        OrderStatus,
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    priority = _enum_column(OrderPriority, default=OrderPriority.NORMAL, nullable=False)

    # =========================================================================
    # ASSIGNMENT
    # =========================================================================
    staff_id = Column(Integer, ForeignKey("staff.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    assignment_method = _enum_column(AssignmentMethod, nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(Integer, nullable=True)
    viewed_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Order #{self.id} - {self.branch_id} - {self.status.value} - staff={self.staff_id}>"


class AssignmentHistory(Base):
    """Audit trail: one row per assignment event on an order."""
    __tablename__ = "assignment_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    staff_id = Column(Integer, nullable=True)
    previous_staff_id = Column(Integer, nullable=True)
    action = _enum_column(AssignmentAction, nullable=False)
    method = _enum_column(AssignmentMethod, nullable=True)
    actor = Column(String(100), nullable=False, default="system")
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<AssignmentHistory order={self.order_id} {self.action.value} staff={self.staff_id}>"


class RoundRobinPointer(Base):
    """
    Rotation position for one (hotel, branch) scope.

    A missing row means "start at index 0". Only the RoundRobinAllocator
    writes these rows.
    """
    __tablename__ = "round_robin_pointers"

    scope_key = Column(String(140), primary_key=True)
    hotel_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False)
    last_staff_id = Column(Integer, nullable=False)
    last_index = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @staticmethod
    def key_for(hotel_id: str, branch_id: str) -> str:
        return f"{hotel_id}:{branch_id}"

    def __repr__(self):
        return f"<RoundRobinPointer {self.scope_key} -> staff {self.last_staff_id} @ {self.last_index}>"


class ScheduledJob(Base):
    """
    Bookkeeping for a named daily job.

    ``slot_seconds`` is the drawn offset into the window; together with the
    window config it fixes the next run time across restarts.
    """
    __tablename__ = "scheduled_jobs"

    name = Column(String(64), primary_key=True)
    slot_seconds = Column(Integer, nullable=False)
    window_start = Column(String(5), nullable=False)
    window_minutes = Column(Integer, nullable=False)
    timezone = Column(String(64), nullable=False)
    next_run_at = Column(DateTime(timezone=True), nullable=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(20), nullable=True)
    last_error = Column(Text, nullable=True)
    run_count = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<ScheduledJob {self.name} slot={self.slot_seconds}s next={self.next_run_at}>"


class QueuedOrder(Base):
    """
    An order waiting for a staff member with spare capacity.

    Urgent orders go first, then by arrival (``id``). The row is removed
    once the order is assigned, cancelled or handed out manually.
    """
    __tablename__ = "order_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    hotel_id = Column(String(64), nullable=False)
    branch_id = Column(String(64), nullable=False)
    priority_value = Column(Integer, nullable=False, default=0)
    queued_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_queue_scope", "hotel_id", "branch_id"),
    )

    def __repr__(self):
        return f"<QueuedOrder order={self.order_id} {self.hotel_id}:{self.branch_id} p={self.priority_value}>"
