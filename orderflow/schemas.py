"""
Pydantic Schemas for Request/Response Validation

Covers the staff directory, orders and their assignment lifecycle,
assignment statistics, the waiting queue, round-robin pointers and the
reset scheduler.

Version: 1.0.0
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Any
from datetime import datetime

from orderflow.models import (
    AssignmentAction,
    AssignmentMethod,
    OrderPriority,
    OrderStatus,
    StaffRole,
    StaffStatus,
)


# =============================================================================
# STAFF SCHEMAS
# =============================================================================

class StaffCreate(BaseModel):
    """Request schema for registering a staff member."""
    name: str = Field(..., min_length=1, max_length=100, examples=["Asha"])
    hotel_id: str = Field(..., min_length=1, max_length=64, examples=["hotel-1"])
    branch_id: str = Field(..., min_length=1, max_length=64, examples=["branch-1"])
    role: StaffRole = Field(default=StaffRole.WAITER, examples=["waiter"])
    manager_id: Optional[str] = Field(None, max_length=64, examples=["mgr-7"])
    max_orders_capacity: Optional[int] = Field(None, ge=1, le=500, examples=[20])
    is_available: bool = True


class AvailabilityUpdate(BaseModel):
    """Toggle a staff member's availability."""
    is_available: bool


class StaffResponse(BaseModel):
    """Response schema for a staff member."""
    id: int
    name: str
    role: StaffRole
    hotel_id: str
    branch_id: str
    manager_id: Optional[str]
    status: StaffStatus
    is_available: bool
    active_order_count: int
    max_orders_capacity: int
    total_assignments: int
    completed_orders: int
    last_assigned_at: Optional[datetime]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single item in an order."""
    name: str = Field(..., min_length=1, max_length=100, examples=["Masala Dosa"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    unit_price: float = Field(..., ge=0, examples=[4.5])


class OrderCreate(BaseModel):
    """Request schema for placing an order."""
    hotel_id: str = Field(..., min_length=1, max_length=64, examples=["hotel-1"])
    branch_id: str = Field(..., min_length=1, max_length=64, examples=["branch-1"])
    table_number: Optional[str] = Field(None, max_length=20, examples=["T4"])
    items: List[OrderItemCreate] = Field(default_factory=list)
    priority: OrderPriority = OrderPriority.NORMAL
    auto_assign: bool = True

    @property
    def total_amount(self) -> float:
        return round(sum(i.quantity * i.unit_price for i in self.items), 2)


class StatusUpdate(BaseModel):
    """Request to move an order to another status."""
    status: OrderStatus

    @field_validator("status", mode="before")
    @classmethod
    def lower_status(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class StaffAction(BaseModel):
    """Acknowledge / viewed signal sent by the assignee."""
    staff_id: int


class AssignRequest(BaseModel):
    """Body of a manual assignment or reassignment."""
    reason: Optional[str] = Field(None, max_length=255)
    actor: str = Field(default="manager", min_length=1, max_length=100)


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    hotel_id: str
    branch_id: str
    table_number: Optional[str]
    items: Optional[str]
    total_amount: float
    status: OrderStatus
    priority: OrderPriority
    staff_id: Optional[int]
    assigned_at: Optional[datetime]
    assignment_method: Optional[AssignmentMethod]
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[int]
    viewed_at: Optional[datetime]
    created_at: datetime
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    """Outcome of an assignment decision."""
    success: bool = True
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


class OrderCreateResponse(BaseModel):
    """Response after placing an order."""
    success: bool
    message: str
    order: OrderResponse
    assignment: Optional[AssignmentResponse] = None
    assignment_error: Optional[str] = None
    queue_position: Optional[int] = None


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class HistoryEntry(BaseModel):
    """One row of an order's assignment history."""
    id: int
    order_id: int
    staff_id: Optional[int]
    previous_staff_id: Optional[int]
    action: AssignmentAction
    method: Optional[AssignmentMethod]
    actor: str
    reason: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# =============================================================================
# ASSIGNMENT OVERVIEW SCHEMAS
# =============================================================================

class StaffCounts(BaseModel):
    total: int
    available: int
    busy: int
    utilization: float


class RecentAssignment(BaseModel):
    order_id: int
    staff_id: Optional[int]
    method: Optional[AssignmentMethod]
    status: OrderStatus
    assigned_at: Optional[datetime]


class StatsResponse(BaseModel):
    """Load overview of a hotel or branch."""
    hotel_id: str
    branch_id: Optional[str]
    staff: StaffCounts
    average_orders_per_staff: float
    max_capacity: int
    current_load: int
    recent_assignments: List[RecentAssignment]


class PointerResponse(BaseModel):
    """Round-robin position of one branch."""
    scope_key: str
    hotel_id: str
    branch_id: str
    last_staff_id: int
    last_index: int
    updated_at: datetime

    class Config:
        from_attributes = True


class QueueEntryResponse(BaseModel):
    """One order waiting in a branch queue."""
    order_id: int
    hotel_id: str
    branch_id: str
    position: int
    priority: OrderPriority
    queued_at: datetime

    class Config:
        from_attributes = True


class ResetRequest(BaseModel):
    """Scope of an explicit round-robin reset; empty means all branches."""
    hotel_id: Optional[str] = None
    branch_id: Optional[str] = None

    @field_validator("branch_id")
    @classmethod
    def branch_needs_hotel(cls, v: Optional[str], info) -> Optional[str]:
        if v and not info.data.get("hotel_id"):
            raise ValueError("branch_id requires hotel_id")
        return v


class ResetResponse(BaseModel):
    success: bool = True
    cleared: int
    hotel_id: Optional[str] = None
    branch_id: Optional[str] = None


# =============================================================================
# SCHEDULER SCHEMAS
# =============================================================================

class SchedulerJobStatus(BaseModel):
    """State of the daily round-robin reset job."""
    name: str
    runner: str
    state: str
    running: bool
    window_start: str
    window_minutes: int
    timezone: str
    slot_seconds: Optional[int]
    slot_time: Optional[str]
    next_run_at: Optional[datetime]
    last_run_at: Optional[datetime]
    last_status: Optional[str]
    last_error: Optional[str]
    run_count: int


class SchedulerRunResponse(BaseModel):
    success: bool
    cleared: Optional[int]
    job: SchedulerJobStatus


# =============================================================================
# GENERIC SCHEMAS
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    context: Optional[dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    notification_transport: str
    reset_scheduler: str
    timestamp: datetime
