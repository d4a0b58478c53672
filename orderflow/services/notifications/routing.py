"""
Event Routing

AssignmentEvent is the fact record produced by every state change of the
engine. EVENT_ROUTES is the fixed table deciding which logical channels
hear about each kind of event.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


class EventKind(str, enum.Enum):
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    ACKNOWLEDGED = "acknowledged"
    VIEWED = "viewed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    STAFF_AVAILABILITY = "staff_availability"


class Audience(str, enum.Enum):
    STAFF = "staff"
    MANAGER = "manager"
    BRANCH = "branch"


EVENT_NAMES: dict[EventKind, str] = {
    EventKind.ASSIGNED: "order:assigned",
    EventKind.UNASSIGNED: "order:unassigned",
    EventKind.ACKNOWLEDGED: "order:acknowledged",
    EventKind.VIEWED: "order:viewed",
    EventKind.COMPLETED: "order:completed",
    EventKind.CANCELLED: "order:cancelled",
    EventKind.STAFF_AVAILABILITY: "staff:availability",
}

EVENT_ROUTES: dict[EventKind, tuple[Audience, ...]] = {
    EventKind.ASSIGNED: (Audience.STAFF, Audience.MANAGER, Audience.BRANCH),
    EventKind.UNASSIGNED: (Audience.STAFF, Audience.MANAGER),
    EventKind.ACKNOWLEDGED: (Audience.MANAGER,),
    EventKind.VIEWED: (Audience.MANAGER,),
    EventKind.COMPLETED: (Audience.STAFF, Audience.MANAGER, Audience.BRANCH),
    EventKind.CANCELLED: (Audience.STAFF, Audience.MANAGER, Audience.BRANCH),
    EventKind.STAFF_AVAILABILITY: (Audience.BRANCH, Audience.MANAGER),
}


def staff_channel(staff_id: Any) -> str:
    return f"staff_{staff_id}"


def manager_channel(manager_id: Any) -> str:
    return f"manager_{manager_id}"


def branch_channel(branch_id: Any) -> str:
    return f"branch_{branch_id}"


@dataclass
class AssignmentEvent:
    """
    "This order was assigned / reassigned / unassigned for this staff member
    at this time, by this actor."

    ``staff_id`` is the staff member the event concerns: the new assignee for
    ``assigned``, the removed one for ``unassigned``.
    """
    kind: EventKind
    hotel_id: str
    branch_id: str
    order_id: Optional[int] = None
    staff_id: Optional[int] = None
    manager_id: Optional[str] = None
    previous_staff_id: Optional[int] = None
    actor: str = "system"
    method: Optional[str] = None
    reason: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_name(self) -> str:
        return EVENT_NAMES[self.kind]

    def channels(self) -> list[str]:
        """Resolve the routing table against this event's identities."""
        resolved = []
        for audience in EVENT_ROUTES[self.kind]:
            if audience is Audience.STAFF and self.staff_id is not None:
                resolved.append(staff_channel(self.staff_id))
            elif audience is Audience.MANAGER and self.manager_id:
                resolved.append(manager_channel(self.manager_id))
            elif audience is Audience.BRANCH and self.branch_id:
                resolved.append(branch_channel(self.branch_id))
        return resolved

    def payload(self) -> dict[str, Any]:
        body = {
            "event": self.event_name,
            "orderId": self.order_id,
            "staffId": self.staff_id,
            "previousStaffId": self.previous_staff_id,
            "hotelId": self.hotel_id,
            "branchId": self.branch_id,
            "actor": self.actor,
            "method": self.method,
            "reason": self.reason,
            "timestamp": self.occurred_at.isoformat(),
        }
        body.update(self.data)
        return body
