"""
Assignment Error Taxonomy

Every failure the assignment engine reports to its caller is a subclass of
AssignmentError. Each class carries a machine-readable ``code`` and the HTTP
status the API layer answers with, so route handlers can let them propagate
to the registered exception handler.

Peripheral failures (notification delivery, the scheduled reset) have their
own classes but are caught and logged at their boundary and never reach an
assignment caller.
"""

from typing import Any, Optional


class AssignmentError(Exception):
    """Base class for typed assignment failures."""

    status_code: int = 400
    code: str = "assignment_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "context": self.context or None,
        }


# =============================================================================
# ASSIGNMENT DECISIONS
# =============================================================================

class NoEligibleStaff(AssignmentError):
    """No staff in the branch has spare capacity (or no staff at all)."""
    status_code = 503
    code = "no_eligible_staff"


class CapacityExceeded(AssignmentError):
    """An increment hit a staff member already at capacity."""
    status_code = 409
    code = "capacity_exceeded"


class StaffAtCapacity(CapacityExceeded):
    """Manual target is already at capacity."""
    code = "staff_at_capacity"


# =============================================================================
# MANUAL OVERRIDE VALIDATION
# =============================================================================

class StaffNotInBranch(AssignmentError):
    status_code = 422
    code = "staff_not_in_branch"


class StaffUnavailable(AssignmentError):
    status_code = 409
    code = "staff_unavailable"


class OrderInTerminalState(AssignmentError):
    status_code = 409
    code = "order_in_terminal_state"


class OrderAlreadyAssigned(AssignmentError):
    status_code = 409
    code = "order_already_assigned"


class OrderAlreadyAssignedToTarget(AssignmentError):
    status_code = 409
    code = "order_already_assigned_to_target"


class OrderNotAssigned(AssignmentError):
    status_code = 409
    code = "order_not_assigned"


class OrderNotAssignedToStaff(AssignmentError):
    status_code = 403
    code = "order_not_assigned_to_staff"


class InvalidStatusTransition(AssignmentError):
    status_code = 422
    code = "invalid_status_transition"


# =============================================================================
# LOOKUPS / DIRECTORY
# =============================================================================

class OrderNotFound(AssignmentError):
    status_code = 404
    code = "order_not_found"


class StaffNotFound(AssignmentError):
    status_code = 404
    code = "staff_not_found"


class StaffHasActiveOrders(AssignmentError):
    status_code = 409
    code = "staff_has_active_orders"


# =============================================================================
# PERIPHERAL (never propagated to assignment callers)
# =============================================================================

class NotificationDeliveryFailure(Exception):
    """A publish to a notification channel failed."""

    def __init__(self, channel: str, event: str, reason: Optional[str] = None):
        super().__init__(f"Delivery of {event} to {channel} failed: {reason}")
        self.channel = channel
        self.event = event
        self.reason = reason


class ResetJobFailure(Exception):
    """The scheduled round-robin reset could not complete."""
