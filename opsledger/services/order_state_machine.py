"""
Order State Machine

This module is the SINGLE SOURCE OF TRUTH for order status transitions made
by packing, dispatch, delivery outcomes and returns. Every status change the
ledger core makes goes through validate_transition().
"""

from typing import List, Dict

from opsledger.config import settings
from opsledger.core.exceptions import InvalidStateTransitionError
from opsledger.models.manifest import DeliveryOutcome
from opsledger.models.order import OrderStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.INTAKE: [
        OrderStatus.CONVERTED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.CONVERTED: [
        OrderStatus.READY,
        OrderStatus.PACKED,              # Pack (stock deducted)
        OrderStatus.CANCELLED,
    ],
    OrderStatus.READY: [
        OrderStatus.PACKED,              # Pack (stock deducted)
        OrderStatus.CANCELLED,
    ],
    OrderStatus.PACKED: [
        OrderStatus.ASSIGNED,            # Added to a manifest
        OrderStatus.HANDED_TO_COURIER,   # External courier
    ],
    OrderStatus.ASSIGNED: [
        OrderStatus.OUT_FOR_DELIVERY,    # Manifest dispatched
        OrderStatus.PACKED,              # Rescheduled or manifest cancelled
    ],
    OrderStatus.OUT_FOR_DELIVERY: [
        OrderStatus.DELIVERED,
        OrderStatus.REJECTED,            # Refused / returned / damaged at the door
        OrderStatus.FOLLOW_UP,           # Unavailable / wrong address / rescheduled
        OrderStatus.CANCELLED,           # Lost in transit
        OrderStatus.PACKED,              # Rescheduled off the run
    ],
    OrderStatus.FOLLOW_UP: [
        OrderStatus.PACKED,              # Released for a new manifest
    ],
    OrderStatus.HANDED_TO_COURIER: [
        OrderStatus.DELIVERED,
        OrderStatus.REJECTED,
    ],
    OrderStatus.DELIVERED: [
        OrderStatus.RETURN_INITIATED,
    ],
    OrderStatus.REJECTED: [
        OrderStatus.RETURNED,            # Return received
    ],
    OrderStatus.RETURN_INITIATED: [
        OrderStatus.RETURNED,
    ],
    OrderStatus.RETURNED: [],            # Terminal (further partial receipts stay RETURNED)
    OrderStatus.CANCELLED: [],           # Terminal
}
ORDER_TRANSITIONS = {
    status.value: [s.value for s in allowed] for status, allowed in ORDER_TRANSITIONS.items()
}

# Outcome recorded on a manifest item -> resulting order status
OUTCOME_ORDER_STATUS: Dict[str, str] = {
    DeliveryOutcome.DELIVERED.value: OrderStatus.DELIVERED.value,
    DeliveryOutcome.PARTIAL_DELIVERY.value: OrderStatus.DELIVERED.value,
    DeliveryOutcome.CUSTOMER_REFUSED.value: OrderStatus.REJECTED.value,
    DeliveryOutcome.RETURNED.value: OrderStatus.REJECTED.value,
    DeliveryOutcome.DAMAGED.value: OrderStatus.REJECTED.value,
    DeliveryOutcome.CUSTOMER_UNAVAILABLE.value: OrderStatus.FOLLOW_UP.value,
    DeliveryOutcome.WRONG_ADDRESS.value: OrderStatus.FOLLOW_UP.value,
    DeliveryOutcome.RESCHEDULED.value: OrderStatus.FOLLOW_UP.value,
    DeliveryOutcome.LOST.value: OrderStatus.CANCELLED.value,
}

# Outcome buckets for manifest counters
DELIVERED_OUTCOMES = {
    DeliveryOutcome.DELIVERED.value,
    DeliveryOutcome.PARTIAL_DELIVERY.value,
}
RETURNED_OUTCOMES = {
    DeliveryOutcome.CUSTOMER_REFUSED.value,
    DeliveryOutcome.RETURNED.value,
    DeliveryOutcome.DAMAGED.value,
}
RESCHEDULED_OUTCOMES = {
    DeliveryOutcome.CUSTOMER_UNAVAILABLE.value,
    DeliveryOutcome.WRONG_ADDRESS.value,
    DeliveryOutcome.RESCHEDULED.value,
}

# Orders whose goods can be received back into the warehouse
RETURNABLE_STATUSES = [
    OrderStatus.REJECTED.value,
    OrderStatus.RETURN_INITIATED.value,
    OrderStatus.RETURNED.value,
]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ORDER_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return ORDER_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: str, new_status: str) -> None:
    """
    Validate a status transition. Raises InvalidStateTransitionError if invalid.

    Staying in the same status is not a transition and is always rejected here;
    callers that allow it (repeat return receipts) check for it themselves.
    """
    if not can_transition(current_status, new_status):
        allowed = get_allowed_transitions(current_status)
        if not allowed:
            message = f"Order in '{current_status}' status is in a terminal state"
        else:
            message = (
                f"Cannot change order from '{current_status}' to '{new_status}'. "
                f"Allowed transitions: {', '.join(allowed)}"
            )
        raise InvalidStateTransitionError(current_status, new_status, message)


def pack_eligible_statuses() -> List[str]:
    """Statuses from which an order may be packed (configurable)."""
    return [s for s in settings.PACK_ELIGIBLE_STATUSES if can_transition(s, OrderStatus.PACKED.value)]


def can_pack(status: str) -> bool:
    return status in pack_eligible_statuses()


def can_receive_return(status: str) -> bool:
    return status in RETURNABLE_STATUSES


def order_status_for_outcome(outcome: str) -> str:
    return OUTCOME_ORDER_STATUS[outcome]
