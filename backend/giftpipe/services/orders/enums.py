"""Order status enums and transition rules for the fulfillment pipeline.

This module defines the order lifecycle status, the payment status mirrored
from the payment processor, and the vendor status mirrored from the
fulfillment vendor, together with the transition table that keeps order
status monotonic once it reaches a terminal state.
"""

from enum import Enum
from typing import Dict, Set


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PENDING -> PAYMENT_CONFIRMED, SCHEDULED, PROCESSING, RETRY_PENDING, CANCELLED
    - PAYMENT_CONFIRMED -> PROCESSING, RETRY_PENDING, SCHEDULED, CANCELLED
    - SCHEDULED -> PENDING, PAYMENT_CONFIRMED, CANCELLED
    - PROCESSING -> SUBMITTED, RETRY_PENDING, COMPLETED, SHIPPED, CANCELLED
    - SUBMITTED -> PROCESSING, RETRY_PENDING, COMPLETED, SHIPPED, CANCELLED
    - RETRY_PENDING -> PROCESSING, RETRY_PENDING, CANCELLED
    - COMPLETED -> SHIPPED (late tracking event)
    - SHIPPED -> (terminal state)
    - CANCELLED -> (terminal state)
    """

    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PROCESSING = "processing"
    SUBMITTED = "submitted"
    RETRY_PENDING = "retry_pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    SHIPPED = "shipped"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state (COMPLETED, SHIPPED, CANCELLED)."""
        return self in TERMINAL_ORDER_STATUSES

    def is_in_flight(self) -> bool:
        """Check if the vendor holds, or may hold, this order."""
        return self in {OrderStatus.PROCESSING, OrderStatus.SUBMITTED}


class PaymentStatus(str, Enum):
    """Payment status as last confirmed with the payment processor."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def from_processor(cls, intent_status: str) -> "PaymentStatus":
        """Map a processor payment-intent status onto the local status.

        Only ``succeeded`` counts as captured; ``canceled`` and
        ``requires_payment_method`` (a declined attempt) count as failed and
        everything else is still pending.

        Args:
            intent_status: Payment intent status reported by the processor

        Returns:
            PaymentStatus enum value
        """
        if intent_status == "succeeded":
            return cls.SUCCEEDED
        if intent_status in {"canceled", "requires_payment_method"}:
            return cls.FAILED
        return cls.PENDING


class ZincStatus(str, Enum):
    """Fulfillment vendor status mirror.

    SUBMITTING is written before the vendor call and is the marker the
    storage-level submission claim is taken on.
    """

    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    PLACED = "placed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def awaiting_vendor(self) -> bool:
        """Check if the vendor accepted the order but has not shipped it."""
        return self in {ZincStatus.SUBMITTED, ZincStatus.PLACED}


TERMINAL_ORDER_STATUSES: Set[OrderStatus] = {
    OrderStatus.COMPLETED,
    OrderStatus.SHIPPED,
    OrderStatus.CANCELLED,
}

# State transition validation rules
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.SCHEDULED,
        OrderStatus.PROCESSING,
        OrderStatus.RETRY_PENDING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PAYMENT_CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.RETRY_PENDING,
        OrderStatus.SCHEDULED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SCHEDULED: {
        OrderStatus.PENDING,
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SUBMITTED,
        OrderStatus.RETRY_PENDING,
        OrderStatus.COMPLETED,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SUBMITTED: {
        OrderStatus.PROCESSING,
        OrderStatus.RETRY_PENDING,
        OrderStatus.COMPLETED,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.RETRY_PENDING: {
        OrderStatus.PROCESSING,
        OrderStatus.RETRY_PENDING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.COMPLETED: {
        OrderStatus.SHIPPED,
    },
    OrderStatus.SHIPPED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status."""
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()


def get_allowed_source_statuses(target: OrderStatus) -> Set[OrderStatus]:
    """Get every status an order may move to ``target`` from.

    Used to build the ``WHERE status IN (...)`` guard of conditional
    status updates.

    Args:
        target: Desired new status

    Returns:
        Set of statuses that allow the transition
    """
    return {
        source
        for source, targets in ORDER_STATUS_TRANSITIONS.items()
        if target in targets
    }
