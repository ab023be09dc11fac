"""Order state machine and the predicates the pipeline decides on.

This module holds the transition validation used before every status write
and the small set of pure predicates shared by the orchestrator, the
timeout monitor and the retry scheduler. Keeping them here means the
in-database queries in the repository and the in-process re-checks always
agree on what "needs processing" or "stale" means.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Set

from giftpipe.core.logging import get_logger
from giftpipe.services.orders.enums import (
    OrderStatus,
    PaymentStatus,
    ZincStatus,
    get_allowed_order_transitions,
    get_allowed_source_statuses,
    validate_order_status_transition,
)

logger = get_logger(__name__)

# Statuses that never submit: terminal ones plus scheduled orders held
# until the releaser lets them go.
NON_SUBMITTABLE_STATUSES: Set[OrderStatus] = {
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.SHIPPED,
    OrderStatus.SCHEDULED,
}


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any
    ):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class OrderStateMachine:
    """Validates order status transitions and their guards.

    The transition table lives in ``enums``; guards add the conditions a
    transition needs beyond the current status, keyed by target status.
    """

    def __init__(self) -> None:
        self._transition_guards: Dict[
            OrderStatus, Callable[[Any], bool]
        ] = self._initialize_guards()

    def _initialize_guards(self) -> Dict[OrderStatus, Callable[[Any], bool]]:
        return {
            OrderStatus.PAYMENT_CONFIRMED: self._guard_payment_captured,
            OrderStatus.PROCESSING: self._guard_payment_captured,
        }

    def requires_captured_payment(self, target_status: OrderStatus) -> bool:
        """Check whether moving to ``target_status`` needs captured payment."""
        return self._transition_guards.get(target_status) == self._guard_payment_captured

    def source_statuses(self, target_status: OrderStatus) -> Set[OrderStatus]:
        """Statuses an order may move to ``target_status`` from."""
        return get_allowed_source_statuses(target_status)

    def validate_transition(self, order: Any, target_status: OrderStatus) -> bool:
        """Validate if transition to target status is allowed.

        Args:
            order: Order instance to validate
            target_status: Desired target status

        Returns:
            True if transition is valid

        Raises:
            StateTransitionError: If transition is invalid
        """
        current_status = order.status

        if not validate_order_status_transition(current_status, target_status):
            allowed = get_allowed_order_transitions(current_status)
            raise StateTransitionError(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                order_id=str(order.id),
                allowed_transitions=sorted(s.value for s in allowed),
            )

        guard = self._transition_guards.get(target_status)
        if guard is not None and not guard(order):
            raise StateTransitionError(
                f"Transition guard failed for {current_status.value} -> "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                order_id=str(order.id),
                guard_failed=True,
            )

        return True

    def _guard_payment_captured(self, order: Any) -> bool:
        return order.payment_status == PaymentStatus.SUCCEEDED


def needs_processing(order: Any) -> bool:
    """Decide whether an order still needs a vendor submission.

    True only when payment is captured, no vendor handle exists, no
    submission is in flight and the order is neither finished nor held for
    a later delivery date.
    """
    return (
        order.payment_status == PaymentStatus.SUCCEEDED
        and order.zinc_order_id is None
        and order.zinc_status != ZincStatus.SUBMITTING
        and order.status not in NON_SUBMITTABLE_STATUSES
    )


def is_stale_submission(order: Any, now: datetime, threshold: timedelta) -> bool:
    """Vendor accepted the order but nothing has moved it for ``threshold``."""
    return (
        order.status == OrderStatus.PROCESSING
        and order.zinc_status == ZincStatus.SUBMITTED
        and order.updated_at < now - threshold
    )


def is_interrupted_submission(order: Any, now: datetime, threshold: timedelta) -> bool:
    """A submission marker was written but the outcome was never recorded."""
    return (
        order.zinc_status == ZincStatus.SUBMITTING
        and order.zinc_order_id is None
        and order.status not in NON_SUBMITTABLE_STATUSES
        and order.updated_at < now - threshold
    )


def is_retry_due(order: Any, now: datetime) -> bool:
    return (
        order.status == OrderStatus.RETRY_PENDING
        and order.next_retry_at is not None
        and order.next_retry_at <= now
    )
