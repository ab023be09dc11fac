"""
Order store: data access for orders and their items.

This module implements the OrderRepository used by every pipeline
component. Orders are the single shared mutable resource, so every write
here is a narrow conditional ``UPDATE ... WHERE ... RETURNING`` touching
only the fields it owns, committed on its own so concurrent invocations
observe it immediately. Status writes are guarded by the transition table,
which keeps terminal statuses from ever regressing.
"""

import secrets
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftpipe.core.logging import get_logger
from giftpipe.database.models.order import Order, OrderItem
from giftpipe.services.orders.enums import (
    TERMINAL_ORDER_STATUSES,
    OrderStatus,
    PaymentStatus,
    ZincStatus,
)
from giftpipe.services.orders.state_machine import (
    NON_SUBMITTABLE_STATUSES,
    OrderStateMachine,
    StateTransitionError,
)

logger = get_logger(__name__)


def delivery_groups(items: Sequence[dict[str, Any]]) -> list[str]:
    """Distinct delivery group ids named by line-item data."""
    return sorted({item.get("delivery_group_id") for item in items} - {None})


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when order is not found."""

    pass


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class OrderUpdateError(OrderRepositoryError):
    """Raised when order update fails."""

    pass


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Build a human-readable order number such as ``GP-20240105-3FA2C1``."""
    now = now or datetime.now(timezone.utc)
    return f"GP-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


class OrderRepository:
    """
    Repository for order data access operations.

    Read methods return ``None`` for unknown ids; write methods raise
    ``OrderNotFoundError``. Every write commits before returning.
    """

    def __init__(
        self,
        session: AsyncSession,
        state_machine: Optional[OrderStateMachine] = None,
    ):
        """
        Initialize order repository.

        Args:
            session: Async database session
            state_machine: Transition validator (default instance if omitted)
        """
        self.session = session
        self.state_machine = state_machine or OrderStateMachine()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID with its items.

        Args:
            order_id: Order identifier

        Returns:
            Order if found, None otherwise

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            stmt = (
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_order_by_payment_intent(
        self, payment_intent_id: str
    ) -> Optional[Order]:
        """
        Get order by payment-intent reference.

        Args:
            payment_intent_id: Payment processor payment-intent id

        Returns:
            Order if found, None otherwise
        """
        try:
            stmt = select(Order).where(Order.payment_intent_id == payment_intent_id)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order by payment intent",
                payment_intent_id=payment_intent_id,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order by payment intent",
                payment_intent_id=payment_intent_id,
                error=str(e),
            ) from e

    async def find_due_retries(self, now: datetime, limit: int) -> list[Order]:
        """Retry-pending orders whose next attempt is due, oldest first."""
        stmt = (
            select(Order)
            .where(
                Order.status == OrderStatus.RETRY_PENDING,
                Order.next_retry_at.is_not(None),
                Order.next_retry_at <= now,
            )
            .order_by(Order.next_retry_at.asc())
            .limit(limit)
        )
        return await self._fetch_many(stmt, "find_due_retries")

    async def find_stale_submissions(
        self, now: datetime, threshold: timedelta
    ) -> list[Order]:
        """Orders the vendor accepted whose last touch is older than ``threshold``."""
        stmt = (
            select(Order)
            .where(
                Order.status == OrderStatus.PROCESSING,
                Order.zinc_status == ZincStatus.SUBMITTED,
                Order.updated_at < now - threshold,
            )
            .order_by(Order.updated_at.asc())
        )
        return await self._fetch_many(stmt, "find_stale_submissions")

    async def find_interrupted_submissions(
        self, now: datetime, threshold: timedelta
    ) -> list[Order]:
        """Orders left with the ``submitting`` marker for longer than ``threshold``."""
        stmt = (
            select(Order)
            .where(
                Order.zinc_status == ZincStatus.SUBMITTING,
                Order.zinc_order_id.is_(None),
                Order.status.not_in(NON_SUBMITTABLE_STATUSES),
                Order.updated_at < now - threshold,
            )
            .order_by(Order.updated_at.asc())
        )
        return await self._fetch_many(stmt, "find_interrupted_submissions")

    async def find_due_scheduled(self, release_on_or_before: date) -> list[Order]:
        """Scheduled orders whose delivery date, less lead time, has arrived."""
        stmt = (
            select(Order)
            .where(
                Order.status == OrderStatus.SCHEDULED,
                Order.scheduled_delivery_date.is_not(None),
                Order.scheduled_delivery_date <= release_on_or_before,
            )
            .order_by(Order.scheduled_delivery_date.asc())
        )
        return await self._fetch_many(stmt, "find_due_scheduled")

    async def find_unconfirmed_payments(
        self, touched_after: datetime, limit: int
    ) -> list[Order]:
        """
        Unsubmitted orders whose payment is not confirmed locally.

        Covers orders whose payment webhook never arrived; most recently
        touched first.

        Args:
            touched_after: Oldest ``updated_at`` still worth checking
            limit: Maximum number of orders returned
        """
        stmt = (
            select(Order)
            .where(
                Order.status.in_([OrderStatus.PENDING, OrderStatus.SCHEDULED]),
                Order.payment_status != PaymentStatus.SUCCEEDED,
                Order.payment_intent_id.is_not(None),
                Order.zinc_order_id.is_(None),
                Order.updated_at >= touched_after,
            )
            .order_by(Order.updated_at.desc())
            .limit(limit)
        )
        return await self._fetch_many(stmt, "find_unconfirmed_payments")

    async def find_awaiting_vendor(self, limit: int) -> list[Order]:
        """Orders holding a vendor handle that have not shipped yet."""
        stmt = (
            select(Order)
            .where(
                Order.zinc_order_id.is_not(None),
                Order.zinc_status.in_([ZincStatus.SUBMITTED, ZincStatus.PLACED]),
                Order.status.not_in([OrderStatus.SHIPPED, OrderStatus.CANCELLED]),
            )
            .order_by(Order.updated_at.asc())
            .limit(limit)
        )
        return await self._fetch_many(stmt, "find_awaiting_vendor")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order_with_items(
        self,
        items: Sequence[dict[str, Any]],
        shipping_address: dict[str, Any],
        subtotal: Decimal,
        shipping_cost: Decimal = Decimal("0.00"),
        tax_amount: Decimal = Decimal("0.00"),
        currency: str = "usd",
        user_id: Optional[uuid.UUID] = None,
        payment_intent_id: Optional[str] = None,
        status: OrderStatus = OrderStatus.PENDING,
        scheduled_delivery_date: Optional[date] = None,
        is_auto_gift: bool = False,
        auto_gift_context: Optional[dict[str, Any]] = None,
        gift_options: Optional[dict[str, Any]] = None,
    ) -> Order:
        """
        Create order with items atomically.

        Args:
            items: Line items with product_id, quantity, unit_price and
                optional product_name, recipient_id, recipient_name,
                delivery_group_id
            shipping_address: Delivery address
            subtotal: Subtotal before shipping and tax
            shipping_cost: Shipping charges
            tax_amount: Tax amount
            currency: Three-letter ISO currency code
            user_id: Purchasing user
            payment_intent_id: Payment-intent reference, if already created
            status: Initial status (PENDING or SCHEDULED)
            scheduled_delivery_date: Requested delivery date
            is_auto_gift: Whether the order comes from an auto-gift execution
            auto_gift_context: Execution context for auto-gift orders
            gift_options: Gift wrapping and message options

        Returns:
            Created order with items

        Raises:
            OrderCreationError: If order creation fails or the items span
                more than one delivery group
        """
        if not items:
            raise OrderCreationError("Order must contain at least one item")
        groups = delivery_groups(items)
        if len(groups) > 1:
            # One order ships to one address
            raise OrderCreationError(
                "Order items span more than one delivery group",
                delivery_groups=groups,
            )

        try:
            order = Order(
                order_number=generate_order_number(),
                user_id=user_id,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                tax_amount=tax_amount,
                total_amount=subtotal + shipping_cost + tax_amount,
                currency=currency.lower(),
                payment_intent_id=payment_intent_id,
                payment_status=PaymentStatus.PENDING,
                status=status,
                shipping_address=shipping_address,
                gift_options=gift_options,
                scheduled_delivery_date=scheduled_delivery_date,
                is_auto_gift=is_auto_gift,
                auto_gift_context=auto_gift_context,
                retry_count=0,
                webhook_token=secrets.token_urlsafe(32),
            )
            order.items = [
                OrderItem(
                    product_id=str(item["product_id"]),
                    product_name=item.get("product_name"),
                    quantity=int(item.get("quantity", 1)),
                    unit_price=Decimal(str(item["unit_price"])),
                    recipient_id=item.get("recipient_id"),
                    recipient_name=item.get("recipient_name"),
                    delivery_group_id=item.get("delivery_group_id"),
                )
                for item in items
            ]
            self.session.add(order)
            await self.session.commit()

            logger.info(
                "Order created",
                order_id=str(order.id),
                order_number=order.order_number,
                item_count=len(order.items),
                status=order.status.value,
                is_auto_gift=is_auto_gift,
            )
            return order

        except (IntegrityError, KeyError, ValueError) as e:
            await self.session.rollback()
            logger.error("Failed to create order", error=str(e))
            raise OrderCreationError("Failed to create order", error=str(e)) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to create order", error=str(e))
            raise OrderCreationError("Failed to create order", error=str(e)) from e

    async def set_payment_intent(
        self, order_id: uuid.UUID, payment_intent_id: str
    ) -> Order:
        """Attach a payment-intent reference to an order that has none."""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.payment_intent_id.is_(None))
            .values(payment_intent_id=payment_intent_id, updated_at=func.now())
        )
        return await self._require(
            await self._execute_write(stmt, "set_payment_intent", order_id),
            order_id,
        )

    # ------------------------------------------------------------------
    # Status writes
    # ------------------------------------------------------------------

    async def transition_status(
        self,
        order_id: uuid.UUID,
        target_status: OrderStatus,
        **fields: Any,
    ) -> Order:
        """
        Move an order to ``target_status`` if the transition table allows it.

        The allowed source statuses are part of the ``WHERE`` clause, so a
        concurrent writer that already moved the order elsewhere (for
        example to a terminal status) makes this write fail rather than
        overwrite it.

        Args:
            order_id: Order identifier
            target_status: Desired status
            **fields: Other columns written in the same statement

        Returns:
            Updated order

        Raises:
            OrderNotFoundError: If order not found
            StateTransitionError: If the current status does not allow it
        """
        conditions = [
            Order.id == order_id,
            Order.status.in_(self.state_machine.source_statuses(target_status)),
        ]
        if self.state_machine.requires_captured_payment(target_status):
            conditions.append(Order.payment_status == PaymentStatus.SUCCEEDED)

        stmt = (
            update(Order)
            .where(*conditions)
            .values(status=target_status, updated_at=func.now(), **fields)
        )
        order = await self._execute_write(stmt, "transition_status", order_id)
        if order is not None:
            logger.info(
                "Order status updated",
                order_id=str(order_id),
                new_status=target_status.value,
                fields=sorted(fields),
            )
            return order

        current = await self.get_order_by_id(order_id)
        if current is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        # Raises with the precise reason (table or guard)
        self.state_machine.validate_transition(current, target_status)
        raise StateTransitionError(
            "Order changed concurrently",
            current_state=current.status,
            target_state=target_status,
            order_id=str(order_id),
        )

    async def update_payment_status(
        self,
        order_id: uuid.UUID,
        payment_status: PaymentStatus,
        confirm_order: bool = False,
    ) -> Order:
        """
        Update payment status, optionally confirming a pending order.

        A ``succeeded`` payment is never downgraded.

        Args:
            order_id: Order identifier
            payment_status: New payment status
            confirm_order: Also move a PENDING order to PAYMENT_CONFIRMED

        Returns:
            Updated order
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status != PaymentStatus.SUCCEEDED,
            )
            .values(payment_status=payment_status, updated_at=func.now())
        )
        order = await self._execute_write(stmt, "update_payment_status", order_id)
        if order is None:
            order = await self._require(None, order_id)

        if (
            confirm_order
            and order.payment_status == PaymentStatus.SUCCEEDED
            and order.status == OrderStatus.PENDING
        ):
            order = await self.transition_status(
                order_id, OrderStatus.PAYMENT_CONFIRMED
            )

        logger.info(
            "Order payment status updated",
            order_id=str(order_id),
            payment_status=order.payment_status.value,
            status=order.status.value,
        )
        return order

    # ------------------------------------------------------------------
    # Submission bookkeeping
    # ------------------------------------------------------------------

    async def claim_submission(self, order_id: uuid.UUID) -> bool:
        """
        Atomically take the right to call the vendor for an order.

        Only one concurrent caller can move ``zinc_status`` to
        ``submitting`` while no vendor handle exists; everyone else gets
        ``False``.

        Args:
            order_id: Order identifier

        Returns:
            True if this caller won the claim
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.zinc_order_id.is_(None),
                Order.zinc_status.is_distinct_from(ZincStatus.SUBMITTING),
                Order.payment_status == PaymentStatus.SUCCEEDED,
                Order.status.not_in(NON_SUBMITTABLE_STATUSES),
            )
            .values(zinc_status=ZincStatus.SUBMITTING, updated_at=func.now())
        )
        order = await self._execute_write(stmt, "claim_submission", order_id)
        won = order is not None
        logger.info("Submission claim attempted", order_id=str(order_id), won=won)
        return won

    async def record_submission(
        self, order_id: uuid.UUID, vendor_order_id: str
    ) -> Optional[Order]:
        """
        Record a successful vendor submission.

        Returns ``None`` if a vendor handle was already present.
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.zinc_order_id.is_(None),
                Order.status.in_(self.state_machine.source_statuses(OrderStatus.PROCESSING)),
            )
            .values(
                zinc_order_id=vendor_order_id,
                zinc_status=ZincStatus.SUBMITTED,
                status=OrderStatus.PROCESSING,
                next_retry_at=None,
                vendor_error=None,
                updated_at=func.now(),
            )
        )
        order = await self._execute_write(stmt, "record_submission", order_id)
        if order is not None:
            logger.info(
                "Vendor submission recorded",
                order_id=str(order_id),
                vendor_order_id=vendor_order_id,
            )
        return order

    async def mark_retry_pending(
        self,
        order_id: uuid.UUID,
        reason: str,
        next_retry_at: datetime,
        zinc_status: Optional[ZincStatus] = None,
        vendor_error: Optional[dict[str, Any]] = None,
        only_if: Optional[Sequence[Any]] = None,
    ) -> Optional[Order]:
        """
        Move an order to RETRY_PENDING with its reason and next attempt.

        Args:
            order_id: Order identifier
            reason: Retry reason recorded on the order
            next_retry_at: Earliest time of the next attempt
            zinc_status: Vendor status to write alongside (None clears it)
            vendor_error: Operator-facing error detail
            only_if: Extra ``WHERE`` conditions; when given, a miss returns
                ``None`` instead of raising

        Returns:
            Updated order, or None when ``only_if`` did not match

        Raises:
            OrderNotFoundError: If order not found
            StateTransitionError: If the order is terminal
        """
        fields: dict[str, Any] = {
            "retry_reason": reason[:255],
            "next_retry_at": next_retry_at,
            "zinc_status": zinc_status,
        }
        if vendor_error is not None:
            fields["vendor_error"] = vendor_error

        if only_if is None:
            return await self.transition_status(
                order_id, OrderStatus.RETRY_PENDING, **fields
            )

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(
                    self.state_machine.source_statuses(OrderStatus.RETRY_PENDING)
                ),
                *only_if,
            )
            .values(status=OrderStatus.RETRY_PENDING, updated_at=func.now(), **fields)
        )
        return await self._execute_write(stmt, "mark_retry_pending", order_id)

    async def recover_stale_submission(
        self,
        order_id: uuid.UUID,
        now: datetime,
        threshold: timedelta,
        next_retry_at: datetime,
    ) -> Optional[Order]:
        """Re-check staleness in the write itself and move to RETRY_PENDING."""
        return await self.mark_retry_pending(
            order_id,
            reason="timeout_recovery",
            next_retry_at=next_retry_at,
            zinc_status=ZincStatus.SUBMITTED,
            only_if=[
                Order.status == OrderStatus.PROCESSING,
                Order.zinc_status == ZincStatus.SUBMITTED,
                Order.updated_at < now - threshold,
            ],
        )

    async def recover_interrupted_submission(
        self,
        order_id: uuid.UUID,
        now: datetime,
        threshold: timedelta,
        next_retry_at: datetime,
    ) -> Optional[Order]:
        """Clear a stale ``submitting`` marker and schedule a resubmission."""
        return await self.mark_retry_pending(
            order_id,
            reason="submission_interrupted",
            next_retry_at=next_retry_at,
            zinc_status=None,
            only_if=[
                Order.zinc_status == ZincStatus.SUBMITTING,
                Order.zinc_order_id.is_(None),
                Order.updated_at < now - threshold,
            ],
        )

    async def increment_retry_count(self, order_id: uuid.UUID) -> Order:
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.RETRY_PENDING)
            .values(retry_count=Order.retry_count + 1, updated_at=func.now())
        )
        return await self._require(
            await self._execute_write(stmt, "increment_retry_count", order_id),
            order_id,
        )

    async def update_vendor_state(
        self,
        order_id: uuid.UUID,
        zinc_status: ZincStatus,
        status: Optional[OrderStatus] = None,
        **fields: Any,
    ) -> Order:
        """
        Mirror a vendor status change onto the order.

        Args:
            order_id: Order identifier
            zinc_status: New vendor status
            status: Order status to move to, if the vendor event implies one
            **fields: Other vendor-owned columns (tracking_number, vendor_error)

        Returns:
            Updated order
        """
        if status is not None:
            return await self.transition_status(
                order_id, status, zinc_status=zinc_status, **fields
            )

        stmt = (
            update(Order)
            .where(Order.id == order_id)
            .values(zinc_status=zinc_status, updated_at=func.now(), **fields)
        )
        return await self._require(
            await self._execute_write(stmt, "update_vendor_state", order_id),
            order_id,
        )

    async def update_scheduled_date(
        self,
        order_id: uuid.UUID,
        new_date: date,
        status: Optional[OrderStatus] = None,
    ) -> Order:
        """
        Replace the requested delivery date of an order not yet submitted.

        Raises:
            OrderNotFoundError: If order not found
            StateTransitionError: If the order holds a vendor handle or is
                terminal
        """
        fields = {"scheduled_delivery_date": new_date}
        if status is not None:
            return await self.transition_status(order_id, status, **fields)

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.zinc_order_id.is_(None),
                Order.status.not_in(TERMINAL_ORDER_STATUSES),
            )
            .values(updated_at=func.now(), **fields)
        )
        order = await self._execute_write(stmt, "update_scheduled_date", order_id)
        if order is None:
            current = await self._require(None, order_id)
            raise StateTransitionError(
                "Order can no longer be rescheduled",
                current_state=current.status,
                target_state=current.status,
                order_id=str(order_id),
                zinc_order_id=current.zinc_order_id,
            )
        return order

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _execute_write(
        self, stmt: Any, operation: str, order_id: uuid.UUID
    ) -> Optional[Order]:
        try:
            result = await self.session.execute(
                stmt.returning(Order).execution_options(
                    populate_existing=True, synchronize_session=False
                )
            )
            order = result.scalar_one_or_none()
            await self.session.commit()
            return order
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order write failed",
                operation=operation,
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderUpdateError(
                f"Failed to {operation.replace('_', ' ')}",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def _fetch_many(self, stmt: Any, operation: str) -> list[Order]:
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Order query failed", operation=operation, error=str(e))
            raise OrderRepositoryError(
                "Order query failed", operation=operation, error=str(e)
            ) from e

    async def _require(self, order: Optional[Order], order_id: uuid.UUID) -> Order:
        if order is not None:
            return order
        current = await self.get_order_by_id(order_id)
        if current is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return current
