"""
Approval-gated auto-gift service.

An autonomous gift selection never spends money on its own: it becomes an
execution that must be approved, either automatically (the rule allows it
and the selection confidence clears the threshold) or by a person spending
the one-time approval token. Only an approved execution gets an order and
an off-session payment; submission to the vendor then follows the normal
pipeline once the payment webhook confirms capture.
"""

import asyncio
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional, Sequence

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger
from giftpipe.database.models.auto_gift import (
    ApprovalChannel,
    AutoGiftExecution,
    AutoGiftExecutionStatus,
)
from giftpipe.services.auto_gifts.repository import AutoGiftRepository
from giftpipe.services.orchestration.trigger import TriggerOrchestrator, TriggerSource
from giftpipe.services.orders.enums import OrderStatus
from giftpipe.services.orders.repository import OrderCreationError, OrderRepository
from giftpipe.services.payments.stripe_client import StripeClient, StripeClientError

logger = get_logger(__name__)

PENDING_APPROVAL_STATUSES = (
    AutoGiftExecutionStatus.SELECTED,
    AutoGiftExecutionStatus.AWAITING_APPROVAL,
)


class AutoGiftError(Exception):
    """Base exception for auto-gift errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class ApprovalTokenInvalid(AutoGiftError):
    """The token is unknown or has already been used."""

    pass


class ApprovalTokenExpired(AutoGiftError):
    """The token's approval window has passed."""

    pass


class InvalidExecutionState(AutoGiftError):
    """The execution is not in a status that allows the operation."""

    pass


class BudgetExceeded(AutoGiftError):
    """The selection costs more than the rule's budget."""

    pass


def selection_total(products: Sequence[dict[str, Any]]) -> Decimal:
    """Sum of ``price * quantity`` over the selected products."""
    total = sum(
        (
            Decimal(str(product["price"])) * int(product.get("quantity", 1))
            for product in products
        ),
        Decimal("0.00"),
    )
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class AutoGiftService:
    """Runs auto-gift executions from selection to order creation."""

    def __init__(
        self,
        repository: AutoGiftRepository,
        order_repository: OrderRepository,
        stripe_client: StripeClient,
        orchestrator: TriggerOrchestrator,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.repository = repository
        self.order_repository = order_repository
        self.stripe_client = stripe_client
        self.orchestrator = orchestrator
        self.confidence_threshold = Decimal(
            str(settings.auto_approve_confidence_threshold)
        )
        self.token_ttl = timedelta(days=settings.approval_token_ttl_days)
        self.order_grace = timedelta(minutes=settings.auto_gift_order_grace_minutes)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def record_selection(
        self,
        rule_id: uuid.UUID,
        user_id: uuid.UUID,
        products: Sequence[dict[str, Any]],
        confidence: float,
        discovery_method: str,
        shipping_address: dict[str, Any],
        recipient_id: Optional[uuid.UUID] = None,
        auto_approve_enabled: bool = False,
        budget_limit: Optional[Decimal] = None,
        stripe_customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        currency: str = "usd",
    ) -> AutoGiftExecution:
        """
        Record an autonomous selection and open its approval checkpoint.

        Args:
            rule_id: Auto-gift rule that produced the selection
            user_id: Rule owner who pays for the gift
            products: Selected products with product_id, price, quantity
            confidence: Selection confidence between 0 and 1
            discovery_method: How the products were found
            shipping_address: Recipient address
            recipient_id: Recipient user, when known
            auto_approve_enabled: Whether the rule allows automatic approval
            budget_limit: Maximum spend for one execution
            stripe_customer_id: Customer owning the saved payment method
            payment_method_id: Saved payment method to charge
            currency: Three-letter ISO currency code

        Returns:
            The execution, ``approved`` when auto-approved and
            ``awaiting_approval`` otherwise

        Raises:
            AutoGiftError: If no products were selected
            BudgetExceeded: If the selection costs more than the budget
        """
        if not products:
            raise AutoGiftError("Selection contains no products", rule_id=str(rule_id))

        total = selection_total(products)
        if budget_limit is not None and total > Decimal(str(budget_limit)):
            logger.warning(
                "Auto-gift selection over budget",
                rule_id=str(rule_id),
                total=str(total),
                budget_limit=str(budget_limit),
            )
            raise BudgetExceeded(
                "Selection exceeds the rule budget",
                rule_id=str(rule_id),
                total=str(total),
                budget_limit=str(budget_limit),
            )

        now = self.clock()
        confidence_score = Decimal(str(confidence)).quantize(Decimal("0.001"))
        execution = await self.repository.create_execution(
            token=secrets.token_urlsafe(32),
            token_expires_at=now + self.token_ttl,
            rule_id=rule_id,
            user_id=user_id,
            recipient_id=recipient_id,
            status=AutoGiftExecutionStatus.SELECTED,
            selected_products=list(products),
            confidence_score=confidence_score,
            discovery_method=discovery_method,
            total_amount=total,
            currency=currency.lower(),
            shipping_address=shipping_address,
            stripe_customer_id=stripe_customer_id,
            payment_method_id=payment_method_id,
        )

        if auto_approve_enabled and confidence_score >= self.confidence_threshold:
            return await self._approve_token(
                execution.approval_token.id, execution.id, ApprovalChannel.AUTO, now
            )

        awaiting = await self.repository.update_status(
            execution.id,
            AutoGiftExecutionStatus.AWAITING_APPROVAL,
            [AutoGiftExecutionStatus.SELECTED],
        )
        return awaiting or execution

    async def approve(
        self, token: str, via: ApprovalChannel = ApprovalChannel.EMAIL
    ) -> AutoGiftExecution:
        """
        Approve an execution by spending its token.

        Raises:
            ApprovalTokenInvalid: If the token is unknown or already used
            ApprovalTokenExpired: If the approval window has passed
        """
        approval_token = await self._usable_token(token)
        return await self._approve_token(
            approval_token.id, approval_token.execution_id, via, self.clock()
        )

    async def reject(self, token: str, reason: Optional[str] = None) -> AutoGiftExecution:
        """
        Reject an execution by spending its token.

        Raises:
            ApprovalTokenInvalid: If the token is unknown or already used
            ApprovalTokenExpired: If the approval window has passed
        """
        approval_token = await self._usable_token(token)
        if not await self.repository.record_rejection(
            approval_token.id, reason, self.clock()
        ):
            raise ApprovalTokenInvalid("Approval token already used")

        execution = await self.repository.update_status(
            approval_token.execution_id,
            AutoGiftExecutionStatus.REJECTED,
            PENDING_APPROVAL_STATUSES,
            failure_reason=reason,
        )
        if execution is None:
            raise InvalidExecutionState(
                "Execution is no longer awaiting approval",
                execution_id=str(approval_token.execution_id),
            )
        logger.info(
            "Auto-gift rejected",
            execution_id=str(execution.id),
            reason=reason,
        )
        return execution

    async def create_order(self, execution_id: uuid.UUID) -> dict[str, Any]:
        """
        Create and pay for the order of an approved execution.

        Returns:
            Dictionary with the ``execution``, the ``order``, the
            ``payment_intent_id`` and the orchestrator's ``trigger_result``

        Raises:
            InvalidExecutionState: If the execution is missing or not approved
            AutoGiftError: If the order or its off-session payment could not
                be created
        """
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise InvalidExecutionState(
                "Execution not found", execution_id=str(execution_id)
            )
        if execution.status != AutoGiftExecutionStatus.APPROVED or execution.order_id:
            raise InvalidExecutionState(
                f"Execution is {execution.status.value}, not approved",
                execution_id=str(execution_id),
                status=execution.status.value,
            )
        if not (execution.stripe_customer_id and execution.payment_method_id):
            await self._fail(execution, "missing_payment_method")
            raise AutoGiftError(
                "Execution has no saved payment method",
                execution_id=str(execution_id),
            )

        token = execution.approval_token
        try:
            order = await self.order_repository.create_order_with_items(
                items=[
                    {
                        "product_id": product["product_id"],
                        "product_name": product.get("title") or product.get("name"),
                        "quantity": product.get("quantity", 1),
                        "unit_price": product["price"],
                        "recipient_id": execution.recipient_id,
                    }
                    for product in execution.selected_products
                ],
                shipping_address=execution.shipping_address,
                subtotal=execution.total_amount,
                currency=execution.currency,
                user_id=execution.user_id,
                is_auto_gift=True,
                auto_gift_context={
                    "execution_id": str(execution.id),
                    "rule_id": str(execution.rule_id),
                    "confidence_score": str(execution.confidence_score),
                    "discovery_method": execution.discovery_method,
                    "approved_via": token.approved_via if token else None,
                },
            )
        except OrderCreationError as e:
            await self._fail(execution, "order_creation_failed")
            raise AutoGiftError(
                f"Order creation failed: {e}",
                execution_id=str(execution.id),
            ) from e

        try:
            intent = await asyncio.to_thread(
                self.stripe_client.create_off_session_payment,
                amount=to_minor_units(order.total_amount),
                currency=order.currency,
                customer_id=execution.stripe_customer_id,
                payment_method_id=execution.payment_method_id,
                metadata={
                    "order_id": str(order.id),
                    "auto_gift_execution_id": str(execution.id),
                },
                idempotency_key=str(execution.id),
            )
        except StripeClientError as e:
            await self.order_repository.transition_status(
                order.id, OrderStatus.CANCELLED
            )
            await self._fail(execution, f"payment_failed:{e.code or 'unknown'}")
            raise AutoGiftError(
                f"Off-session payment failed: {e}",
                execution_id=str(execution.id),
                order_id=str(order.id),
                code=e.code,
            ) from e

        order = await self.order_repository.set_payment_intent(order.id, intent.id)
        linked = await self.repository.update_status(
            execution.id,
            AutoGiftExecutionStatus.ORDER_CREATED,
            [AutoGiftExecutionStatus.APPROVED],
            order_id=order.id,
        )
        if linked is None:
            raise InvalidExecutionState(
                "Execution changed while its order was created",
                execution_id=str(execution.id),
                order_id=str(order.id),
            )

        logger.info(
            "Auto-gift order created",
            execution_id=str(execution.id),
            order_id=str(order.id),
            payment_intent_id=intent.id,
            payment_intent_status=intent.status,
        )

        trigger_result = await self.orchestrator.handle(
            order.id,
            TriggerSource.CRON,
            {"auto_gift_execution_id": str(execution.id)},
        )
        return {
            "execution": linked,
            "order": trigger_result["order"],
            "payment_intent_id": intent.id,
            "trigger_result": trigger_result,
        }

    async def expire_stale(self) -> int:
        """Expire executions whose approval window closed without a decision."""
        now = self.clock()
        expired = 0
        for execution in await self.repository.find_expired_awaiting(now):
            updated = await self.repository.update_status(
                execution.id,
                AutoGiftExecutionStatus.EXPIRED,
                PENDING_APPROVAL_STATUSES,
                failure_reason="approval_expired",
            )
            if updated is not None:
                expired += 1
        if expired:
            logger.info("Auto-gift approvals expired", count=expired)
        return expired

    async def find_stalled_approvals(self, limit: int = 50) -> list[uuid.UUID]:
        """
        Approved executions that never got their order.

        An approval only enqueues order creation; if that job was lost the
        execution would stay ``approved`` forever. Executions approved longer
        ago than the grace period and still without an order are returned so
        their creation can be enqueued again.
        """
        cutoff = self.clock() - self.order_grace
        stalled = await self.repository.find_approved_without_order(cutoff, limit)
        if stalled:
            logger.warning(
                "Approved auto-gifts without an order",
                count=len(stalled),
                execution_ids=[str(e.id) for e in stalled],
            )
        return [execution.id for execution in stalled]

    async def _usable_token(self, token: str) -> Any:
        approval_token = await self.repository.get_token(token)
        if approval_token is None:
            raise ApprovalTokenInvalid("Unknown approval token")
        if approval_token.is_used:
            raise ApprovalTokenInvalid(
                "Approval token already used",
                execution_id=str(approval_token.execution_id),
            )
        if approval_token.is_expired(self.clock()):
            await self.repository.update_status(
                approval_token.execution_id,
                AutoGiftExecutionStatus.EXPIRED,
                PENDING_APPROVAL_STATUSES,
                failure_reason="approval_expired",
            )
            raise ApprovalTokenExpired(
                "Approval token has expired",
                execution_id=str(approval_token.execution_id),
            )
        return approval_token

    async def _approve_token(
        self,
        token_id: uuid.UUID,
        execution_id: uuid.UUID,
        via: ApprovalChannel,
        now: datetime,
    ) -> AutoGiftExecution:
        if not await self.repository.record_approval(token_id, via.value, now):
            raise ApprovalTokenInvalid(
                "Approval token already used", execution_id=str(execution_id)
            )
        execution = await self.repository.update_status(
            execution_id,
            AutoGiftExecutionStatus.APPROVED,
            PENDING_APPROVAL_STATUSES,
        )
        if execution is None:
            raise InvalidExecutionState(
                "Execution is no longer awaiting approval",
                execution_id=str(execution_id),
            )
        logger.info(
            "Auto-gift approved",
            execution_id=str(execution_id),
            approved_via=via.value,
        )
        return execution

    async def _fail(self, execution: AutoGiftExecution, reason: str) -> None:
        await self.repository.update_status(
            execution.id,
            AutoGiftExecutionStatus.FAILED,
            [AutoGiftExecutionStatus.APPROVED],
            failure_reason=reason,
        )
        logger.error(
            "Auto-gift execution failed",
            execution_id=str(execution.id),
            reason=reason,
        )
