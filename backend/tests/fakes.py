"""
In-memory stand-ins for the storage and external-service edges.

The fake repositories follow the conditional-write contract of the real
ones: every guarded write checks its condition and applies its change
without yielding to the event loop in between, which gives the same
single-winner behaviour a ``UPDATE ... WHERE ... RETURNING`` gives.
"""

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Callable, Iterable, Optional, Sequence
from unittest.mock import Mock

from giftpipe.database.models.alert import AlertSeverity, AlertType
from giftpipe.database.models.auto_gift import (
    ApprovalToken,
    AutoGiftExecution,
    AutoGiftExecutionStatus,
)
from giftpipe.database.models.order import Order, OrderItem
from giftpipe.services.auto_gifts.service import AutoGiftService
from giftpipe.services.fulfillment.submitter import FulfillmentSubmitter
from giftpipe.services.fulfillment.vendor_events import VendorEventHandler
from giftpipe.services.fulfillment.zinc_client import VendorClientError
from giftpipe.services.orchestration.trigger import TriggerOrchestrator
from giftpipe.services.orders.enums import (
    TERMINAL_ORDER_STATUSES,
    OrderStatus,
    PaymentStatus,
    ZincStatus,
)
from giftpipe.services.orders.repository import (
    OrderCreationError,
    OrderNotFoundError,
    delivery_groups,
)
from giftpipe.services.orders.state_machine import (
    NON_SUBMITTABLE_STATUSES,
    OrderStateMachine,
    StateTransitionError,
    is_interrupted_submission,
    is_retry_due,
    is_stale_submission,
)
from giftpipe.services.payments.reconciler import PaymentReconciler
from giftpipe.services.payments.verifier import PaymentVerifier
from giftpipe.services.payments.webhooks import PaymentWebhookHandler
from giftpipe.services.recovery.service import ManualRecoveryService
from giftpipe.services.scheduling.releaser import ScheduledOrderReleaser
from giftpipe.services.scheduling.retry import RetryScheduler
from giftpipe.services.scheduling.timeout_monitor import TimeoutMonitor

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

SHIPPING_ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line1": "12 Analytical Way",
    "city": "Portland",
    "state": "OR",
    "zip_code": "97201",
    "country": "US",
}


class Clock:
    """Settable clock shared by the components under test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def make_order(clock: Optional[Clock] = None, **overrides: Any) -> Order:
    """Build a transient order with every column the pipeline reads set."""
    now = clock() if clock else NOW
    order_id = overrides.pop("id", uuid.uuid4())
    fields: dict[str, Any] = {
        "id": order_id,
        "order_number": f"GP-20240301-{order_id.hex[:6].upper()}",
        "user_id": uuid.uuid4(),
        "subtotal": Decimal("49.99"),
        "shipping_cost": Decimal("0.00"),
        "tax_amount": Decimal("0.00"),
        "total_amount": Decimal("49.99"),
        "currency": "usd",
        "payment_intent_id": f"pi_{order_id.hex[:12]}",
        "payment_status": PaymentStatus.PENDING,
        "status": OrderStatus.PENDING,
        "zinc_order_id": None,
        "zinc_status": None,
        "tracking_number": None,
        "vendor_error": None,
        "webhook_token": "hook-token",
        "shipping_address": dict(SHIPPING_ADDRESS),
        "gift_options": None,
        "scheduled_delivery_date": None,
        "is_auto_gift": False,
        "auto_gift_context": None,
        "retry_count": 0,
        "next_retry_at": None,
        "retry_reason": None,
        "created_at": now,
        "updated_at": now,
    }
    items = overrides.pop(
        "items",
        [{"product_id": "B00TEST123", "quantity": 1, "unit_price": Decimal("49.99")}],
    )
    fields.update(overrides)
    order = Order(**fields)
    order.items = [
        OrderItem(
            id=uuid.uuid4(),
            order_id=order.id,
            product_id=item["product_id"],
            product_name=item.get("product_name"),
            quantity=item.get("quantity", 1),
            unit_price=Decimal(str(item["unit_price"])),
            delivery_group_id=item.get("delivery_group_id"),
        )
        for item in items
    ]
    return order


def make_paid_order(clock: Optional[Clock] = None, **overrides: Any) -> Order:
    overrides.setdefault("payment_status", PaymentStatus.SUCCEEDED)
    overrides.setdefault("status", OrderStatus.PAYMENT_CONFIRMED)
    return make_order(clock, **overrides)


class FakeOrderRepository:
    """Dictionary-backed order store with the repository's write guards."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.orders: dict[uuid.UUID, Order] = {}
        self.clock = clock or (lambda: NOW)
        self.state_machine = OrderStateMachine()
        self.claims: list[uuid.UUID] = []

    def add(self, *orders: Order) -> Order:
        for order in orders:
            self.orders[order.id] = order
        return orders[-1]

    def _touch(self, order: Order, **fields: Any) -> Order:
        for key, value in fields.items():
            setattr(order, key, value)
        order.updated_at = self.clock()
        return order

    def _get(self, order_id: uuid.UUID) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    # Reads

    async def get_order_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        return self.orders.get(order_id)

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        for order in self.orders.values():
            if order.payment_intent_id == payment_intent_id:
                return order
        return None

    async def find_due_retries(self, now: datetime, limit: int) -> list[Order]:
        due = [o for o in self.orders.values() if is_retry_due(o, now)]
        return sorted(due, key=lambda o: o.next_retry_at)[:limit]

    async def find_stale_submissions(
        self, now: datetime, threshold: timedelta
    ) -> list[Order]:
        return [o for o in self.orders.values() if is_stale_submission(o, now, threshold)]

    async def find_interrupted_submissions(
        self, now: datetime, threshold: timedelta
    ) -> list[Order]:
        return [
            o for o in self.orders.values() if is_interrupted_submission(o, now, threshold)
        ]

    async def find_due_scheduled(self, release_on_or_before: date) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if o.status == OrderStatus.SCHEDULED
            and o.scheduled_delivery_date is not None
            and o.scheduled_delivery_date <= release_on_or_before
        ]

    async def find_unconfirmed_payments(
        self, touched_after: datetime, limit: int
    ) -> list[Order]:
        unconfirmed = [
            o
            for o in self.orders.values()
            if o.status in (OrderStatus.PENDING, OrderStatus.SCHEDULED)
            and o.payment_status != PaymentStatus.SUCCEEDED
            and o.payment_intent_id is not None
            and o.zinc_order_id is None
            and o.updated_at >= touched_after
        ]
        return sorted(unconfirmed, key=lambda o: o.updated_at, reverse=True)[:limit]

    async def find_awaiting_vendor(self, limit: int) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if o.zinc_order_id
            and o.zinc_status in (ZincStatus.SUBMITTED, ZincStatus.PLACED)
            and o.status not in (OrderStatus.SHIPPED, OrderStatus.CANCELLED)
        ][:limit]

    # Creation

    async def create_order_with_items(
        self,
        items: Sequence[dict[str, Any]],
        shipping_address: dict[str, Any],
        subtotal: Decimal,
        currency: str = "usd",
        user_id: Optional[uuid.UUID] = None,
        is_auto_gift: bool = False,
        auto_gift_context: Optional[dict[str, Any]] = None,
        **fields: Any,
    ) -> Order:
        if not items:
            raise OrderCreationError("Order must contain at least one item")
        groups = delivery_groups(items)
        if len(groups) > 1:
            raise OrderCreationError(
                "Order items span more than one delivery group",
                delivery_groups=groups,
            )
        order = make_order(
            self.clock,
            items=[
                {
                    "product_id": item["product_id"],
                    "product_name": item.get("product_name"),
                    "quantity": item.get("quantity", 1),
                    "unit_price": item["unit_price"],
                    "delivery_group_id": item.get("delivery_group_id"),
                }
                for item in items
            ],
            shipping_address=shipping_address,
            subtotal=subtotal,
            total_amount=subtotal,
            currency=currency,
            user_id=user_id,
            payment_intent_id=None,
            is_auto_gift=is_auto_gift,
            auto_gift_context=auto_gift_context,
            **fields,
        )
        return self.add(order)

    async def set_payment_intent(self, order_id: uuid.UUID, payment_intent_id: str) -> Order:
        order = self._get(order_id)
        if order.payment_intent_id is None:
            self._touch(order, payment_intent_id=payment_intent_id)
        return order

    # Status writes

    async def transition_status(
        self, order_id: uuid.UUID, target_status: OrderStatus, **fields: Any
    ) -> Order:
        order = self._get(order_id)
        self.state_machine.validate_transition(order, target_status)
        return self._touch(order, status=target_status, **fields)

    async def update_payment_status(
        self,
        order_id: uuid.UUID,
        payment_status: PaymentStatus,
        confirm_order: bool = False,
    ) -> Order:
        order = self._get(order_id)
        if order.payment_status != PaymentStatus.SUCCEEDED:
            self._touch(order, payment_status=payment_status)
        if (
            confirm_order
            and order.payment_status == PaymentStatus.SUCCEEDED
            and order.status == OrderStatus.PENDING
        ):
            order = await self.transition_status(order_id, OrderStatus.PAYMENT_CONFIRMED)
        return order

    # Submission bookkeeping

    async def claim_submission(self, order_id: uuid.UUID) -> bool:
        order = self.orders.get(order_id)
        if (
            order is None
            or order.zinc_order_id is not None
            or order.zinc_status == ZincStatus.SUBMITTING
            or order.payment_status != PaymentStatus.SUCCEEDED
            or order.status in NON_SUBMITTABLE_STATUSES
        ):
            return False
        self._touch(order, zinc_status=ZincStatus.SUBMITTING)
        self.claims.append(order_id)
        return True

    async def record_submission(
        self, order_id: uuid.UUID, vendor_order_id: str
    ) -> Optional[Order]:
        order = self._get(order_id)
        if order.zinc_order_id is not None or order.status not in (
            self.state_machine.source_statuses(OrderStatus.PROCESSING)
        ):
            return None
        return self._touch(
            order,
            zinc_order_id=vendor_order_id,
            zinc_status=ZincStatus.SUBMITTED,
            status=OrderStatus.PROCESSING,
            next_retry_at=None,
            vendor_error=None,
        )

    async def mark_retry_pending(
        self,
        order_id: uuid.UUID,
        reason: str,
        next_retry_at: datetime,
        zinc_status: Optional[ZincStatus] = None,
        vendor_error: Optional[dict[str, Any]] = None,
        only_if: Optional[Callable[[Order], bool]] = None,
    ) -> Optional[Order]:
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
        order = self._get(order_id)
        if order.status not in self.state_machine.source_statuses(
            OrderStatus.RETRY_PENDING
        ) or not only_if(order):
            return None
        return self._touch(order, status=OrderStatus.RETRY_PENDING, **fields)

    async def recover_stale_submission(
        self,
        order_id: uuid.UUID,
        now: datetime,
        threshold: timedelta,
        next_retry_at: datetime,
    ) -> Optional[Order]:
        return await self.mark_retry_pending(
            order_id,
            reason="timeout_recovery",
            next_retry_at=next_retry_at,
            zinc_status=ZincStatus.SUBMITTED,
            only_if=lambda o: is_stale_submission(o, now, threshold),
        )

    async def recover_interrupted_submission(
        self,
        order_id: uuid.UUID,
        now: datetime,
        threshold: timedelta,
        next_retry_at: datetime,
    ) -> Optional[Order]:
        return await self.mark_retry_pending(
            order_id,
            reason="submission_interrupted",
            next_retry_at=next_retry_at,
            zinc_status=None,
            only_if=lambda o: is_interrupted_submission(o, now, threshold),
        )

    async def increment_retry_count(self, order_id: uuid.UUID) -> Order:
        order = self._get(order_id)
        if order.status == OrderStatus.RETRY_PENDING:
            self._touch(order, retry_count=order.retry_count + 1)
        return order

    async def update_vendor_state(
        self,
        order_id: uuid.UUID,
        zinc_status: ZincStatus,
        status: Optional[OrderStatus] = None,
        **fields: Any,
    ) -> Order:
        if status is not None:
            return await self.transition_status(
                order_id, status, zinc_status=zinc_status, **fields
            )
        return self._touch(self._get(order_id), zinc_status=zinc_status, **fields)

    async def update_scheduled_date(
        self,
        order_id: uuid.UUID,
        new_date: date,
        status: Optional[OrderStatus] = None,
    ) -> Order:
        if status is not None:
            return await self.transition_status(
                order_id, status, scheduled_delivery_date=new_date
            )
        order = self._get(order_id)
        if order.zinc_order_id or order.status in TERMINAL_ORDER_STATUSES:
            raise StateTransitionError(
                "Order can no longer be rescheduled",
                current_state=order.status,
                target_state=order.status,
            )
        return self._touch(order, scheduled_delivery_date=new_date)


class FakeAlertRepository:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.alerts: list[SimpleNamespace] = []
        self.clock = clock or (lambda: NOW)

    async def create_alert(
        self,
        alert_type: AlertType,
        message: str,
        severity: AlertSeverity = AlertSeverity.WARNING,
        details: Optional[dict[str, Any]] = None,
    ) -> SimpleNamespace:
        alert = SimpleNamespace(
            id=uuid.uuid4(),
            alert_type=alert_type.value,
            severity=severity.value,
            message=message,
            details=details or {},
            created_at=self.clock(),
            updated_at=self.clock(),
            resolved_at=None,
            resolved_by=None,
        )
        self.alerts.append(alert)
        return alert

    async def list_alerts(
        self,
        include_resolved: bool = False,
        alert_type: Optional[AlertType] = None,
        limit: int = 100,
    ) -> list[SimpleNamespace]:
        alerts = [
            a
            for a in reversed(self.alerts)
            if (include_resolved or a.resolved_at is None)
            and (alert_type is None or a.alert_type == alert_type.value)
        ]
        return alerts[:limit]

    async def resolve_alert(
        self, alert_id: uuid.UUID, resolved_by: str
    ) -> Optional[SimpleNamespace]:
        for alert in self.alerts:
            if alert.id == alert_id:
                if alert.resolved_at is None:
                    alert.resolved_at = self.clock()
                    alert.resolved_by = resolved_by
                return alert
        return None

    def of_type(self, alert_type: AlertType) -> list[SimpleNamespace]:
        return [a for a in self.alerts if a.alert_type == alert_type.value]


class FakeSignalLog:
    def __init__(self):
        self.signals: list[tuple[uuid.UUID, str, dict[str, Any]]] = []

    async def record(
        self,
        order_id: uuid.UUID,
        trigger_source: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.signals.append((order_id, trigger_source, metadata or {}))

    def sources_for(self, order_id: uuid.UUID) -> list[str]:
        return [source for oid, source, _ in self.signals if oid == order_id]


class FakeVendorClient:
    """Vendor double that yields once per call so concurrent callers interleave."""

    def __init__(self, request_id: str = "V123"):
        self.request_id = request_id
        self.submitted: list[uuid.UUID] = []
        self.submit_error: Optional[VendorClientError] = None
        self.poll_bodies: dict[str, dict[str, Any]] = {}
        self.poll_error: Optional[VendorClientError] = None

    async def submit_order(self, order: Order) -> dict[str, Any]:
        await asyncio.sleep(0)
        self.submitted.append(order.id)
        if self.submit_error is not None:
            raise self.submit_error
        return {"request_id": self.request_id}

    async def get_order(self, request_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self.poll_error is not None:
            raise self.poll_error
        return self.poll_bodies.get(
            request_id, {"_type": "error", "code": "request_processing"}
        )


def make_stripe_client(status: str = "succeeded") -> Mock:
    """Stripe client double whose payment intents report ``status``."""
    client = Mock()
    client.retrieve_payment_intent.side_effect = lambda pi_id: SimpleNamespace(
        id=pi_id, status=client.intent_status
    )
    client.intent_status = status
    client.create_off_session_payment.return_value = SimpleNamespace(
        id="pi_auto_gift", status="succeeded"
    )
    return client


class FakeAutoGiftRepository:
    """Execution and token store with the single-use token guard."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.executions: dict[uuid.UUID, AutoGiftExecution] = {}
        self.tokens: dict[str, ApprovalToken] = {}
        self.clock = clock or (lambda: NOW)

    async def create_execution(
        self, token: str, token_expires_at: datetime, **fields: Any
    ) -> AutoGiftExecution:
        now = self.clock()
        execution = AutoGiftExecution(
            id=uuid.uuid4(),
            order_id=None,
            failure_reason=None,
            created_at=now,
            updated_at=now,
            **fields,
        )
        approval_token = ApprovalToken(
            id=uuid.uuid4(),
            execution_id=execution.id,
            token=token,
            expires_at=token_expires_at,
            approved_at=None,
            approved_via=None,
            rejected_at=None,
            rejection_reason=None,
            created_at=now,
            updated_at=now,
        )
        execution.approval_token = approval_token
        self.executions[execution.id] = execution
        self.tokens[token] = approval_token
        return execution

    async def get_execution(self, execution_id: uuid.UUID) -> Optional[AutoGiftExecution]:
        return self.executions.get(execution_id)

    async def get_token(self, token: str) -> Optional[ApprovalToken]:
        return self.tokens.get(token)

    def _token_by_id(self, token_id: uuid.UUID) -> ApprovalToken:
        return next(t for t in self.tokens.values() if t.id == token_id)

    async def record_approval(self, token_id: uuid.UUID, via: str, now: datetime) -> bool:
        token = self._token_by_id(token_id)
        if token.is_used or token.is_expired(now):
            return False
        token.approved_at = now
        token.approved_via = via
        return True

    async def record_rejection(
        self, token_id: uuid.UUID, reason: Optional[str], now: datetime
    ) -> bool:
        token = self._token_by_id(token_id)
        if token.is_used or token.is_expired(now):
            return False
        token.rejected_at = now
        token.rejection_reason = reason
        return True

    async def update_status(
        self,
        execution_id: uuid.UUID,
        status: AutoGiftExecutionStatus,
        from_statuses: Iterable[AutoGiftExecutionStatus],
        **fields: Any,
    ) -> Optional[AutoGiftExecution]:
        execution = self.executions.get(execution_id)
        if execution is None or execution.status not in list(from_statuses):
            return None
        execution.status = status
        for key, value in fields.items():
            setattr(execution, key, value)
        execution.updated_at = self.clock()
        return execution

    async def find_expired_awaiting(self, now: datetime) -> list[AutoGiftExecution]:
        return [
            e
            for e in self.executions.values()
            if e.status == AutoGiftExecutionStatus.AWAITING_APPROVAL
            and e.approval_token.expires_at <= now
        ]

    async def find_approved_without_order(
        self, approved_before: datetime, limit: int
    ) -> list[AutoGiftExecution]:
        stalled = [
            e
            for e in self.executions.values()
            if e.status == AutoGiftExecutionStatus.APPROVED
            and e.order_id is None
            and e.updated_at < approved_before
        ]
        return sorted(stalled, key=lambda e: e.updated_at)[:limit]


def build_components(
    clock: Optional[Clock] = None,
    stripe_status: str = "succeeded",
    grace_seconds: float = 2.0,
) -> SimpleNamespace:
    """
    Wire the real services over the fakes the way ``Pipeline`` does.

    The returned namespace has the same component attributes as a
    ``Pipeline`` plus the fakes themselves.
    """
    clock = clock or Clock()
    orders = FakeOrderRepository(clock)
    alerts = FakeAlertRepository(clock)
    signals = FakeSignalLog()
    vendor = FakeVendorClient()
    stripe_client = make_stripe_client(stripe_status)
    sleeps: list[float] = []

    async def recording_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await no_sleep(seconds)

    verifier = PaymentVerifier(orders, stripe_client, timeout_seconds=5)
    submitter = FulfillmentSubmitter(
        orders,
        vendor,
        alert_repository=alerts,
        backoff=[1800, 3600, 14400, 43200],
        alert_threshold=3,
        clock=clock,
    )
    orchestrator = TriggerOrchestrator(
        orders,
        signals,
        verifier,
        submitter,
        grace_seconds=grace_seconds,
        sleep=recording_sleep,
        clock=clock,
    )
    vendor_events = VendorEventHandler(orders, alerts, vendor_client=vendor)
    releaser = ScheduledOrderReleaser(orders, orchestrator, lead_time_days=5, clock=clock)
    auto_gift_repository = FakeAutoGiftRepository(clock)

    return SimpleNamespace(
        clock=clock,
        orders=orders,
        alerts=alerts,
        signals=signals,
        vendor=vendor,
        stripe_client=stripe_client,
        sleeps=sleeps,
        verifier=verifier,
        submitter=submitter,
        orchestrator=orchestrator,
        vendor_events=vendor_events,
        releaser=releaser,
        retry_scheduler=RetryScheduler(
            orders, orchestrator, vendor_events=vendor_events, batch_size=10, clock=clock
        ),
        timeout_monitor=TimeoutMonitor(
            orders, alerts, threshold=timedelta(hours=1), clock=clock
        ),
        payment_reconciler=PaymentReconciler(
            orders,
            verifier,
            orchestrator,
            lookback=timedelta(days=7),
            batch_size=50,
            clock=clock,
        ),
        payment_webhooks=PaymentWebhookHandler(orders, verifier, orchestrator, releaser),
        recovery=ManualRecoveryService(orders, verifier, orchestrator),
        auto_gift_repository=auto_gift_repository,
        auto_gifts=AutoGiftService(
            auto_gift_repository, orders, stripe_client, orchestrator, clock=clock
        ),
    )

