"""
Component wiring for one unit of work.

Every HTTP request and every worker task builds one ``Pipeline`` around its
own database session and vendor client. Components receive their
collaborators explicitly; nothing here is a process-wide singleton.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from giftpipe.database.connection import get_session
from giftpipe.services.alerts.repository import AlertRepository
from giftpipe.services.auto_gifts.repository import AutoGiftRepository
from giftpipe.services.auto_gifts.service import AutoGiftService
from giftpipe.services.fulfillment.submitter import FulfillmentSubmitter
from giftpipe.services.fulfillment.vendor_events import VendorEventHandler
from giftpipe.services.fulfillment.zinc_client import ZincClient
from giftpipe.services.orchestration.signals import SignalLog
from giftpipe.services.orchestration.trigger import TriggerOrchestrator
from giftpipe.services.orders.repository import OrderRepository
from giftpipe.services.payments.reconciler import PaymentReconciler
from giftpipe.services.payments.stripe_client import StripeClient, get_stripe_client
from giftpipe.services.payments.verifier import PaymentVerifier
from giftpipe.services.payments.webhooks import PaymentWebhookHandler
from giftpipe.services.recovery.service import ManualRecoveryService
from giftpipe.services.scheduling.releaser import ScheduledOrderReleaser
from giftpipe.services.scheduling.retry import RetryScheduler
from giftpipe.services.scheduling.timeout_monitor import TimeoutMonitor


class Pipeline:
    """All pipeline components bound to one session."""

    def __init__(
        self,
        session: AsyncSession,
        vendor_client: ZincClient,
        stripe_client: Optional[StripeClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Wire the components.

        Args:
            session: Async database session
            vendor_client: Fulfillment vendor client
            stripe_client: Client for payment creation and webhook checks;
                verification always uses its own client without retries
            clock: Current-time source shared by the time-driven components
        """
        self.session = session
        self.stripe_client = stripe_client or get_stripe_client()

        self.orders = OrderRepository(session)
        self.alerts = AlertRepository(session)
        self.signals = SignalLog(session)

        self.verifier = PaymentVerifier(self.orders, get_stripe_client(max_retries=0))
        self.submitter = FulfillmentSubmitter(
            self.orders, vendor_client, alert_repository=self.alerts, clock=clock
        )
        self.orchestrator = TriggerOrchestrator(
            self.orders, self.signals, self.verifier, self.submitter, clock=clock
        )
        self.vendor_events = VendorEventHandler(
            self.orders, self.alerts, vendor_client=vendor_client
        )

        self.releaser = ScheduledOrderReleaser(
            self.orders, self.orchestrator, clock=clock
        )
        self.retry_scheduler = RetryScheduler(
            self.orders, self.orchestrator, vendor_events=self.vendor_events, clock=clock
        )
        self.timeout_monitor = TimeoutMonitor(self.orders, self.alerts, clock=clock)
        self.payment_reconciler = PaymentReconciler(
            self.orders, self.verifier, self.orchestrator, clock=clock
        )

        self.payment_webhooks = PaymentWebhookHandler(
            self.orders, self.verifier, self.orchestrator, self.releaser
        )
        self.recovery = ManualRecoveryService(
            self.orders, self.verifier, self.orchestrator
        )
        self.auto_gifts = AutoGiftService(
            AutoGiftRepository(session),
            self.orders,
            self.stripe_client,
            self.orchestrator,
            clock=clock,
        )


@asynccontextmanager
async def open_pipeline() -> AsyncIterator[Pipeline]:
    """Open a session and a vendor client, and close both afterwards."""
    async with get_session() as session:
        async with ZincClient() as vendor_client:
            yield Pipeline(session, vendor_client)
