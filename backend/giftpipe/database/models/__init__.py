"""ORM models for the fulfillment pipeline."""

from giftpipe.database.models.alert import Alert, AlertSeverity, AlertType
from giftpipe.database.models.auto_gift import (
    ApprovalChannel,
    ApprovalToken,
    AutoGiftExecution,
    AutoGiftExecutionStatus,
)
from giftpipe.database.models.order import Order, OrderItem
from giftpipe.database.models.signal import ProcessingSignal

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "ApprovalChannel",
    "ApprovalToken",
    "AutoGiftExecution",
    "AutoGiftExecutionStatus",
    "Order",
    "OrderItem",
    "ProcessingSignal",
]
