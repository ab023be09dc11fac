"""
Auto-gift execution and approval token models.

An AutoGiftExecution follows one autonomous gift selection from the moment
it is made until an order exists for it. Executions are never deleted.
The ApprovalToken is the one-time checkpoint between selection and order
creation; once approval or rejection is recorded it is not changed again.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from giftpipe.database.base import BaseModel, pg_enum


class AutoGiftExecutionStatus(str, Enum):
    """
    Auto-gift execution lifecycle.

    SELECTED -> AWAITING_APPROVAL -> APPROVED -> ORDER_CREATED, with the
    terminal REJECTED / EXPIRED branch when no approval is recorded and
    FAILED when order creation itself fails.
    """

    SELECTED = "selected"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    ORDER_CREATED = "order_created"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in {
            AutoGiftExecutionStatus.ORDER_CREATED,
            AutoGiftExecutionStatus.REJECTED,
            AutoGiftExecutionStatus.EXPIRED,
        }


class ApprovalChannel(str, Enum):
    AUTO = "auto"
    EMAIL = "email"
    DASHBOARD = "dashboard"


class AutoGiftExecution(BaseModel):
    """Autonomous gift selection tracked through approval to order creation."""

    __tablename__ = "auto_gift_executions"

    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    recipient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )

    status: Mapped[AutoGiftExecutionStatus] = mapped_column(
        pg_enum(AutoGiftExecutionStatus, "auto_gift_execution_status"),
        nullable=False,
        default=AutoGiftExecutionStatus.SELECTED,
    )

    selected_products: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list
    )
    confidence_score: Mapped[Decimal] = mapped_column(
        Numeric(4, 3), nullable=False
    )
    discovery_method: Mapped[str] = mapped_column(String(64), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    payment_method_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    approval_token: Mapped[Optional["ApprovalToken"]] = relationship(
        "ApprovalToken",
        back_populates="execution",
        uselist=False,
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_auto_gift_executions_status", "status", "updated_at"),
    )


class ApprovalToken(BaseModel):
    """One-time approval credential gating an auto-gift execution."""

    __tablename__ = "auto_gift_approval_tokens"

    execution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("auto_gift_executions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    approved_via: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    execution: Mapped[AutoGiftExecution] = relationship(
        "AutoGiftExecution", back_populates="approval_token"
    )

    @property
    def is_used(self) -> bool:
        return self.approved_at is not None or self.rejected_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
