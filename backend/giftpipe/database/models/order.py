"""
Order and order item models for the fulfillment pipeline.

The Order row is the single shared mutable resource of the pipeline. It is
written only through narrow field-level updates in the order repository;
see ``giftpipe.services.orders.repository``.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from giftpipe.database.base import BaseModel, pg_enum
from giftpipe.services.orders.enums import OrderStatus, PaymentStatus, ZincStatus


class Order(BaseModel):
    """
    Customer order tracked from payment capture to vendor fulfillment.

    Attributes:
        order_number: Human-readable order number
        payment_intent_id: Payment processor payment-intent reference
        payment_status: Payment status confirmed with the processor
        status: Fulfillment lifecycle status
        zinc_order_id: Vendor order handle, set once submission succeeds
        zinc_status: Vendor status mirror
        scheduled_delivery_date: Requested delivery date for scheduled gifts
        retry_count: Number of retry scans that re-drove this order
        next_retry_at: Earliest time the retry scheduler may re-drive it
        webhook_token: Secret the vendor echoes back on webhook callbacks
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
        comment="Human-readable order number",
    )

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
        comment="Purchasing user, null for guest checkout",
    )

    # Financial
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    shipping_cost: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="usd"
    )

    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Payment processor payment-intent id",
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        pg_enum(PaymentStatus, "order_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
        server_default=PaymentStatus.PENDING.value,
    )

    # Fulfillment
    status: Mapped[OrderStatus] = mapped_column(
        pg_enum(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        server_default=OrderStatus.PENDING.value,
        index=True,
    )

    zinc_order_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Vendor order handle",
    )

    zinc_status: Mapped[Optional[ZincStatus]] = mapped_column(
        pg_enum(ZincStatus, "zinc_status"),
        nullable=True,
    )

    tracking_number: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    vendor_error: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Last vendor rejection detail, operator facing only",
    )

    webhook_token: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Secret authenticating vendor webhook callbacks",
    )

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )
    gift_options: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )

    # Scheduling
    scheduled_delivery_date: Mapped[Optional[date]] = mapped_column(
        Date, nullable=True
    )
    is_auto_gift: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    auto_gift_context: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    retry_reason: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_orders_retry_count_non_negative"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        Index("ix_orders_retry_due", "status", "next_retry_at"),
        Index("ix_orders_vendor_progress", "status", "zinc_status", "updated_at"),
        Index("ix_orders_scheduled", "status", "scheduled_delivery_date"),
        Index(
            "ix_orders_payment_reconciliation", "status", "payment_status", "updated_at"
        ),
    )

    @property
    def has_vendor_handle(self) -> bool:
        return self.zinc_order_id is not None

    @property
    def delivery_group_ids(self) -> list[str]:
        """Distinct delivery groups named by the line items."""
        return sorted(
            {item.delivery_group_id for item in self.items if item.delivery_group_id}
        )


class OrderItem(BaseModel):
    """
    Line item belonging to exactly one order.

    Removed only through cascading deletion of its order.
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Vendor product identifier",
    )
    product_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    recipient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    recipient_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delivery_group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    order: Mapped[Order] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_price_non_negative"),
    )
