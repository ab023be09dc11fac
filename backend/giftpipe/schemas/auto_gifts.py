"""Schemas for the auto-gift approval endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from giftpipe.database.models.auto_gift import ApprovalChannel


class ApprovalRequest(BaseModel):
    via: ApprovalChannel = Field(
        ApprovalChannel.EMAIL,
        description="Channel the approval came through",
    )

    @field_validator("via")
    @classmethod
    def validate_via(cls, v: ApprovalChannel) -> ApprovalChannel:
        if v == ApprovalChannel.AUTO:
            raise ValueError("Automatic approval cannot be requested over HTTP")
        return v


class RejectionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ExecutionResponse(BaseModel):
    """Auto-gift execution state after an approval decision."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID
    status: str
    total_amount: Decimal
    currency: str
    order_id: Optional[UUID] = None
    failure_reason: Optional[str] = None
    updated_at: datetime
    order: Optional[dict[str, Any]] = None

    @field_validator("status", mode="before")
    @classmethod
    def enum_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class SelectedProduct(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=100)
    title: Optional[str] = Field(None, max_length=500)
    price: Decimal = Field(..., gt=0)
    quantity: int = Field(1, ge=1, le=10)


class SelectionRequest(BaseModel):
    """An autonomous selection submitted by the gift selection engine."""

    rule_id: UUID
    user_id: UUID
    recipient_id: Optional[UUID] = None
    products: list[SelectedProduct] = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    discovery_method: str = Field(..., min_length=1, max_length=64)
    shipping_address: dict[str, Any]
    auto_approve_enabled: bool = False
    budget_limit: Optional[Decimal] = Field(None, gt=0)
    stripe_customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    currency: str = Field("usd", min_length=3, max_length=3)
