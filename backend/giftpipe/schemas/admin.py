"""
Operator-facing schemas: manual recovery, date overrides and alerts.

Unlike the customer views these carry full vendor and retry detail.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderDetail(BaseModel):
    """Full order state for operators."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: str
    payment_status: str
    payment_intent_id: Optional[str] = None
    zinc_order_id: Optional[str] = None
    zinc_status: Optional[str] = None
    tracking_number: Optional[str] = None
    vendor_error: Optional[dict[str, Any]] = None
    total_amount: Decimal
    currency: str
    scheduled_delivery_date: Optional[date] = None
    is_auto_gift: bool = False
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    retry_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("status", "payment_status", "zinc_status", mode="before")
    @classmethod
    def enum_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class RecoveryRequest(BaseModel):
    operator: str = Field(
        "operator",
        min_length=1,
        max_length=255,
        description="Who is running the recovery",
    )


class RecoveryResponse(BaseModel):
    """Manual recovery outcome."""

    success: bool = True
    order: OrderDetail
    trigger_result: Optional[dict[str, Any]] = None
    warning: Optional[str] = None


class ScheduledDateUpdate(BaseModel):
    scheduled_delivery_date: date = Field(
        ..., description="New requested delivery date"
    )


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    alert_type: str
    severity: str
    message: str
    details: dict[str, Any]
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


class AlertResolveRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=255)
