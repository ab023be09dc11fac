"""
Schemas for the orchestrator entry point and the client-poll status view.

Field names are camelCase on the wire (``orderId``, ``triggerSource``,
``zincStatus``) and snake_case in Python.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from giftpipe.services.orchestration.trigger import TriggerSource


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TriggerRequest(CamelModel):
    """Request schema for invoking the orchestrator."""

    order_id: UUID = Field(..., description="Order to process")
    trigger_source: TriggerSource = Field(
        ...,
        description="stripe-webhook, client-poll, cron or manual-recovery",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form invocation context stored with the signal",
    )

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, v: dict[str, Any]) -> dict[str, Any]:
        if len(v) > 50:
            raise ValueError("Metadata cannot exceed 50 keys")
        return v


class TriggerResponse(CamelModel):
    """Orchestrator outcome."""

    success: bool = True
    processed: bool
    status: str
    zinc_status: Optional[str] = None


class TriggerErrorResponse(CamelModel):
    success: bool = False
    error: str


class OrderStatusResponse(CamelModel):
    """Customer-facing order status; never carries vendor or payment error text."""

    order_id: UUID
    order_number: str
    status: str
    payment_status: str
    zinc_status: Optional[str] = None
    tracking_number: Optional[str] = None
    scheduled_delivery_date: Optional[date] = None
    updated_at: Optional[datetime] = None
