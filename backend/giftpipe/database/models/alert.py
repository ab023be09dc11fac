"""
Operator alert model.

Alerts are written when automated recovery intervenes or when a failure
needs human triage, and stay until an operator resolves them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from giftpipe.database.base import BaseModel


class AlertType(str, Enum):
    STUCK_ORDERS_RECOVERED = "stuck_orders_recovered"
    SUBMISSION_FAILURES = "submission_failures"
    VENDOR_REQUEST_FAILED = "vendor_request_failed"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Alert(BaseModel):
    """Operator-visible record of an automated intervention or failure."""

    __tablename__ = "alerts"

    alert_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AlertSeverity.WARNING.value
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_alerts_unresolved", "resolved_at", "created_at"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
