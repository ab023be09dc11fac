"""
Processing signal model: one row per orchestration invocation.

Signals are append-only audit records. They explain which trigger source
drove an order and when; they are never consulted to decide state.
"""

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from giftpipe.database.base import Base, CreatedAtMixin, UUIDMixin


class ProcessingSignal(Base, UUIDMixin, CreatedAtMixin):
    """Audit record of a single trigger orchestrator invocation."""

    __tablename__ = "order_processing_signals"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    trigger_source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Trigger source tag that fired the invocation",
    )

    # "metadata" is reserved on declarative classes
    signal_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        Index("ix_processing_signals_order_created", "order_id", "created_at"),
    )
