"""
Signal log: best-effort audit of orchestration invocations.

Writing a signal is a side effect of calling the orchestrator, never a step
the idempotency decision depends on. Failures are logged and swallowed.
"""

import uuid
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftpipe.core.logging import get_logger
from giftpipe.database.models.signal import ProcessingSignal

logger = get_logger(__name__)


class SignalLogWriteFailure(Exception):
    """Raised when a processing signal could not be persisted."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class SignalLog:
    """Append-only log of orchestration invocations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        order_id: uuid.UUID,
        trigger_source: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProcessingSignal:
        """
        Persist one processing signal.

        Args:
            order_id: Order the invocation was for
            trigger_source: Trigger source tag
            metadata: Arbitrary invocation metadata

        Returns:
            The stored signal

        Raises:
            SignalLogWriteFailure: If the insert fails
        """
        signal = ProcessingSignal(
            order_id=order_id,
            trigger_source=trigger_source,
            signal_metadata=metadata or {},
        )
        try:
            self.session.add(signal)
            await self.session.commit()
            return signal
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise SignalLogWriteFailure(
                "Failed to record processing signal",
                order_id=str(order_id),
                trigger_source=trigger_source,
                error=str(e),
            ) from e

    async def record(
        self,
        order_id: uuid.UUID,
        trigger_source: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[ProcessingSignal]:
        """Append a signal, logging instead of raising on failure."""
        try:
            return await self.append(order_id, trigger_source, metadata)
        except SignalLogWriteFailure as e:
            logger.warning("Processing signal not recorded", **e.context)
            return None
