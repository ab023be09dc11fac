"""
Alert repository for operator-facing alerts.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftpipe.core.logging import get_logger
from giftpipe.database.models.alert import Alert, AlertSeverity, AlertType

logger = get_logger(__name__)


class AlertRepositoryError(Exception):
    """Raised when an alert cannot be read or written."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class AlertRepository:
    """Data access for operator alerts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_alert(
        self,
        alert_type: AlertType,
        message: str,
        severity: AlertSeverity = AlertSeverity.WARNING,
        details: Optional[dict[str, Any]] = None,
    ) -> Alert:
        """
        Record a new unresolved alert.

        Args:
            alert_type: Alert category
            message: Human-readable summary
            severity: Alert severity
            details: Structured detail (order ids, error codes)

        Returns:
            Created alert

        Raises:
            AlertRepositoryError: If the insert fails
        """
        alert = Alert(
            alert_type=alert_type.value,
            severity=severity.value,
            message=message,
            details=details or {},
        )
        try:
            self.session.add(alert)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to create alert",
                alert_type=alert_type.value,
                error=str(e),
            )
            raise AlertRepositoryError(
                "Failed to create alert",
                alert_type=alert_type.value,
                error=str(e),
            ) from e

        logger.warning(
            "Alert raised",
            alert_id=str(alert.id),
            alert_type=alert_type.value,
            severity=severity.value,
            alert_message=message,
        )
        return alert

    async def list_alerts(
        self,
        include_resolved: bool = False,
        alert_type: Optional[AlertType] = None,
        limit: int = 100,
    ) -> list[Alert]:
        """List alerts, newest first."""
        stmt = select(Alert).order_by(Alert.created_at.desc()).limit(limit)
        if not include_resolved:
            stmt = stmt.where(Alert.resolved_at.is_(None))
        if alert_type is not None:
            stmt = stmt.where(Alert.alert_type == alert_type.value)

        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list alerts", error=str(e))
            raise AlertRepositoryError("Failed to list alerts", error=str(e)) from e

    async def resolve_alert(
        self, alert_id: uuid.UUID, resolved_by: str
    ) -> Optional[Alert]:
        """
        Mark an alert resolved.

        Returns:
            The alert, or None if it does not exist. Resolving an already
            resolved alert leaves the original resolution in place.
        """
        try:
            alert = await self.session.get(Alert, alert_id)
            if alert is None:
                return None
            if alert.resolved_at is None:
                alert.resolved_at = datetime.now(timezone.utc)
                alert.resolved_by = resolved_by
                await self.session.commit()
                logger.info(
                    "Alert resolved",
                    alert_id=str(alert_id),
                    resolved_by=resolved_by,
                )
            return alert
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to resolve alert", alert_id=str(alert_id), error=str(e)
            )
            raise AlertRepositoryError(
                "Failed to resolve alert", alert_id=str(alert_id), error=str(e)
            ) from e
