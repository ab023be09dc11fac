"""
Auto-gift repository: executions and their approval tokens.

Approval and rejection are recorded with conditional updates on the token
(still unused, not expired), so a token can be spent exactly once even when
the email link and the dashboard are clicked at the same time.
"""

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftpipe.core.logging import get_logger
from giftpipe.database.models.auto_gift import (
    ApprovalToken,
    AutoGiftExecution,
    AutoGiftExecutionStatus,
)

logger = get_logger(__name__)


class AutoGiftRepositoryError(Exception):
    """Raised when auto-gift data cannot be read or written."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class AutoGiftRepository:
    """Data access for auto-gift executions and approval tokens."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_execution(
        self,
        token: str,
        token_expires_at: datetime,
        **fields: Any,
    ) -> AutoGiftExecution:
        """
        Create an execution together with its approval token.

        Args:
            token: URL-safe approval token
            token_expires_at: When the token stops being accepted
            **fields: AutoGiftExecution column values

        Returns:
            Created execution with ``approval_token`` loaded
        """
        execution = AutoGiftExecution(**fields)
        execution.approval_token = ApprovalToken(
            token=token, expires_at=token_expires_at
        )
        try:
            self.session.add(execution)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to create auto-gift execution", error=str(e))
            raise AutoGiftRepositoryError(
                "Failed to create auto-gift execution", error=str(e)
            ) from e

        logger.info(
            "Auto-gift execution created",
            execution_id=str(execution.id),
            rule_id=str(execution.rule_id),
            status=execution.status.value,
        )
        return execution

    async def get_execution(
        self, execution_id: uuid.UUID
    ) -> Optional[AutoGiftExecution]:
        stmt = (
            select(AutoGiftExecution)
            .where(AutoGiftExecution.id == execution_id)
            .execution_options(populate_existing=True)
        )
        return await self._fetch_one(stmt, "get_execution")

    async def get_token(self, token: str) -> Optional[ApprovalToken]:
        stmt = (
            select(ApprovalToken)
            .where(ApprovalToken.token == token)
            .options(selectinload(ApprovalToken.execution))
            .execution_options(populate_existing=True)
        )
        return await self._fetch_one(stmt, "get_token")

    async def record_approval(
        self, token_id: uuid.UUID, via: str, now: datetime
    ) -> bool:
        """Spend an unused, unexpired token on an approval."""
        stmt = (
            update(ApprovalToken)
            .where(
                ApprovalToken.id == token_id,
                ApprovalToken.approved_at.is_(None),
                ApprovalToken.rejected_at.is_(None),
                ApprovalToken.expires_at > now,
            )
            .values(approved_at=now, approved_via=via, updated_at=func.now())
            .returning(ApprovalToken.id)
        )
        return await self._execute_flag(stmt, "record_approval")

    async def record_rejection(
        self, token_id: uuid.UUID, reason: Optional[str], now: datetime
    ) -> bool:
        """Spend an unused, unexpired token on a rejection."""
        stmt = (
            update(ApprovalToken)
            .where(
                ApprovalToken.id == token_id,
                ApprovalToken.approved_at.is_(None),
                ApprovalToken.rejected_at.is_(None),
                ApprovalToken.expires_at > now,
            )
            .values(rejected_at=now, rejection_reason=reason, updated_at=func.now())
            .returning(ApprovalToken.id)
        )
        return await self._execute_flag(stmt, "record_rejection")

    async def update_status(
        self,
        execution_id: uuid.UUID,
        status: AutoGiftExecutionStatus,
        from_statuses: Iterable[AutoGiftExecutionStatus],
        **fields: Any,
    ) -> Optional[AutoGiftExecution]:
        """
        Move an execution to ``status`` if it is currently in ``from_statuses``.

        Returns:
            Updated execution, or None if it was not in an allowed status
        """
        stmt = (
            update(AutoGiftExecution)
            .where(
                AutoGiftExecution.id == execution_id,
                AutoGiftExecution.status.in_(list(from_statuses)),
            )
            .values(status=status, updated_at=func.now(), **fields)
            .returning(AutoGiftExecution)
            .execution_options(populate_existing=True, synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            execution = result.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to update auto-gift execution",
                execution_id=str(execution_id),
                error=str(e),
            )
            raise AutoGiftRepositoryError(
                "Failed to update auto-gift execution",
                execution_id=str(execution_id),
                error=str(e),
            ) from e

        if execution is not None:
            logger.info(
                "Auto-gift execution status updated",
                execution_id=str(execution_id),
                status=status.value,
            )
        return execution

    async def find_expired_awaiting(self, now: datetime) -> list[AutoGiftExecution]:
        """Executions still awaiting approval whose token has expired."""
        stmt = (
            select(AutoGiftExecution)
            .join(ApprovalToken, ApprovalToken.execution_id == AutoGiftExecution.id)
            .where(
                AutoGiftExecution.status == AutoGiftExecutionStatus.AWAITING_APPROVAL,
                ApprovalToken.expires_at <= now,
            )
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to find expired executions", error=str(e))
            raise AutoGiftRepositoryError(
                "Failed to find expired executions", error=str(e)
            ) from e

    async def find_approved_without_order(
        self, approved_before: datetime, limit: int
    ) -> list[AutoGiftExecution]:
        """Approved executions whose order was never created, oldest first."""
        stmt = (
            select(AutoGiftExecution)
            .where(
                AutoGiftExecution.status == AutoGiftExecutionStatus.APPROVED,
                AutoGiftExecution.order_id.is_(None),
                AutoGiftExecution.updated_at < approved_before,
            )
            .order_by(AutoGiftExecution.updated_at.asc())
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to find stalled approvals", error=str(e))
            raise AutoGiftRepositoryError(
                "Failed to find stalled approvals", error=str(e)
            ) from e

    async def _fetch_one(self, stmt: Any, operation: str) -> Any:
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Auto-gift query failed", operation=operation, error=str(e))
            raise AutoGiftRepositoryError(
                "Auto-gift query failed", operation=operation, error=str(e)
            ) from e

    async def _execute_flag(self, stmt: Any, operation: str) -> bool:
        try:
            result = await self.session.execute(stmt)
            won = result.scalar_one_or_none() is not None
            await self.session.commit()
            return won
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Auto-gift write failed", operation=operation, error=str(e))
            raise AutoGiftRepositoryError(
                "Auto-gift write failed", operation=operation, error=str(e)
            ) from e
