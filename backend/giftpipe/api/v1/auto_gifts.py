"""
Auto-gift endpoints: selection intake and the one-time approval links.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status

from giftpipe.api.deps import AdminKey, PipelineDep
from giftpipe.core.logging import get_logger
from giftpipe.database.models.auto_gift import AutoGiftExecution, AutoGiftExecutionStatus
from giftpipe.schemas.auto_gifts import (
    ApprovalRequest,
    ExecutionResponse,
    RejectionRequest,
    SelectionRequest,
)
from giftpipe.services.auto_gifts.service import (
    ApprovalTokenExpired,
    ApprovalTokenInvalid,
    AutoGiftError,
    BudgetExceeded,
    InvalidExecutionState,
)
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
)
from giftpipe.services.pipeline import Pipeline

logger = get_logger(__name__)

router = APIRouter(prefix="/auto-gifts", tags=["auto-gifts"])


def _response(
    execution: AutoGiftExecution, order: Optional[dict[str, Any]] = None
) -> ExecutionResponse:
    response = ExecutionResponse.model_validate(execution)
    response.order = order
    return response


async def _create_order(pipeline: Pipeline, execution: AutoGiftExecution) -> ExecutionResponse:
    try:
        created = await pipeline.auto_gifts.create_order(execution.id)
    except (
        AutoGiftError,
        FulfillmentError,
        PaymentNotVerified,
        PaymentVerificationError,
    ) as e:
        logger.error(
            "Auto-gift order creation failed",
            execution_id=str(execution.id),
            error=str(e),
            error_type=type(e).__name__,
        )
        current = await pipeline.auto_gifts.repository.get_execution(execution.id)
        return _response(current or execution)

    order = created["order"]
    return _response(
        created["execution"],
        {
            "id": str(order.id),
            "order_number": order.order_number,
            "status": order.status.value,
        },
    )


@router.post(
    "/executions",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record an autonomous selection",
)
async def record_selection(
    request: SelectionRequest,
    pipeline: PipelineDep,
    _: AdminKey,
) -> ExecutionResponse:
    """
    Record a selection; auto-approved selections get their order at once.

    Raises:
        HTTPException: 422 if the selection exceeds the rule budget
    """
    try:
        execution = await pipeline.auto_gifts.record_selection(
            rule_id=request.rule_id,
            user_id=request.user_id,
            recipient_id=request.recipient_id,
            products=[product.model_dump(mode="json") for product in request.products],
            confidence=request.confidence,
            discovery_method=request.discovery_method,
            shipping_address=request.shipping_address,
            auto_approve_enabled=request.auto_approve_enabled,
            budget_limit=request.budget_limit,
            stripe_customer_id=request.stripe_customer_id,
            payment_method_id=request.payment_method_id,
            currency=request.currency,
        )
    except BudgetExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), **e.context},
        ) from e

    if execution.status == AutoGiftExecutionStatus.APPROVED:
        return await _create_order(pipeline, execution)
    return _response(execution)


@router.post(
    "/approvals/{token}/approve",
    response_model=ExecutionResponse,
    summary="Approve an auto-gift",
)
async def approve_auto_gift(
    token: str,
    pipeline: PipelineDep,
    request: Optional[ApprovalRequest] = None,
) -> ExecutionResponse:
    """
    Spend an approval token and create the order.

    Raises:
        HTTPException: 404 for an unknown or used token, 410 when expired,
            409 when the execution is no longer awaiting approval
    """
    via = request.via if request else ApprovalRequest().via
    try:
        execution = await pipeline.auto_gifts.approve(token, via=via)
    except ApprovalTokenExpired as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e)) from e
    except ApprovalTokenInvalid as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidExecutionState as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return await _create_order(pipeline, execution)


@router.post(
    "/approvals/{token}/reject",
    response_model=ExecutionResponse,
    summary="Reject an auto-gift",
)
async def reject_auto_gift(
    token: str,
    pipeline: PipelineDep,
    request: Optional[RejectionRequest] = None,
) -> ExecutionResponse:
    try:
        execution = await pipeline.auto_gifts.reject(
            token, reason=request.reason if request else None
        )
    except ApprovalTokenExpired as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e)) from e
    except ApprovalTokenInvalid as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidExecutionState as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return _response(execution)
