"""
Operator endpoints: manual recovery, scheduled-date override and alerts.

All routes require the ``X-Admin-Key`` header. Responses carry full error
detail for triage.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from giftpipe.api.deps import AdminKey, PipelineDep
from giftpipe.core.logging import get_logger
from giftpipe.database.models.alert import AlertType
from giftpipe.schemas.admin import (
    AlertResolveRequest,
    AlertResponse,
    OrderDetail,
    RecoveryRequest,
    RecoveryResponse,
    ScheduledDateUpdate,
)
from giftpipe.services.orders.repository import OrderNotFoundError
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.payments.verifier import PaymentNotVerified
from giftpipe.services.recovery.service import RecoveryError

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _trigger_summary(result: Optional[dict]) -> Optional[dict]:
    if result is None:
        return None
    return {key: value for key, value in result.items() if key != "order"}


@router.get(
    "/orders/{order_id}",
    response_model=OrderDetail,
    summary="Get order detail",
)
async def get_order_detail(
    order_id: UUID, pipeline: PipelineDep, _: AdminKey
) -> OrderDetail:
    order = await pipeline.orders.get_order_by_id(order_id)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Order not found"
        )
    return OrderDetail.model_validate(order)


@router.post(
    "/orders/{order_id}/recover",
    response_model=RecoveryResponse,
    summary="Recover a stuck order",
    description="Re-verify payment with the processor and re-drive fulfillment",
)
async def recover_order(
    order_id: UUID,
    pipeline: PipelineDep,
    _: AdminKey,
    request: Optional[RecoveryRequest] = None,
) -> RecoveryResponse:
    """
    Run manual recovery for one order.

    Returns 200 with a ``warning`` when payment was repaired but the
    fulfillment re-trigger failed.

    Raises:
        HTTPException: 400 if payment is not verified, 404 if the order does
            not exist, 500 for anything unexpected
    """
    operator = request.operator if request else "operator"
    try:
        result = await pipeline.recovery.recover(order_id, operator=operator)
    except OrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Order not found"
        ) from e
    except PaymentNotVerified as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": str(e),
                "payment_status": e.payment_status,
                "suggestion": e.suggestion,
            },
        ) from e
    except RecoveryError as e:
        logger.error("Manual recovery failed", order_id=str(order_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(e), "suggestion": e.context.get("suggestion")},
        ) from e

    return RecoveryResponse(
        order=OrderDetail.model_validate(result["order"]),
        trigger_result=_trigger_summary(result["trigger_result"]),
        warning=result["warning"],
    )


@router.patch(
    "/orders/{order_id}/scheduled-date",
    response_model=OrderDetail,
    summary="Change scheduled delivery date",
)
async def update_scheduled_date(
    order_id: UUID,
    request: ScheduledDateUpdate,
    pipeline: PipelineDep,
    _: AdminKey,
) -> OrderDetail:
    """
    Replace an order's requested delivery date.

    Raises:
        HTTPException: 404 if the order does not exist, 409 if it was
            already submitted or is finished
    """
    try:
        order = await pipeline.releaser.update_order_date(
            order_id, request.scheduled_delivery_date
        )
    except OrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Order not found"
        ) from e
    except StateTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(e),
                "status": e.current_state.value,
                "zinc_order_id": e.context.get("zinc_order_id"),
            },
        ) from e
    return OrderDetail.model_validate(order)


@router.get(
    "/alerts",
    response_model=list[AlertResponse],
    summary="List alerts",
)
async def list_alerts(
    pipeline: PipelineDep,
    _: AdminKey,
    unresolved: bool = Query(True, description="Only unresolved alerts"),
    alert_type: Optional[AlertType] = Query(None, description="Filter by type"),
    limit: int = Query(100, ge=1, le=500),
) -> list[AlertResponse]:
    alerts = await pipeline.alerts.list_alerts(
        include_resolved=not unresolved, alert_type=alert_type, limit=limit
    )
    return [AlertResponse.model_validate(alert) for alert in alerts]


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=AlertResponse,
    summary="Resolve an alert",
)
async def resolve_alert(
    alert_id: UUID,
    request: AlertResolveRequest,
    pipeline: PipelineDep,
    _: AdminKey,
) -> AlertResponse:
    alert = await pipeline.alerts.resolve_alert(alert_id, request.resolved_by)
    if alert is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found"
        )
    return AlertResponse.model_validate(alert)
