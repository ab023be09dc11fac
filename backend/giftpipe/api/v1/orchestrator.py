"""
Orchestrator entry point.

Thin HTTP adapter over ``TriggerOrchestrator.handle``: every caller that is
not a webhook or a scheduled task (edge functions, internal services) comes
in through here.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from giftpipe.api.deps import PipelineDep
from giftpipe.core.logging import get_logger
from giftpipe.schemas.orchestrator import (
    TriggerErrorResponse,
    TriggerRequest,
    TriggerResponse,
)
from giftpipe.services.fulfillment.submitter import FulfillmentError, SubmissionError
from giftpipe.services.orders.repository import OrderNotFoundError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orchestrator", tags=["orchestrator"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=TriggerErrorResponse(error=message).model_dump(by_alias=True),
    )


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    responses={
        400: {"model": TriggerErrorResponse},
        404: {"model": TriggerErrorResponse},
        502: {"model": TriggerErrorResponse},
        503: {"model": TriggerErrorResponse},
    },
    summary="Process an order",
    description="Submit an order to the vendor if it still needs submitting",
)
async def trigger_order_processing(
    request: TriggerRequest,
    pipeline: PipelineDep,
):
    """
    Invoke the orchestrator for one order.

    Args:
        request: Order id, trigger source and metadata
        pipeline: Pipeline components for this request

    Returns:
        TriggerResponse, or an error object with ``success: false``
    """
    try:
        result = await pipeline.orchestrator.handle(
            request.order_id, request.trigger_source, request.metadata
        )
    except OrderNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "Order not found")
    except PaymentNotVerified as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    except PaymentVerificationError:
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Payment could not be verified; a retry has been scheduled",
        )
    except SubmissionError as e:
        logger.warning(
            "Order submission failed",
            order_id=str(request.order_id),
            retry_reason=e.reason,
        )
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            "Order could not be submitted; a retry has been scheduled",
        )
    except FulfillmentError as e:
        logger.error(
            "Order processing failed",
            order_id=str(request.order_id),
            error=str(e),
            error_type=type(e).__name__,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Order processing failed")

    return TriggerResponse(
        processed=result["processed"],
        status=result["status"],
        zinc_status=result["zinc_status"],
    )
