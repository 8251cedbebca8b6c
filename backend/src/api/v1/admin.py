"""
Admin back office endpoints: payment status and commission configuration.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from src.api.deps import CurrentAdmin, OrderServiceDep, bind_order_context
from src.core.logging import get_logger
from src.schemas.orders import (
    CommissionRateRequest,
    CommissionRateResponse,
    OrderResponse,
    PaymentStatusUpdateRequest,
    TransactionResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.patch(
    "/orders/{order_id}/payment-status",
    response_model=OrderResponse,
    dependencies=[Depends(bind_order_context)],
    summary="Update order payment status",
)
async def update_payment_status(
    order_id: UUID,
    body: PaymentStatusUpdateRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Payment status is the only field that may change on a completed or
    cancelled order.
    """
    order = await service.update_payment_status(order_id, body.payment_status)
    return OrderResponse.model_validate(order)


@router.get(
    "/orders/{order_id}/transactions",
    response_model=list[TransactionResponse],
    dependencies=[Depends(bind_order_context)],
    summary="Ledger entries written when the order completed",
)
async def list_order_transactions(
    order_id: UUID,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> list[TransactionResponse]:
    await service.get_order(order_id, admin)
    entries = await service.get_transactions(order_id)
    return [TransactionResponse.model_validate(entry) for entry in entries]


@router.get(
    "/settings/commission-rate",
    response_model=CommissionRateResponse,
    summary="Get the current commission rate",
)
async def get_commission_rate(
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> CommissionRateResponse:
    rate = await service.get_commission_rate()
    return CommissionRateResponse(commission_rate=rate)


@router.put(
    "/settings/commission-rate",
    response_model=CommissionRateResponse,
    summary="Set the commission rate for future completions",
)
async def set_commission_rate(
    body: CommissionRateRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> CommissionRateResponse:
    rate = await service.set_commission_rate(body.commission_rate)
    logger.info(
        "Commission rate changed by admin",
        admin_id=str(admin.id),
        commission_rate=str(rate),
    )
    return CommissionRateResponse(commission_rate=rate)
