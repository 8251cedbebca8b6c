"""
Order lifecycle API endpoints.

Customers create and cancel orders and confirm receipt; drivers list
available orders, claim them and report progress with their current
location. Order lifecycle errors are not caught here: the application-level
handler turns them into error responses with a stable ``error`` code.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from src.api.deps import (
    bind_order_context,
    CurrentCustomer,
    CurrentCustomerOrDriver,
    CurrentDriver,
    CurrentPrincipal,
    OrderServiceDep,
)
from src.core.config import get_settings
from src.core.logging import get_logger
from src.core.rate_limit import limiter
from src.core.security import PrincipalRole
from src.schemas.orders import (
    AcceptOrderRequest,
    CancelOrderRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    StatusHistoryResponse,
    StatusTransitionRequest,
)
from src.services.orders.enums import OrderStatus

logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(prefix="/orders", tags=["orders"])

ORDER_SCOPED = [Depends(bind_order_context)]


def _order_list(orders, total: int, skip: int, limit: int) -> OrderListResponse:
    return OrderListResponse(
        orders=[OrderResponse.model_validate(order) for order in orders],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create new order",
)
async def create_order(
    request: OrderCreateRequest,
    customer: CurrentCustomer,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Place a delivery order. It starts ``available`` with no driver.
    """
    order = await service.create_order(
        customer_id=customer.id,
        pickup_location=request.pickup_location.model_dump(exclude_none=True),
        dropoff_location=request.dropoff_location.model_dump(exclude_none=True),
        price=request.price,
        package_details=request.package_details,
        notes=request.notes,
        payment_method=request.payment_method,
        estimated_distance=request.estimated_distance,
        estimated_duration=request.estimated_duration,
    )
    return OrderResponse.model_validate(order)


@router.get(
    "/available",
    response_model=OrderListResponse,
    summary="List orders waiting for a driver",
)
async def list_available_orders(
    driver: CurrentDriver,
    service: OrderServiceDep,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
) -> OrderListResponse:
    orders, total = await service.list_available_orders(skip=skip, limit=limit)
    return _order_list(orders, total, skip, limit)


@router.get(
    "/mine",
    response_model=OrderListResponse,
    summary="List the caller's own orders",
)
async def list_my_orders(
    principal: CurrentCustomerOrDriver,
    service: OrderServiceDep,
    active: bool = Query(True, description="Drivers: in-progress orders, or finished ones"),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
) -> OrderListResponse:
    """
    Drivers get their active or finished deliveries; customers get the
    orders they placed, optionally filtered by status.
    """
    if principal.role == PrincipalRole.DRIVER:
        orders, total = await service.list_driver_orders(
            principal.id, active=active, skip=skip, limit=limit
        )
    else:
        orders, total = await service.list_customer_orders(
            principal.id, status=order_status, skip=skip, limit=limit
        )
    return _order_list(orders, total, skip, limit)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    dependencies=ORDER_SCOPED,
    summary="Get order details",
)
async def get_order(
    order_id: UUID,
    principal: CurrentPrincipal,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.get_order(order_id, principal)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}/history",
    response_model=list[StatusHistoryResponse],
    dependencies=ORDER_SCOPED,
    summary="Get order status history",
)
async def get_order_history(
    order_id: UUID,
    principal: CurrentPrincipal,
    service: OrderServiceDep,
) -> list[StatusHistoryResponse]:
    entries = await service.get_status_history(order_id, principal)
    return [StatusHistoryResponse.model_validate(entry) for entry in entries]


@router.post(
    "/{order_id}/accept",
    response_model=OrderResponse,
    dependencies=ORDER_SCOPED,
    summary="Claim an available order",
)
@limiter.limit(settings.accept_rate_limit)
async def accept_order(
    request: Request,
    order_id: UUID,
    body: AcceptOrderRequest,
    driver: CurrentDriver,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Claim an order. Exactly one of any number of concurrent claims wins;
    the others get ``409 already_taken``.
    """
    logger.info(
        "Claim requested",
        order_id=str(order_id),
        driver_id=str(driver.id),
    )
    order = await service.accept_order(order_id, driver.id, body.driver_location)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    dependencies=ORDER_SCOPED,
    summary="Move an order to its next status",
)
async def update_order_status(
    order_id: UUID,
    body: StatusTransitionRequest,
    driver: CurrentDriver,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.transition_order(
        order_id,
        driver.id,
        body.target_status,
        body.driver_location,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    dependencies=ORDER_SCOPED,
    summary="Cancel an order before delivery starts",
)
async def cancel_order(
    order_id: UUID,
    principal: CurrentPrincipal,
    service: OrderServiceDep,
    body: Optional[CancelOrderRequest] = None,
) -> OrderResponse:
    body = body or CancelOrderRequest()
    order = await service.cancel_order(
        order_id,
        actor_id=principal.id,
        reason=body.reason,
        driver_location=body.driver_location,
        is_admin=principal.is_admin,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/confirm-receipt",
    response_model=OrderResponse,
    dependencies=ORDER_SCOPED,
    summary="Confirm receipt of a delivered order",
)
async def confirm_receipt(
    order_id: UUID,
    customer: CurrentCustomer,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.confirm_receipt(order_id, customer.id)
    return OrderResponse.model_validate(order)
