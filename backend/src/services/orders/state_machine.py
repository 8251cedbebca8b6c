"""Order status transition engine.

This module implements ``StatusTransitionEngine``, the one place where
post-assignment status changes are validated and applied. Each request is
checked in a fixed order (order exists, location supplied, caller owns the
order, target is the next status) and then written with a conditional update
keyed on the status and driver that were checked. If another request changed
the order in between, the write matches nothing and the caller gets
``StaleStateError`` instead of overwriting the newer state.

Completion also snapshots the commission rate and writes the payout split in
the same conditional update, so a completed order always carries its split.
"""

import uuid
from typing import Any, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.order import Order
from src.services.orders.commission import (
    CommissionRateProvider,
    DatabaseCommissionRateProvider,
    compute_split,
)
from src.services.orders.enums import (
    OrderStatus,
    get_engine_predecessor,
    get_successor,
    progress_rank,
)
from src.services.orders.events import NotificationDispatcher, OrderEvent, emit_order_event
from src.services.orders.exceptions import (
    IllegalTransitionError,
    OrderNotFoundError,
    StaleStateError,
    UnauthorizedActorError,
)
from src.services.orders.location import LocationInput, coerce_location, require_location
from src.services.orders.repository import OrderRepository, utcnow

logger = get_logger(__name__)


def _parse_target(target_status: Union[OrderStatus, str], order_id: uuid.UUID) -> OrderStatus:
    if isinstance(target_status, OrderStatus):
        return target_status
    try:
        return OrderStatus.from_string(target_status)
    except (ValueError, AttributeError) as e:
        raise IllegalTransitionError(
            f"Unknown target status: {target_status!r}",
            order_id=str(order_id),
            target_status=str(target_status),
        ) from e


def _is_cancellation(target_status: Union[OrderStatus, str]) -> bool:
    if isinstance(target_status, OrderStatus):
        return target_status == OrderStatus.CANCELLED
    return isinstance(target_status, str) and target_status.lower() == OrderStatus.CANCELLED.value


def check_successor(order_id: uuid.UUID, current: OrderStatus, target: OrderStatus) -> None:
    """
    Validate that ``target`` is the next status after ``current``.

    A target the order has already reached or passed (a replayed request)
    is stale; anything else that is not the next step is illegal.

    Raises:
        IllegalTransitionError: Target skips ahead or is never entered by
            this engine
        StaleStateError: Order is already at or beyond the target, or finished
    """
    expected_prior = get_engine_predecessor(target)

    if expected_prior is None:
        raise IllegalTransitionError(
            f"Orders cannot be moved to {target.value} by a status update",
            order_id=str(order_id),
            current_status=current.value,
            target_status=target.value,
        )

    if current == expected_prior:
        return

    if current.is_terminal() or progress_rank(current) > progress_rank(expected_prior):
        raise StaleStateError(
            f"Order is already {current.value}",
            order_id=str(order_id),
            current_status=current.value,
            target_status=target.value,
        )

    next_status = get_successor(current)
    raise IllegalTransitionError(
        f"Invalid transition from {current.value} to {target.value}",
        order_id=str(order_id),
        current_status=current.value,
        target_status=target.value,
        allowed_transition=next_status.value if next_status else None,
    )


class StatusTransitionEngine:
    """
    Validates and applies forward and cancellation transitions.

    Attributes:
        session: Unit of work; committed by the engine on success
        repository: Order store
        commission_rates: Source of the rate snapshotted at completion
        dispatcher: Receives an event after each committed transition
    """

    def __init__(
        self,
        session: AsyncSession,
        repository: Optional[OrderRepository] = None,
        commission_rates: Optional[CommissionRateProvider] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.session = session
        self.repository = repository or OrderRepository(session)
        self.commission_rates = commission_rates or DatabaseCommissionRateProvider(session)
        self.dispatcher = dispatcher

    async def _load(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def transition(
        self,
        order_id: uuid.UUID,
        acting_driver_id: uuid.UUID,
        target_status: Union[OrderStatus, str],
        driver_location: LocationInput = None,
    ) -> Order:
        """
        Move an assigned order one step forward, or cancel it.

        Args:
            order_id: Order to move
            acting_driver_id: Authenticated principal making the request
            target_status: Requested next status
            driver_location: Driver coordinates; optional only for ``cancelled``

        Returns:
            The order as stored after the transition

        Raises:
            OrderNotFoundError: Order does not exist
            LocationRequiredError: No location for a forward transition
            UnauthorizedActorError: Caller is not the assigned driver
            IllegalTransitionError: Target is not the next status
            StaleStateError: Order already moved on
        """
        if _is_cancellation(target_status):
            return await self.cancel(
                order_id,
                actor_id=acting_driver_id,
                driver_location=driver_location,
            )

        requested = (
            target_status.value
            if isinstance(target_status, OrderStatus)
            else str(target_status)
        )
        order = await self._load(order_id)
        location = require_location(
            driver_location,
            order_id=str(order_id),
            target_status=requested,
        )

        if order.driver_id is None or order.driver_id != acting_driver_id:
            logger.warning(
                "Transition refused - not the assigned driver",
                order_id=str(order_id),
                acting_driver_id=str(acting_driver_id),
                target_status=requested,
            )
            raise UnauthorizedActorError(
                "Only the assigned driver can update this order",
                order_id=str(order_id),
                acting_driver_id=str(acting_driver_id),
            )

        current = order.status
        customer_id = order.customer_id
        price = order.price
        target = _parse_target(target_status, order_id)
        check_successor(order_id, current, target)

        now = utcnow()
        values: dict[str, Any] = {
            "status": target,
            "driver_location": location.to_json(),
            "updated_at": now,
        }

        split = None
        if target == OrderStatus.COMPLETED:
            rate = await self.commission_rates.get_current_rate()
            split = compute_split(price, rate)
            values.update(
                actual_delivery_time=now,
                commission_rate=split.commission_rate,
                platform_commission=split.platform_commission,
                driver_payout=split.driver_payout,
            )

        result = await self.repository.conditional_update(
            order_id,
            expected={"status": current, "driver_id": acting_driver_id},
            values=values,
        )

        if not result.matched:
            await self.session.rollback()
            logger.info(
                "Transition lost to a concurrent update",
                order_id=str(order_id),
                expected_status=current.value,
                target_status=target.value,
            )
            raise StaleStateError(
                "Order changed while the request was processed; refresh and retry",
                order_id=str(order_id),
                expected_status=current.value,
                target_status=target.value,
            )

        await self.repository.add_status_history(
            order_id=order_id,
            from_status=current,
            to_status=target,
            actor_id=acting_driver_id,
            driver_location=location.to_json(),
        )
        if split is not None:
            await self.repository.add_completion_transactions(
                order_id=order_id,
                driver_id=acting_driver_id,
                split=split,
            )
        await self.session.commit()

        logger.info(
            "Order status updated",
            order_id=str(order_id),
            transition=f"{current.value}->{target.value}",
            driver_id=str(acting_driver_id),
            driver_payout=str(split.driver_payout) if split else None,
            platform_commission=str(split.platform_commission) if split else None,
        )

        await emit_order_event(
            self.dispatcher,
            OrderEvent(
                order_id=order_id,
                previous_status=current,
                new_status=target,
                driver_id=acting_driver_id,
                customer_id=customer_id,
            ),
        )
        return result.order

    async def cancel(
        self,
        order_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: Optional[str] = None,
        driver_location: LocationInput = None,
        is_admin: bool = False,
    ) -> Order:
        """
        Cancel an order that is still ``available`` or ``picked_up``.

        The owning customer, the assigned driver, or an admin may cancel. No
        location is required; one supplied by a driver is recorded.

        Raises:
            OrderNotFoundError: Order does not exist
            UnauthorizedActorError: Caller is neither customer, driver nor admin
            IllegalTransitionError: Delivery is already underway or completed
            StaleStateError: Order is already cancelled or changed concurrently
        """
        order = await self._load(order_id)
        location = coerce_location(driver_location)

        is_customer = actor_id == order.customer_id
        is_driver = order.driver_id is not None and actor_id == order.driver_id
        if not (is_admin or is_customer or is_driver):
            logger.warning(
                "Cancellation refused - not a party to the order",
                order_id=str(order_id),
                actor_id=str(actor_id),
            )
            raise UnauthorizedActorError(
                "Only the customer, the assigned driver or an admin can cancel this order",
                order_id=str(order_id),
                actor_id=str(actor_id),
            )

        current = order.status
        driver_id = order.driver_id
        customer_id = order.customer_id

        if current == OrderStatus.CANCELLED:
            raise StaleStateError(
                "Order is already cancelled",
                order_id=str(order_id),
                current_status=current.value,
            )
        if not current.can_cancel():
            raise IllegalTransitionError(
                f"Orders that are {current.value} can no longer be cancelled",
                order_id=str(order_id),
                current_status=current.value,
                target_status=OrderStatus.CANCELLED.value,
            )

        now = utcnow()
        values: dict[str, Any] = {
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "cancelled_by": actor_id,
            "cancellation_reason": reason,
            "updated_at": now,
        }
        if location is not None:
            values["driver_location"] = location.to_json()

        result = await self.repository.conditional_update(
            order_id,
            expected={"status": current, "driver_id": driver_id},
            values=values,
        )

        if not result.matched:
            await self.session.rollback()
            raise StaleStateError(
                "Order changed while the request was processed; refresh and retry",
                order_id=str(order_id),
                expected_status=current.value,
            )

        await self.repository.add_status_history(
            order_id=order_id,
            from_status=current,
            to_status=OrderStatus.CANCELLED,
            actor_id=actor_id,
            driver_location=location.to_json() if location else None,
            reason=reason,
        )
        await self.session.commit()

        logger.info(
            "Order cancelled",
            order_id=str(order_id),
            previous_status=current.value,
            actor_id=str(actor_id),
            by_admin=is_admin and not (is_customer or is_driver),
        )

        await emit_order_event(
            self.dispatcher,
            OrderEvent(
                order_id=order_id,
                previous_status=current,
                new_status=OrderStatus.CANCELLED,
                driver_id=driver_id,
                customer_id=customer_id,
            ),
        )
        return result.order
