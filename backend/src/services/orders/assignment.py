"""Driver assignment: many drivers racing to claim one available order.

A claim is a single conditional update of the order from
``status = available AND driver_id IS NULL`` to ``picked_up`` with the
claiming driver. The database applies it to at most one caller; everyone
else sees zero affected rows. There is no lock, queue or in-memory pool of
drivers, so any number of stateless service instances can take claims for
the same order at once.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.order import Order
from src.services.orders.enums import OrderStatus
from src.services.orders.events import NotificationDispatcher, OrderEvent, emit_order_event
from src.services.orders.location import LocationInput, require_location
from src.services.orders.repository import OrderRepository, utcnow

logger = get_logger(__name__)


class AcceptStatus(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_TAKEN = "already_taken"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class AcceptOutcome:
    """
    Result of a claim attempt.

    ``order`` is the claimed order on success, the advisory re-read of the
    order when it was already taken, and ``None`` when it does not exist.
    """

    status: AcceptStatus
    order: Optional[Order] = None

    @property
    def accepted(self) -> bool:
        return self.status == AcceptStatus.ACCEPTED


class AssignmentService:
    """
    Resolves the ``available -> picked_up`` edge.
    """

    def __init__(
        self,
        session: AsyncSession,
        repository: Optional[OrderRepository] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.session = session
        self.repository = repository or OrderRepository(session)
        self.dispatcher = dispatcher

    async def accept(
        self,
        order_id: uuid.UUID,
        driver_id: uuid.UUID,
        driver_location: LocationInput,
    ) -> AcceptOutcome:
        """
        Claim an available order for ``driver_id``.

        Args:
            order_id: Order to claim
            driver_id: Authenticated driver making the claim
            driver_location: Driver's current coordinates

        Returns:
            AcceptOutcome; ``ALREADY_TAKEN`` and ``NOT_FOUND`` are ordinary
            outcomes, not errors

        Raises:
            LocationRequiredError: If no usable location was supplied
        """
        location = require_location(
            driver_location,
            order_id=str(order_id),
            driver_id=str(driver_id),
        )

        now = utcnow()
        result = await self.repository.conditional_update(
            order_id,
            expected={"status": OrderStatus.AVAILABLE, "driver_id": None},
            values={
                "status": OrderStatus.PICKED_UP,
                "driver_id": driver_id,
                "driver_location": location.to_json(),
                "actual_pickup_time": now,
                "updated_at": now,
            },
        )

        if result.matched:
            order = result.order
            await self.repository.add_status_history(
                order_id=order_id,
                from_status=OrderStatus.AVAILABLE,
                to_status=OrderStatus.PICKED_UP,
                actor_id=driver_id,
                driver_location=location.to_json(),
            )
            await self.session.commit()

            logger.info(
                "Order claimed",
                order_id=str(order_id),
                driver_id=str(driver_id),
            )

            await emit_order_event(
                self.dispatcher,
                OrderEvent(
                    order_id=order_id,
                    previous_status=OrderStatus.AVAILABLE,
                    new_status=OrderStatus.PICKED_UP,
                    driver_id=driver_id,
                    customer_id=order.customer_id,
                ),
            )
            return AcceptOutcome(status=AcceptStatus.ACCEPTED, order=order)

        # Lost or missing. End the failed write's transaction, then read only
        # to tell the caller which; the outcome was already decided above.
        await self.session.rollback()
        current = await self.repository.get_order_by_id(order_id)

        if current is None:
            logger.warning(
                "Claim for unknown order",
                order_id=str(order_id),
                driver_id=str(driver_id),
            )
            return AcceptOutcome(status=AcceptStatus.NOT_FOUND)

        logger.info(
            "Order already taken",
            order_id=str(order_id),
            driver_id=str(driver_id),
            current_status=current.status.value,
        )
        return AcceptOutcome(status=AcceptStatus.ALREADY_TAKEN, order=current)
