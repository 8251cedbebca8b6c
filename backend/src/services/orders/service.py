"""
Order service: the entry point the API layer talks to.

This module implements ``OrderService``, which creates and reads orders and
delegates every status change to the component that owns it: claims to
``AssignmentService``, forward moves and cancellations to
``StatusTransitionEngine``. Payment status and commission configuration are
the only things it writes itself.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.core.security import Principal, PrincipalRole
from src.database.models.order import FinancialTransaction, Order, OrderStatusHistory
from src.services.orders.assignment import AcceptStatus, AssignmentService
from src.services.orders.commission import DatabaseCommissionRateProvider, Number
from src.services.orders.enums import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    OrderStatus,
    PaymentStatus,
)
from src.services.orders.events import NotificationDispatcher
from src.services.orders.exceptions import (
    AlreadyTakenError,
    IllegalTransitionError,
    OrderNotFoundError,
    OrderValidationError,
    StaleStateError,
    UnauthorizedActorError,
)
from src.services.orders.location import LocationInput
from src.services.orders.repository import OrderRepository
from src.services.orders.state_machine import StatusTransitionEngine

logger = get_logger(__name__)


class OrderService:
    """
    Order operations for customers, drivers and the admin back office.

    Attributes:
        session: Async database session shared by all collaborators
        repository: Order repository for data access
        assignment: Resolves driver claims
        engine: Applies forward transitions and cancellations
        commission_rates: Admin-configurable commission rate
    """

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        """
        Initialize order service.

        Args:
            session: Async database session
            dispatcher: Receives order events after each committed change
        """
        self.session = session
        self.repository = OrderRepository(session)
        self.commission_rates = DatabaseCommissionRateProvider(session)
        self.assignment = AssignmentService(
            session, repository=self.repository, dispatcher=dispatcher
        )
        self.engine = StatusTransitionEngine(
            session,
            repository=self.repository,
            commission_rates=self.commission_rates,
            dispatcher=dispatcher,
        )

    async def create_order(
        self,
        customer_id: uuid.UUID,
        pickup_location: dict[str, Any],
        dropoff_location: dict[str, Any],
        price: Decimal,
        package_details: Optional[str] = None,
        notes: Optional[str] = None,
        payment_method: Optional[str] = None,
        estimated_distance: Optional[Decimal] = None,
        estimated_duration: Optional[int] = None,
    ) -> Order:
        """
        Create an order waiting for a driver.

        Args:
            customer_id: Customer placing the order
            pickup_location: Pickup address with optional coordinates
            dropoff_location: Drop-off address with optional coordinates
            price: Price agreed with the customer

        Returns:
            The order in ``available`` with no driver

        Raises:
            OrderValidationError: If price or locations are invalid
        """
        logger.info("Creating order", customer_id=str(customer_id))

        self._validate_order_data(price, pickup_location, dropoff_location)

        order = await self.repository.create_order(
            customer_id=customer_id,
            pickup_location=pickup_location,
            dropoff_location=dropoff_location,
            price=price,
            package_details=package_details,
            notes=notes,
            payment_method=payment_method,
            estimated_distance=estimated_distance,
            estimated_duration=estimated_duration,
        )
        await self.session.commit()
        return order

    def _validate_order_data(
        self,
        price: Decimal,
        pickup_location: dict[str, Any],
        dropoff_location: dict[str, Any],
    ) -> None:
        if price is None or Decimal(price) < 0:
            raise OrderValidationError("Price must not be negative", price=str(price))

        for name, location in (
            ("pickup_location", pickup_location),
            ("dropoff_location", dropoff_location),
        ):
            if not isinstance(location, dict) or not str(location.get("address") or "").strip():
                raise OrderValidationError(
                    f"{name} must include an address",
                    field=name,
                )

    async def get_order(self, order_id: uuid.UUID, principal: Principal) -> Order:
        """
        Get an order the principal is allowed to see.

        Customers see their own orders, drivers see orders assigned to them
        and any order still ``available``, admins see everything.

        Raises:
            OrderNotFoundError: Order does not exist
            UnauthorizedActorError: Principal may not see the order
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        if not self._can_view(order, principal):
            logger.warning(
                "Order access refused",
                order_id=str(order_id),
                principal_id=str(principal.id),
                role=principal.role.value,
            )
            raise UnauthorizedActorError(
                "Not allowed to view this order",
                order_id=str(order_id),
            )
        return order

    @staticmethod
    def _can_view(order: Order, principal: Principal) -> bool:
        if principal.is_admin:
            return True
        if principal.role == PrincipalRole.CUSTOMER:
            return order.customer_id == principal.id
        return order.driver_id == principal.id or order.status == OrderStatus.AVAILABLE

    async def list_available_orders(
        self, skip: int = 0, limit: int = 20
    ) -> tuple[Sequence[Order], int]:
        """Orders drivers can claim, oldest first."""
        return await self.repository.list_orders(
            statuses=[OrderStatus.AVAILABLE],
            skip=skip,
            limit=limit,
            oldest_first=True,
        )

    async def list_driver_orders(
        self,
        driver_id: uuid.UUID,
        active: bool = True,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Order], int]:
        """The driver's deliveries in progress, or finished ones when ``active`` is False."""
        statuses = ACTIVE_STATUSES if active else TERMINAL_STATUSES
        return await self.repository.list_orders(
            statuses=sorted(statuses, key=lambda s: s.value),
            driver_id=driver_id,
            skip=skip,
            limit=limit,
        )

    async def list_customer_orders(
        self,
        customer_id: uuid.UUID,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Order], int]:
        return await self.repository.list_orders(
            statuses=[status] if status else None,
            customer_id=customer_id,
            skip=skip,
            limit=limit,
        )

    async def accept_order(
        self,
        order_id: uuid.UUID,
        driver_id: uuid.UUID,
        driver_location: LocationInput,
    ) -> Order:
        """
        Claim an order for a driver.

        Raises:
            LocationRequiredError: No usable location
            OrderNotFoundError: Order does not exist
            AlreadyTakenError: Another driver claimed it first
        """
        outcome = await self.assignment.accept(order_id, driver_id, driver_location)

        if outcome.status == AcceptStatus.NOT_FOUND:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        if outcome.status == AcceptStatus.ALREADY_TAKEN:
            raise AlreadyTakenError(
                "Order has already been taken by another driver",
                order_id=str(order_id),
                current_status=outcome.order.status.value if outcome.order else None,
            )
        return outcome.order

    async def transition_order(
        self,
        order_id: uuid.UUID,
        driver_id: uuid.UUID,
        target_status: Union[OrderStatus, str],
        driver_location: LocationInput = None,
    ) -> Order:
        return await self.engine.transition(
            order_id, driver_id, target_status, driver_location
        )

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: Optional[str] = None,
        driver_location: LocationInput = None,
        is_admin: bool = False,
    ) -> Order:
        return await self.engine.cancel(
            order_id,
            actor_id=actor_id,
            reason=reason,
            driver_location=driver_location,
            is_admin=is_admin,
        )

    async def update_payment_status(
        self,
        order_id: uuid.UUID,
        payment_status: Union[PaymentStatus, str],
    ) -> Order:
        """
        Set the payment status of any order, terminal ones included.

        Raises:
            OrderNotFoundError: Order does not exist
            OrderValidationError: Unknown payment status
            StaleStateError: Payment status changed concurrently
        """
        if not isinstance(payment_status, PaymentStatus):
            try:
                payment_status = PaymentStatus.from_string(payment_status)
            except (ValueError, AttributeError) as e:
                raise OrderValidationError(str(e), payment_status=str(payment_status)) from e

        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        previous = order.payment_status
        if previous == payment_status:
            return order

        result = await self.repository.conditional_update(
            order_id,
            expected={"payment_status": previous},
            values={"payment_status": payment_status},
        )
        if not result.matched:
            await self.session.rollback()
            raise StaleStateError(
                "Payment status changed while the request was processed",
                order_id=str(order_id),
                expected_payment_status=previous.value,
            )
        await self.session.commit()

        logger.info(
            "Payment status updated",
            order_id=str(order_id),
            previous_payment_status=previous.value,
            payment_status=payment_status.value,
        )
        return result.order

    async def confirm_receipt(self, order_id: uuid.UUID, customer_id: uuid.UUID) -> Order:
        """
        Customer confirms a delivered order, marking it paid.

        The payout split was fixed when the order completed and is not
        touched here.

        Raises:
            OrderNotFoundError: Order does not exist
            UnauthorizedActorError: Caller is not the order's customer
            IllegalTransitionError: Order is not completed
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        if order.customer_id != customer_id:
            logger.warning(
                "Receipt confirmation refused - not the customer",
                order_id=str(order_id),
                actor_id=str(customer_id),
            )
            raise UnauthorizedActorError(
                "Only the customer can confirm receipt",
                order_id=str(order_id),
            )

        if order.status != OrderStatus.COMPLETED:
            raise IllegalTransitionError(
                "Receipt can only be confirmed for completed orders",
                order_id=str(order_id),
                current_status=order.status.value,
            )

        return await self.update_payment_status(order_id, PaymentStatus.PAID)

    async def get_status_history(
        self, order_id: uuid.UUID, principal: Principal
    ) -> Sequence[OrderStatusHistory]:
        await self.get_order(order_id, principal)
        return await self.repository.get_status_history(order_id)

    async def get_transactions(self, order_id: uuid.UUID) -> Sequence[FinancialTransaction]:
        return await self.repository.get_transactions(order_id)

    async def get_commission_rate(self) -> Decimal:
        return await self.commission_rates.get_current_rate()

    async def set_commission_rate(self, rate: Number) -> Decimal:
        """
        Change the rate applied to orders completed from now on.

        Raises:
            OrderValidationError: Rate outside 0..100
        """
        try:
            stored = await self.commission_rates.set_rate(rate)
        except ValueError as e:
            raise OrderValidationError(str(e), commission_rate=str(rate)) from e
        await self.session.commit()
        return stored
