"""
Order data access repository built around conditional updates.

This module implements ``OrderRepository``, the durable order store. Every
mutation of an existing order goes through ``conditional_update``: a single
``UPDATE ... WHERE id = :id AND <expected>`` statement whose affected row
count tells the caller whether it won. No row locks are taken and nothing is
read before the write, so the database's per-row atomicity is the only
concurrency control.

Persistence failures (``SQLAlchemyError``) are logged and propagate
unchanged; callers retry them with backoff.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.order import FinancialTransaction, Order, OrderStatusHistory
from src.services.orders.commission import CommissionSplit
from src.services.orders.enums import (
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    TransactionType,
)

logger = get_logger(__name__)

# Columns fixed at creation; conditional updates may never write them.
IMMUTABLE_FIELDS = frozenset(
    {
        "id",
        "customer_id",
        "price",
        "pickup_location",
        "dropoff_location",
        "created_at",
    }
)


@dataclass(frozen=True)
class ConditionalUpdateResult:
    """
    Outcome of a conditional update.

    ``matched_count`` is 1 when the predicate held and the write was applied,
    0 otherwise. A zero count does not say why; callers that need to report
    "not found" versus "already changed" re-read the order for that purpose
    only.
    """

    matched_count: int
    order: Optional[Order] = None

    @property
    def matched(self) -> bool:
        return self.matched_count > 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderRepository:
    """
    Repository for order data access operations.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

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
        Insert a new order in the ``available`` state with no driver.

        Returns:
            Created order
        """
        now = utcnow()
        order = Order(
            id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            driver_id=None,
            status=OrderStatus.AVAILABLE,
            payment_status=PaymentStatus.PENDING,
            pickup_location=pickup_location,
            dropoff_location=dropoff_location,
            price=price,
            package_details=package_details,
            notes=notes,
            payment_method=payment_method,
            estimated_distance=estimated_distance,
            estimated_duration=estimated_duration,
        )

        try:
            self.session.add(order)
            await self.session.flush()
            await self.session.refresh(order)
        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed - database error",
                customer_id=str(customer_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.info(
            "Order created",
            order_id=str(order.id),
            customer_id=str(customer_id),
            price=str(price),
        )
        return order

    async def get_order_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get the current stored state of an order.

        The identity map is bypassed so the result reflects the database, not
        a copy loaded earlier in the same session.
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        return result.scalar_one_or_none()

    async def conditional_update(
        self,
        order_id: uuid.UUID,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> ConditionalUpdateResult:
        """
        Apply ``values`` only if the stored order currently matches ``expected``.

        Args:
            order_id: Order to update
            expected: Column -> expected current value. ``None`` means the
                column must be NULL.
            values: Column -> new value. ``updated_at`` is filled in when
                omitted.

        Returns:
            ConditionalUpdateResult with the affected row count and, on a
            match, the order as stored after the write

        Raises:
            ValueError: If ``values`` touches an immutable column or a key
                is not an order column
            SQLAlchemyError: On persistence failure, unchanged
        """
        columns = Order.__table__.columns
        for key in (*expected.keys(), *values.keys()):
            if key not in columns:
                raise ValueError(f"Unknown order column: {key}")

        forbidden = IMMUTABLE_FIELDS.intersection(values)
        if forbidden:
            raise ValueError(
                f"Immutable order fields cannot be updated: {sorted(forbidden)}"
            )

        conditions = [Order.id == order_id]
        for key, value in expected.items():
            column = getattr(Order, key)
            conditions.append(column.is_(None) if value is None else column == value)

        new_values = dict(values)
        new_values.setdefault("updated_at", utcnow())

        stmt = (
            update(Order)
            .where(and_(*conditions))
            .values(**new_values)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Conditional order update failed - database error",
                order_id=str(order_id),
                expected=_describe(expected),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        matched_count = result.rowcount or 0

        logger.debug(
            "Conditional order update executed",
            order_id=str(order_id),
            expected=_describe(expected),
            matched_count=matched_count,
        )

        if matched_count == 0:
            return ConditionalUpdateResult(matched_count=0)

        order = await self.get_order_by_id(order_id)
        return ConditionalUpdateResult(matched_count=matched_count, order=order)

    async def add_status_history(
        self,
        order_id: uuid.UUID,
        from_status: OrderStatus,
        to_status: OrderStatus,
        actor_id: uuid.UUID,
        driver_location: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> OrderStatusHistory:
        """Append one row to the order's status history."""
        entry = OrderStatusHistory(
            id=uuid.uuid4(),
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            driver_location=driver_location,
            reason=reason,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def add_completion_transactions(
        self,
        order_id: uuid.UUID,
        driver_id: uuid.UUID,
        split: CommissionSplit,
    ) -> list[FinancialTransaction]:
        """Record the driver payout and platform fee of a completed order."""
        entries = [
            FinancialTransaction(
                id=uuid.uuid4(),
                order_id=order_id,
                driver_id=driver_id,
                amount=split.driver_payout,
                transaction_type=TransactionType.DRIVER_PAYOUT,
                status=TransactionStatus.COMPLETED,
            ),
            FinancialTransaction(
                id=uuid.uuid4(),
                order_id=order_id,
                driver_id=None,
                amount=split.platform_commission,
                transaction_type=TransactionType.PLATFORM_FEE,
                status=TransactionStatus.COMPLETED,
            ),
        ]
        self.session.add_all(entries)
        await self.session.flush()
        return entries

    async def list_orders(
        self,
        statuses: Optional[Sequence[OrderStatus]] = None,
        customer_id: Optional[uuid.UUID] = None,
        driver_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 20,
        oldest_first: bool = False,
    ) -> tuple[Sequence[Order], int]:
        """
        List orders with optional filters and pagination.

        Returns:
            Tuple of (orders, total_count)
        """
        conditions = []
        if statuses:
            conditions.append(Order.status.in_(list(statuses)))
        if customer_id is not None:
            conditions.append(Order.customer_id == customer_id)
        if driver_id is not None:
            conditions.append(Order.driver_id == driver_id)

        ordering = Order.created_at.asc() if oldest_first else Order.created_at.desc()

        stmt = select(Order).order_by(ordering, Order.id).offset(skip).limit(limit)
        count_stmt = select(func.count()).select_from(Order)
        if conditions:
            stmt = stmt.where(and_(*conditions))
            count_stmt = count_stmt.where(and_(*conditions))

        try:
            total_count = (await self.session.execute(count_stmt)).scalar_one()
            orders = (await self.session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to list orders",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        return orders, total_count

    async def get_status_history(self, order_id: uuid.UUID) -> Sequence[OrderStatusHistory]:
        stmt = (
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def get_transactions(self, order_id: uuid.UUID) -> Sequence[FinancialTransaction]:
        stmt = select(FinancialTransaction).where(FinancialTransaction.order_id == order_id)
        result = await self.session.execute(stmt)
        return result.scalars().all()


def _describe(expected: Mapping[str, Any]) -> dict[str, Optional[str]]:
    return {
        key: None if value is None else str(getattr(value, "value", value))
        for key, value in expected.items()
    }
