"""
Order models for the delivery lifecycle.

This module defines the ``Order`` record, which is the source of truth for
delivery status and driver assignment, together with the append-only
``OrderStatusHistory`` audit trail and the ``FinancialTransaction`` ledger
written when an order completes. Orders are never deleted.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import BaseModel, JSONType, enum_values
from src.services.orders.enums import (
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    TransactionType,
)


def _status_column_type(enum_cls, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=enum_values,
        validate_strings=True,
    )


class Order(BaseModel):
    """
    A single delivery request linking one customer and, once assigned, one driver.

    Attributes:
        id: Unique order identifier (UUID)
        customer_id: Owning customer, immutable
        driver_id: Assigned driver; NULL while the order is available
        status: Delivery status
        payment_status: Payment status, independent of delivery status
        pickup_location: Pickup address and optional coordinates
        dropoff_location: Drop-off address and optional coordinates
        driver_location: Driver coordinates from the latest transition
        price: Order value set at creation
        commission_rate: Platform commission percentage, snapshotted at completion
        platform_commission: Platform share, written once at completion
        driver_payout: Driver share, written once at completion
        actual_pickup_time: Set when the order is claimed
        actual_delivery_time: Set when the order completes
        cancelled_at: Set when the order is cancelled
    """

    __tablename__ = "orders"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="Customer who placed the order",
    )

    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
        comment="Driver who claimed the order",
    )

    status: Mapped[OrderStatus] = mapped_column(
        _status_column_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.AVAILABLE,
        index=True,
        comment="Current delivery status",
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        _status_column_type(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
        comment="Current payment status",
    )

    payment_method: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Payment method chosen by the customer",
    )

    pickup_location: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Pickup address and optional coordinates",
    )

    dropoff_location: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Drop-off address and optional coordinates",
    )

    driver_location: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Driver coordinates reported with the latest transition",
    )

    package_details: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )

    notes: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )

    estimated_distance: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=True,
        comment="Estimated route distance in kilometres",
    )

    estimated_duration: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Estimated route duration in minutes",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        comment="Order value set at creation",
    )

    commission_rate: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2),
        nullable=True,
        comment="Commission percentage snapshotted at completion",
    )

    platform_commission: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=True,
        comment="Platform share of the price, written at completion",
    )

    driver_payout: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=True,
        comment="Driver share of the price, written at completion",
    )

    actual_pickup_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    actual_delivery_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Principal who cancelled the order",
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.created_at",
        lazy="noload",
    )

    transactions: Mapped[list["FinancialTransaction"]] = relationship(
        "FinancialTransaction",
        back_populates="order",
        lazy="noload",
    )

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_driver_status", "driver_id", "status"),
        Index("ix_orders_customer_status", "customer_id", "status"),
        CheckConstraint("price >= 0", name="ck_orders_price_non_negative"),
        CheckConstraint(
            "commission_rate IS NULL OR "
            "(commission_rate >= 0 AND commission_rate <= 100)",
            name="ck_orders_commission_rate_range",
        ),
        CheckConstraint(
            "status = 'cancelled' "
            "OR (status = 'available' AND driver_id IS NULL) "
            "OR (status <> 'available' AND driver_id IS NOT NULL)",
            name="ck_orders_driver_matches_status",
        ),
        {"comment": "Delivery orders; source of truth for status and assignment"},
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status.value}, "
            f"customer_id={self.customer_id}, driver_id={self.driver_id})>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def is_assigned(self) -> bool:
        return self.driver_id is not None


class OrderStatusHistory(BaseModel):
    """
    Append-only record of every status change of an order.

    Doubles as the driver movement log: each row keeps the location that was
    reported with the transition, while ``Order.driver_location`` only holds
    the latest one.
    """

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    from_status: Mapped[OrderStatus] = mapped_column(
        _status_column_type(OrderStatus, "order_status"),
        nullable=False,
    )

    to_status: Mapped[OrderStatus] = mapped_column(
        _status_column_type(OrderStatus, "order_status"),
        nullable=False,
    )

    actor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        comment="Principal who made the change",
    )

    driver_location: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="status_history",
        lazy="noload",
    )


class FinancialTransaction(BaseModel):
    """
    Ledger entry for money moved by a completed order.
    """

    __tablename__ = "financial_transactions"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
    )

    transaction_type: Mapped[TransactionType] = mapped_column(
        _status_column_type(TransactionType, "transaction_type"),
        nullable=False,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        _status_column_type(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="transactions",
        lazy="noload",
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_financial_transactions_amount"),
        Index(
            "ix_financial_transactions_order_type",
            "order_id",
            "transaction_type",
            unique=True,
        ),
    )
