"""Order status enums and the delivery state machine transition table.

The delivery lifecycle is a single forward chain with one cancellation exit:

    available -> picked_up -> in_transit -> approaching -> completed
    available | picked_up -> cancelled

``available -> picked_up`` is the assignment edge and is only ever taken by
the assignment service. Every other forward edge is taken by the status
transition engine. The table below is the only place these rules live.
"""

from enum import Enum
from typing import Dict, Optional, Set


class OrderStatus(str, Enum):
    """Delivery order lifecycle status."""

    AVAILABLE = "available"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    APPROACHING = "approaching"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Completed and cancelled orders never change status again."""
        return self in TERMINAL_STATUSES

    def can_cancel(self) -> bool:
        """Cancellation is only possible before the delivery is underway."""
        return self in CANCELLABLE_STATUSES


class PaymentStatus(str, Enum):
    """Payment status, independent of delivery status."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

    @classmethod
    def from_string(cls, value: str) -> "PaymentStatus":
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid payment status: {value}. "
                f"Valid values are: {valid_values}"
            )


class TransactionType(str, Enum):
    """Ledger entry kinds written when an order completes."""

    DRIVER_PAYOUT = "driver_payout"
    PLATFORM_FEE = "platform_fee"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


# Forward chain in delivery order; index is the progress rank.
DELIVERY_SEQUENCE: tuple[OrderStatus, ...] = (
    OrderStatus.AVAILABLE,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.APPROACHING,
    OrderStatus.COMPLETED,
)

# Current status -> its single legal forward successor.
FORWARD_TRANSITIONS: Dict[OrderStatus, OrderStatus] = {
    current: successor
    for current, successor in zip(DELIVERY_SEQUENCE, DELIVERY_SEQUENCE[1:])
}

# Edges driven by the status transition engine (assignment excluded).
ENGINE_TRANSITIONS: Dict[OrderStatus, OrderStatus] = {
    current: successor
    for current, successor in FORWARD_TRANSITIONS.items()
    if current != OrderStatus.AVAILABLE
}

CANCELLABLE_STATUSES: Set[OrderStatus] = {
    OrderStatus.AVAILABLE,
    OrderStatus.PICKED_UP,
}

TERMINAL_STATUSES: Set[OrderStatus] = {
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
}

ACTIVE_STATUSES: Set[OrderStatus] = {
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.APPROACHING,
}


def get_successor(status: OrderStatus) -> Optional[OrderStatus]:
    """Return the single forward successor of ``status``, if any."""
    return FORWARD_TRANSITIONS.get(status)


def get_engine_predecessor(target: OrderStatus) -> Optional[OrderStatus]:
    """Return the status an engine-driven move to ``target`` must start from.

    ``None`` means the engine never moves an order into ``target``
    (``available``, ``picked_up``, ``cancelled``).
    """
    for current, successor in ENGINE_TRANSITIONS.items():
        if successor == target:
            return current
    return None


def progress_rank(status: OrderStatus) -> int:
    """Position of ``status`` on the forward chain; -1 for cancelled."""
    try:
        return DELIVERY_SEQUENCE.index(status)
    except ValueError:
        return -1
