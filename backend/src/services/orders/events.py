"""Order status events and the notification hand-off boundary.

After every committed status change the order core emits one ``OrderEvent``
to a ``NotificationDispatcher``. Delivery of the notifications themselves
(push, email, SMS) happens outside this service. A failing dispatcher never
rolls back the status change that produced the event.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from celery import Celery

from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.services.orders.enums import OrderStatus

logger = get_logger(__name__)


class Audience(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


@dataclass(frozen=True)
class OrderEvent:
    """A committed status change of one order."""

    order_id: uuid.UUID
    previous_status: OrderStatus
    new_status: OrderStatus
    driver_id: Optional[uuid.UUID]
    customer_id: uuid.UUID
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        """JSON-serialisable form used on the wire."""
        return {
            "order_id": str(self.order_id),
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "driver_id": str(self.driver_id) if self.driver_id else None,
            "customer_id": str(self.customer_id),
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderEvent":
        driver_id = payload.get("driver_id")
        return cls(
            order_id=uuid.UUID(payload["order_id"]),
            previous_status=OrderStatus(payload["previous_status"]),
            new_status=OrderStatus(payload["new_status"]),
            driver_id=uuid.UUID(driver_id) if driver_id else None,
            customer_id=uuid.UUID(payload["customer_id"]),
            occurred_at=datetime.fromisoformat(payload["occurred_at"]),
        )


@dataclass(frozen=True)
class NotificationRequest:
    """One message the external delivery layer should send."""

    audience: Audience
    recipient_id: Optional[uuid.UUID]
    template: str


# new status -> (audience, template) pairs
_NOTIFICATION_PLAN: dict[OrderStatus, tuple[tuple[Audience, str], ...]] = {
    OrderStatus.PICKED_UP: (
        (Audience.CUSTOMER, "order_accepted"),
    ),
    OrderStatus.IN_TRANSIT: (
        (Audience.CUSTOMER, "order_in_transit"),
    ),
    OrderStatus.APPROACHING: (
        (Audience.CUSTOMER, "driver_approaching"),
    ),
    OrderStatus.COMPLETED: (
        (Audience.CUSTOMER, "order_delivered"),
        (Audience.DRIVER, "payout_recorded"),
        (Audience.ADMIN, "order_completed"),
    ),
    OrderStatus.CANCELLED: (
        (Audience.CUSTOMER, "order_cancelled"),
        (Audience.DRIVER, "order_cancelled"),
        (Audience.ADMIN, "order_cancelled"),
    ),
}


def build_notification_requests(event: OrderEvent) -> list[NotificationRequest]:
    """Expand an event into the messages it should trigger.

    Driver messages are skipped for orders that never had a driver. Admin
    messages go to the back office queue and carry no recipient id.
    """
    requests = []
    for audience, template in _NOTIFICATION_PLAN.get(event.new_status, ()):
        if audience == Audience.CUSTOMER:
            recipient = event.customer_id
        elif audience == Audience.DRIVER:
            if event.driver_id is None:
                continue
            recipient = event.driver_id
        else:
            recipient = None
        requests.append(
            NotificationRequest(audience=audience, recipient_id=recipient, template=template)
        )
    return requests


class NotificationDispatcher(Protocol):
    """Receives order events after the status change is committed."""

    async def dispatch(self, event: OrderEvent) -> None:
        ...


class LoggingNotificationDispatcher:
    """Writes the notification plan to the structured log.

    Used in development and tests, where no broker is running.
    """

    async def dispatch(self, event: OrderEvent) -> None:
        for request in build_notification_requests(event):
            logger.info(
                "Order notification",
                order_id=str(event.order_id),
                previous_status=event.previous_status.value,
                new_status=event.new_status.value,
                audience=request.audience.value,
                recipient_id=str(request.recipient_id) if request.recipient_id else None,
                template=request.template,
            )


class CeleryNotificationDispatcher:
    """Hands events to the notification worker through Celery."""

    def __init__(self, app: Celery, task_name: str):
        self.app = app
        self.task_name = task_name

    async def dispatch(self, event: OrderEvent) -> None:
        # send_task talks to the broker synchronously
        result = await asyncio.to_thread(
            self.app.send_task,
            self.task_name,
            kwargs={"event": event.to_payload()},
        )
        logger.info(
            "Order event queued",
            order_id=str(event.order_id),
            new_status=event.new_status.value,
            task_id=getattr(result, "id", None),
        )


def get_notification_dispatcher(
    settings: Optional[Settings] = None,
) -> NotificationDispatcher:
    """Build the dispatcher selected by ``notification_backend``."""
    settings = settings or get_settings()

    if settings.notification_backend == "celery":
        from src.core.celery_app import get_celery_app

        return CeleryNotificationDispatcher(
            get_celery_app(),
            settings.notification_task_name,
        )

    return LoggingNotificationDispatcher()


async def emit_order_event(
    dispatcher: Optional[NotificationDispatcher], event: OrderEvent
) -> bool:
    """
    Deliver ``event`` without letting delivery problems escape.

    The status change is already committed when this runs, so any failure is
    logged and reported through the return value only.

    Returns:
        True if the dispatcher accepted the event
    """
    if dispatcher is None:
        return False

    try:
        await dispatcher.dispatch(event)
        return True
    except Exception as e:
        logger.warning(
            "Order event delivery failed",
            order_id=str(event.order_id),
            new_status=event.new_status.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False
