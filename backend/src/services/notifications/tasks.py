"""
Celery tasks consuming order status events.

The order core queues one ``notifications.order_status_changed`` task per
committed status change. The task expands the event into per-recipient
notification requests and hands them to the delivery channels, which live
outside this service.
"""

from typing import Any, Optional

from celery import Task, shared_task

from src.core.logging import get_logger
from src.services.orders.events import OrderEvent, build_notification_requests

logger = get_logger(__name__)


def _event_order_id(kwargs: Optional[dict]) -> Optional[str]:
    event = (kwargs or {}).get("event") or {}
    return event.get("order_id")


class OrderEventTask(Task):
    """
    Base for tasks fed with ``OrderEvent`` payloads.

    Broker and channel hiccups are retried with jittered exponential backoff;
    log lines carry the order id of the event being processed.
    """

    autoretry_for = (ConnectionError, TimeoutError)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(self, exc, task_id, args, kwargs, einfo) -> None:
        logger.error(
            "Order event task failed",
            task=self.name,
            task_id=task_id,
            order_id=_event_order_id(kwargs),
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def on_retry(self, exc, task_id, args, kwargs, einfo) -> None:
        logger.warning(
            "Order event task retrying",
            task=self.name,
            task_id=task_id,
            order_id=_event_order_id(kwargs),
            error=str(exc),
            attempt=self.request.retries + 1,
            max_retries=self.max_retries,
        )


@shared_task(
    bind=True,
    base=OrderEventTask,
    name="notifications.order_status_changed",
    time_limit=60,
    soft_time_limit=45,
)
def order_status_changed_task(self: Task, event: dict[str, Any]) -> dict[str, Any]:
    """
    Fan an order status event out to its recipients.

    Args:
        event: ``OrderEvent.to_payload()`` output

    Returns:
        Order id, new status and how many notifications were handed on
    """
    order_event = OrderEvent.from_payload(event)
    requests = build_notification_requests(order_event)

    for request in requests:
        logger.info(
            "Notification handed to delivery channel",
            task_id=self.request.id,
            order_id=str(order_event.order_id),
            new_status=order_event.new_status.value,
            audience=request.audience.value,
            recipient_id=str(request.recipient_id) if request.recipient_id else None,
            template=request.template,
        )

    return {
        "order_id": str(order_event.order_id),
        "new_status": order_event.new_status.value,
        "notifications": len(requests),
    }
