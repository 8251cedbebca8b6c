"""
Tests for order events and the notification hand-off.
"""

import uuid
from unittest.mock import MagicMock, patch

import pytest

from src.core.config import Settings
from src.services.orders.enums import OrderStatus
from src.services.orders.events import (
    Audience,
    CeleryNotificationDispatcher,
    LoggingNotificationDispatcher,
    OrderEvent,
    build_notification_requests,
    emit_order_event,
    get_notification_dispatcher,
)


@pytest.fixture
def event(customer_id, driver_id) -> OrderEvent:
    return OrderEvent(
        order_id=uuid.uuid4(),
        previous_status=OrderStatus.APPROACHING,
        new_status=OrderStatus.COMPLETED,
        driver_id=driver_id,
        customer_id=customer_id,
    )


# ============================================================================
# Event Payload Tests
# ============================================================================


class TestOrderEvent:
    def test_payload_is_json_friendly(self, event) -> None:
        payload = event.to_payload()

        assert payload["order_id"] == str(event.order_id)
        assert payload["previous_status"] == "approaching"
        assert payload["new_status"] == "completed"
        assert payload["driver_id"] == str(event.driver_id)
        assert isinstance(payload["occurred_at"], str)

    def test_payload_restores_event(self, event) -> None:
        assert OrderEvent.from_payload(event.to_payload()) == event

    def test_event_without_driver(self, customer_id) -> None:
        event = OrderEvent(
            order_id=uuid.uuid4(),
            previous_status=OrderStatus.AVAILABLE,
            new_status=OrderStatus.CANCELLED,
            driver_id=None,
            customer_id=customer_id,
        )

        payload = event.to_payload()

        assert payload["driver_id"] is None
        assert OrderEvent.from_payload(payload).driver_id is None


# ============================================================================
# Notification Plan Tests
# ============================================================================


class TestNotificationPlan:
    def test_claim_notifies_customer(self, event) -> None:
        claimed = OrderEvent(
            order_id=event.order_id,
            previous_status=OrderStatus.AVAILABLE,
            new_status=OrderStatus.PICKED_UP,
            driver_id=event.driver_id,
            customer_id=event.customer_id,
        )

        requests = build_notification_requests(claimed)

        assert [(r.audience, r.recipient_id, r.template) for r in requests] == [
            (Audience.CUSTOMER, event.customer_id, "order_accepted"),
        ]

    def test_completion_notifies_every_party(self, event) -> None:
        requests = build_notification_requests(event)

        assert {r.audience for r in requests} == {
            Audience.CUSTOMER,
            Audience.DRIVER,
            Audience.ADMIN,
        }
        driver_request = next(r for r in requests if r.audience == Audience.DRIVER)
        assert driver_request.recipient_id == event.driver_id
        admin_request = next(r for r in requests if r.audience == Audience.ADMIN)
        assert admin_request.recipient_id is None

    def test_driver_skipped_when_order_never_had_one(self, customer_id) -> None:
        event = OrderEvent(
            order_id=uuid.uuid4(),
            previous_status=OrderStatus.AVAILABLE,
            new_status=OrderStatus.CANCELLED,
            driver_id=None,
            customer_id=customer_id,
        )

        audiences = [r.audience for r in build_notification_requests(event)]

        assert Audience.DRIVER not in audiences
        assert Audience.CUSTOMER in audiences


# ============================================================================
# Dispatcher Tests
# ============================================================================


class TestDispatchers:
    async def test_logging_dispatcher_accepts_event(self, event) -> None:
        assert await emit_order_event(LoggingNotificationDispatcher(), event) is True

    async def test_celery_dispatcher_queues_named_task(self, event) -> None:
        app = MagicMock()
        app.send_task.return_value = MagicMock(id="task-1")
        dispatcher = CeleryNotificationDispatcher(app, "notifications.order_status_changed")

        await dispatcher.dispatch(event)

        app.send_task.assert_called_once_with(
            "notifications.order_status_changed",
            kwargs={"event": event.to_payload()},
        )

    async def test_broker_failure_is_reported_not_raised(self, event) -> None:
        app = MagicMock()
        app.send_task.side_effect = ConnectionError("broker down")
        dispatcher = CeleryNotificationDispatcher(app, "notifications.order_status_changed")

        assert await emit_order_event(dispatcher, event) is False

    async def test_failing_dispatcher_is_reported_not_raised(
        self, event, failing_dispatcher
    ) -> None:
        assert await emit_order_event(failing_dispatcher, event) is False
        assert failing_dispatcher.calls == 1

    async def test_no_dispatcher(self, event) -> None:
        assert await emit_order_event(None, event) is False


class TestDispatcherSelection:
    def test_log_backend(self) -> None:
        dispatcher = get_notification_dispatcher(Settings(notification_backend="log"))

        assert isinstance(dispatcher, LoggingNotificationDispatcher)

    def test_celery_backend(self) -> None:
        settings = Settings(
            notification_backend="celery",
            notification_task_name="custom.task",
        )
        app = MagicMock()

        with patch("src.core.celery_app.get_celery_app", return_value=app):
            dispatcher = get_notification_dispatcher(settings)

        assert isinstance(dispatcher, CeleryNotificationDispatcher)
        assert dispatcher.app is app
        assert dispatcher.task_name == "custom.task"
