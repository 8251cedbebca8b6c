"""
Tests for StatusTransitionEngine.

Covers the precondition order (exists, location, identity, successor), the
conditional write that turns replays and races into stale-state outcomes,
the completion split, and the cancellation edge.
"""

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from src.services.orders.assignment import AssignmentService
from src.services.orders.commission import (
    DatabaseCommissionRateProvider,
    StaticCommissionRateProvider,
    compute_split,
)
from src.services.orders.enums import OrderStatus, TransactionType
from src.services.orders.exceptions import (
    IllegalTransitionError,
    LocationRequiredError,
    OrderNotFoundError,
    StaleStateError,
    UnauthorizedActorError,
)
from src.services.orders.repository import OrderRepository
from src.services.orders.state_machine import StatusTransitionEngine, check_successor


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def engine_service(session, dispatcher) -> StatusTransitionEngine:
    return StatusTransitionEngine(
        session,
        commission_rates=StaticCommissionRateProvider(Decimal("20")),
        dispatcher=dispatcher,
    )


@pytest.fixture
def claimed_order(session_factory, make_order, driver_id, location):
    """Factory for an order already claimed by ``driver_id``."""

    async def _claimed_order(price: Decimal = Decimal("100.00")):
        order = await make_order(price=price)
        async with session_factory() as session:
            outcome = await AssignmentService(session).accept(order.id, driver_id, location)
        assert outcome.accepted
        return outcome.order

    return _claimed_order


async def drive_to(engine, order_id, driver_id, location, *targets):
    for target in targets:
        await engine.transition(order_id, driver_id, target, location)


# ============================================================================
# Successor Check Tests
# ============================================================================


class TestCheckSuccessor:
    """Test the pure successor rules."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT),
            (OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING),
            (OrderStatus.APPROACHING, OrderStatus.COMPLETED),
        ],
    )
    def test_next_status_is_accepted(self, current, target) -> None:
        check_successor(uuid.uuid4(), current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PICKED_UP, OrderStatus.APPROACHING),
            (OrderStatus.PICKED_UP, OrderStatus.COMPLETED),
            (OrderStatus.IN_TRANSIT, OrderStatus.COMPLETED),
            (OrderStatus.AVAILABLE, OrderStatus.IN_TRANSIT),
            (OrderStatus.IN_TRANSIT, OrderStatus.PICKED_UP),
            (OrderStatus.APPROACHING, OrderStatus.AVAILABLE),
        ],
    )
    def test_skips_and_non_engine_targets_are_illegal(self, current, target) -> None:
        with pytest.raises(IllegalTransitionError):
            check_successor(uuid.uuid4(), current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.IN_TRANSIT, OrderStatus.IN_TRANSIT),
            (OrderStatus.APPROACHING, OrderStatus.IN_TRANSIT),
            (OrderStatus.COMPLETED, OrderStatus.COMPLETED),
            (OrderStatus.COMPLETED, OrderStatus.APPROACHING),
            (OrderStatus.CANCELLED, OrderStatus.IN_TRANSIT),
        ],
    )
    def test_reached_or_passed_targets_are_stale(self, current, target) -> None:
        with pytest.raises(StaleStateError):
            check_successor(uuid.uuid4(), current, target)


# ============================================================================
# Forward Transition Tests
# ============================================================================


class TestTransition:
    """Test forward transitions by the assigned driver."""

    async def test_next_status_is_applied(
        self, engine_service, verify_session, claimed_order, driver_id
    ) -> None:
        order = await claimed_order()
        new_location = {"lat": 48.1, "lng": 11.5}

        updated = await engine_service.transition(
            order.id, driver_id, OrderStatus.IN_TRANSIT, new_location
        )

        assert updated.status == OrderStatus.IN_TRANSIT
        stored = await OrderRepository(verify_session).get_order_by_id(order.id)
        assert stored.status == OrderStatus.IN_TRANSIT
        assert stored.driver_location == new_location

    async def test_target_given_as_string(
        self, engine_service, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()

        updated = await engine_service.transition(order.id, driver_id, "in_transit", location)

        assert updated.status == OrderStatus.IN_TRANSIT

    async def test_unknown_target_string_is_illegal(
        self, engine_service, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()

        with pytest.raises(IllegalTransitionError):
            await engine_service.transition(order.id, driver_id, "delivered", location)

    async def test_each_transition_emits_one_event(
        self, engine_service, dispatcher, claimed_order, driver_id, customer_id, location
    ) -> None:
        order = await claimed_order()

        await drive_to(
            engine_service, order.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING,
        )

        assert [(e.previous_status, e.new_status) for e in dispatcher.events] == [
            (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT),
            (OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING),
        ]
        assert all(e.customer_id == customer_id for e in dispatcher.events)

    async def test_history_records_every_location(
        self, engine_service, verify_session, claimed_order, driver_id
    ) -> None:
        order = await claimed_order()
        route = [{"lat": 1.0, "lng": 1.0}, {"lat": 2.0, "lng": 2.0}]

        await engine_service.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, route[0])
        await engine_service.transition(order.id, driver_id, OrderStatus.APPROACHING, route[1])

        history = await OrderRepository(verify_session).get_status_history(order.id)
        assert [h.driver_location for h in history[1:]] == route

    async def test_skipping_ahead_is_illegal(
        self, engine_service, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()

        with pytest.raises(IllegalTransitionError):
            await engine_service.transition(order.id, driver_id, OrderStatus.COMPLETED, location)

    async def test_assignment_edge_is_not_available_to_the_engine(
        self, engine_service, make_order, driver_id, location
    ) -> None:
        order = await make_order()

        # nobody owns an available order yet
        with pytest.raises(UnauthorizedActorError):
            await engine_service.transition(order.id, driver_id, OrderStatus.PICKED_UP, location)


# ============================================================================
# Precondition Order Tests
# ============================================================================


class TestPreconditions:
    """Each failed precondition has its own error, checked in a fixed order."""

    async def test_missing_order(self, engine_service, driver_id, location) -> None:
        with pytest.raises(OrderNotFoundError):
            await engine_service.transition(uuid.uuid4(), driver_id, OrderStatus.IN_TRANSIT, location)

    async def test_missing_order_wins_over_missing_location(self, engine_service, driver_id) -> None:
        with pytest.raises(OrderNotFoundError):
            await engine_service.transition(uuid.uuid4(), driver_id, OrderStatus.IN_TRANSIT, None)

    async def test_missing_location(self, engine_service, claimed_order, driver_id) -> None:
        order = await claimed_order()

        with pytest.raises(LocationRequiredError):
            await engine_service.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, None)

    async def test_missing_location_wins_over_wrong_driver(
        self, engine_service, claimed_order, other_driver_id
    ) -> None:
        order = await claimed_order()

        with pytest.raises(LocationRequiredError):
            await engine_service.transition(order.id, other_driver_id, OrderStatus.IN_TRANSIT, None)

    async def test_wrong_driver_even_for_legal_target(
        self, engine_service, verify_session, claimed_order, other_driver_id, location
    ) -> None:
        order = await claimed_order()

        with pytest.raises(UnauthorizedActorError):
            await engine_service.transition(
                order.id, other_driver_id, OrderStatus.IN_TRANSIT, location
            )

        stored = await OrderRepository(verify_session).get_order_by_id(order.id)
        assert stored.status == OrderStatus.PICKED_UP

    async def test_wrong_driver_wins_over_illegal_target(
        self, engine_service, claimed_order, other_driver_id, location
    ) -> None:
        order = await claimed_order()

        with pytest.raises(UnauthorizedActorError):
            await engine_service.transition(
                order.id, other_driver_id, OrderStatus.COMPLETED, location
            )

    async def test_missing_order_wins_over_unknown_target(
        self, engine_service, driver_id, location
    ) -> None:
        with pytest.raises(OrderNotFoundError):
            await engine_service.transition(uuid.uuid4(), driver_id, "teleported", location)

    async def test_wrong_driver_wins_over_unknown_target(
        self, engine_service, claimed_order, other_driver_id, location
    ) -> None:
        order = await claimed_order()

        with pytest.raises(UnauthorizedActorError):
            await engine_service.transition(order.id, other_driver_id, "teleported", location)

    async def test_cancelled_as_string_routes_to_cancel(
        self, engine_service, claimed_order, driver_id
    ) -> None:
        order = await claimed_order()

        cancelled = await engine_service.transition(order.id, driver_id, "CANCELLED")

        assert cancelled.status == OrderStatus.CANCELLED


# ============================================================================
# Stale State Tests
# ============================================================================


class TestStaleState:
    """Replays and lost races are reported, never applied twice."""

    async def test_replayed_transition_is_stale(
        self, engine_service, verify_session, dispatcher, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()
        await engine_service.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, location)

        with pytest.raises(StaleStateError):
            await engine_service.transition(
                order.id, driver_id, OrderStatus.IN_TRANSIT, {"lat": 9.0, "lng": 9.0}
            )

        stored = await OrderRepository(verify_session).get_order_by_id(order.id)
        assert stored.status == OrderStatus.IN_TRANSIT
        assert stored.driver_location == location
        assert len(dispatcher.events) == 1

    async def test_lost_race_after_read_is_stale(
        self, session, engine_service, verify_session, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()
        stale_copy = await OrderRepository(session).get_order_by_id(order.id)

        # another request moves the order on between our read and our write
        other = StatusTransitionEngine(
            verify_session, commission_rates=StaticCommissionRateProvider(20)
        )
        await other.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, location)

        with patch.object(
            engine_service.repository,
            "get_order_by_id",
            AsyncMock(return_value=stale_copy),
        ):
            with pytest.raises(StaleStateError):
                await engine_service.transition(
                    order.id, driver_id, OrderStatus.IN_TRANSIT, location
                )

    async def test_concurrent_identical_requests_apply_once(
        self, session_factory, verify_session, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()

        async def advance():
            async with session_factory() as session:
                engine = StatusTransitionEngine(
                    session, commission_rates=StaticCommissionRateProvider(20)
                )
                try:
                    await engine.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, location)
                    return "applied"
                except StaleStateError:
                    return "stale"

        results = await asyncio.gather(advance(), advance())

        assert sorted(results) == ["applied", "stale"]
        history = await OrderRepository(verify_session).get_status_history(order.id)
        assert [h.to_status for h in history] == [OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT]


# ============================================================================
# Completion Tests
# ============================================================================


class TestCompletion:
    """Completion snapshots the rate and writes the split."""

    async def test_completion_writes_split_and_ledger(
        self, engine_service, verify_session, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order(price=Decimal("100.00"))

        await drive_to(
            engine_service, order.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING, OrderStatus.COMPLETED,
        )

        repository = OrderRepository(verify_session)
        stored = await repository.get_order_by_id(order.id)
        assert stored.status == OrderStatus.COMPLETED
        assert stored.commission_rate == Decimal("20")
        assert stored.platform_commission == Decimal("20.00")
        assert stored.driver_payout == Decimal("80.00")
        assert stored.actual_delivery_time is not None

        entries = {t.transaction_type: t.amount for t in await repository.get_transactions(order.id)}
        assert entries == {
            TransactionType.DRIVER_PAYOUT: Decimal("80.00"),
            TransactionType.PLATFORM_FEE: Decimal("20.00"),
        }

    async def test_split_adds_up_for_awkward_prices(
        self, engine_service, verify_session, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order(price=Decimal("19.99"))

        await drive_to(
            engine_service, order.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING, OrderStatus.COMPLETED,
        )

        stored = await OrderRepository(verify_session).get_order_by_id(order.id)
        assert stored.driver_payout + stored.platform_commission == Decimal("19.99")

    async def test_stored_rate_reproduces_stored_split(
        self, session, verify_session, dispatcher, claimed_order, driver_id, location
    ) -> None:
        engine = StatusTransitionEngine(
            session,
            commission_rates=StaticCommissionRateProvider("12.345"),
            dispatcher=dispatcher,
        )
        order = await claimed_order(price=Decimal("1000.00"))

        await drive_to(
            engine, order.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING, OrderStatus.COMPLETED,
        )

        stored = await OrderRepository(verify_session).get_order_by_id(order.id)
        recomputed = compute_split(stored.price, stored.commission_rate)
        assert stored.commission_rate == Decimal("12.35")
        assert stored.platform_commission == recomputed.platform_commission
        assert stored.driver_payout == recomputed.driver_payout

    async def test_rate_is_read_at_completion_and_snapshotted(
        self, session, session_factory, verify_session, dispatcher, claimed_order, driver_id, location
    ) -> None:
        engine = StatusTransitionEngine(session, dispatcher=dispatcher)
        first = await claimed_order()
        second = await claimed_order()

        async with session_factory() as admin_session:
            await DatabaseCommissionRateProvider(admin_session).set_rate(10)
            await admin_session.commit()

        await drive_to(
            engine, first.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING, OrderStatus.COMPLETED,
        )

        async with session_factory() as admin_session:
            await DatabaseCommissionRateProvider(admin_session).set_rate(30)
            await admin_session.commit()

        await drive_to(
            engine, second.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING, OrderStatus.COMPLETED,
        )

        repository = OrderRepository(verify_session)
        first_stored = await repository.get_order_by_id(first.id)
        second_stored = await repository.get_order_by_id(second.id)
        assert first_stored.commission_rate == Decimal("10")
        assert first_stored.driver_payout == Decimal("90.00")
        assert second_stored.commission_rate == Decimal("30")
        assert second_stored.driver_payout == Decimal("70.00")

    async def test_completed_order_refuses_further_transitions(
        self, engine_service, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()
        await drive_to(
            engine_service, order.id, driver_id, location,
            OrderStatus.IN_TRANSIT, OrderStatus.APPROACHING, OrderStatus.COMPLETED,
        )

        with pytest.raises(StaleStateError):
            await engine_service.transition(order.id, driver_id, OrderStatus.COMPLETED, location)
        with pytest.raises(IllegalTransitionError):
            await engine_service.cancel(order.id, driver_id)


# ============================================================================
# Cancellation Tests
# ============================================================================


class TestCancel:
    """Test the cancellation edge."""

    async def test_customer_cancels_available_order(
        self, engine_service, verify_session, dispatcher, make_order, customer_id
    ) -> None:
        order = await make_order()

        cancelled = await engine_service.cancel(order.id, customer_id, reason="changed my mind")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.driver_id is None
        assert cancelled.cancelled_by == customer_id
        assert cancelled.cancellation_reason == "changed my mind"
        assert dispatcher.events[0].new_status == OrderStatus.CANCELLED
        assert dispatcher.events[0].driver_id is None

    async def test_driver_cancels_picked_up_order_without_location(
        self, engine_service, claimed_order, driver_id
    ) -> None:
        order = await claimed_order()

        cancelled = await engine_service.cancel(order.id, driver_id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.driver_id == driver_id

    async def test_transition_to_cancelled_needs_no_location(
        self, engine_service, claimed_order, driver_id
    ) -> None:
        order = await claimed_order()

        cancelled = await engine_service.transition(order.id, driver_id, "cancelled", None)

        assert cancelled.status == OrderStatus.CANCELLED

    async def test_admin_can_cancel(self, engine_service, claimed_order) -> None:
        order = await claimed_order()

        cancelled = await engine_service.cancel(order.id, uuid.uuid4(), is_admin=True)

        assert cancelled.status == OrderStatus.CANCELLED

    async def test_stranger_cannot_cancel(self, engine_service, make_order) -> None:
        order = await make_order()

        with pytest.raises(UnauthorizedActorError):
            await engine_service.cancel(order.id, uuid.uuid4())

    async def test_other_driver_cannot_cancel(
        self, engine_service, claimed_order, other_driver_id
    ) -> None:
        order = await claimed_order()

        with pytest.raises(UnauthorizedActorError):
            await engine_service.cancel(order.id, other_driver_id)

    async def test_order_in_transit_cannot_be_cancelled(
        self, engine_service, claimed_order, driver_id, customer_id, location
    ) -> None:
        order = await claimed_order()
        await engine_service.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, location)

        with pytest.raises(IllegalTransitionError):
            await engine_service.cancel(order.id, customer_id)

    async def test_cancelling_twice_is_stale(self, engine_service, make_order, customer_id) -> None:
        order = await make_order()
        await engine_service.cancel(order.id, customer_id)

        with pytest.raises(StaleStateError):
            await engine_service.cancel(order.id, customer_id)

    async def test_cancelled_order_refuses_forward_transitions(
        self, engine_service, claimed_order, driver_id, location
    ) -> None:
        order = await claimed_order()
        await engine_service.cancel(order.id, driver_id)

        with pytest.raises(StaleStateError):
            await engine_service.transition(order.id, driver_id, OrderStatus.IN_TRANSIT, location)


# ============================================================================
# End-to-end Scenario
# ============================================================================


class TestDeliveryScenario:
    """Two drivers race for one order, the winner delivers it."""

    async def test_race_then_delivery(
        self, session_factory, verify_session, dispatcher, make_order,
        driver_id, other_driver_id, location,
    ) -> None:
        order = await make_order(price=Decimal("100"))

        async def claim(claiming_driver):
            async with session_factory() as session:
                return await AssignmentService(session).accept(
                    order.id, claiming_driver, location
                )

        first, second = await asyncio.gather(claim(driver_id), claim(other_driver_id))
        assert sorted([first.accepted, second.accepted]) == [False, True]
        winner = driver_id if first.accepted else other_driver_id
        loser = other_driver_id if first.accepted else driver_id

        async with session_factory() as session:
            engine = StatusTransitionEngine(
                session,
                commission_rates=StaticCommissionRateProvider(20),
                dispatcher=dispatcher,
            )
            await engine.transition(order.id, winner, OrderStatus.IN_TRANSIT, location)

            with pytest.raises(UnauthorizedActorError):
                await engine.transition(order.id, loser, OrderStatus.APPROACHING, location)

            await engine.transition(order.id, winner, OrderStatus.APPROACHING, location)
            await engine.transition(order.id, winner, OrderStatus.COMPLETED, location)

        stored = await OrderRepository(verify_session).get_order_by_id(order.id)
        assert stored.status == OrderStatus.COMPLETED
        assert stored.driver_id == winner
        assert stored.driver_payout == Decimal("80.00")
        assert stored.platform_commission == Decimal("20.00")
        assert [e.new_status for e in dispatcher.events] == [
            OrderStatus.IN_TRANSIT,
            OrderStatus.APPROACHING,
            OrderStatus.COMPLETED,
        ]
