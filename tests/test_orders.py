"""Tests for order lifecycle: placement, status transitions, acknowledgment."""

import pytest

from orderflow.core.exceptions import (
    InvalidStatusTransition,
    OrderInTerminalState,
    OrderNotAssignedToStaff,
    OrderNotFound,
    StaffHasActiveOrders,
)
from orderflow.models import Order, OrderStatus, Staff


class TestPlacement:

    @pytest.mark.asyncio
    async def test_create_assigns_automatically(self, order_service, db_session, make_staff):
        staff = await make_staff()

        placement = await order_service.create_order(db_session, "h1", "b1", table_number="T9")

        assert placement.assigned
        assert placement.order.staff_id == staff.id
        assert placement.order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_create_without_staff_keeps_order(self, order_service, db_session):
        placement = await order_service.create_order(db_session, "h1", "nobody-here")

        assert not placement.assigned
        assert "No staff available" in placement.assignment_error
        assert placement.order.id is not None
        assert placement.order.staff_id is None

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_service, db_session):
        with pytest.raises(OrderNotFound):
            await order_service.get_order(db_session, 999)

    @pytest.mark.asyncio
    async def test_list_filters_by_staff(self, order_service, db_session, make_staff):
        a = await make_staff("A")
        await make_staff("B")
        for _ in range(4):
            await order_service.create_order(db_session, "h1", "b1")

        total, orders = await order_service.list_orders(db_session, staff_id=a.id)

        assert total == 2
        assert all(o.staff_id == a.id for o in orders)


class TestStatusTransitions:

    @pytest.mark.asyncio
    async def test_forward_path_to_completion(self, order_service, db_session, make_staff, refetch):
        staff = await make_staff()
        placement = await order_service.create_order(db_session, "h1", "b1")
        order_id = placement.order.id

        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED):
            order = await order_service.update_status(db_session, order_id, status)
            assert order.status == status

        order = await order_service.update_status(db_session, order_id, OrderStatus.COMPLETED)

        assert order.status == OrderStatus.COMPLETED
        assert order.completed_at is not None
        staff = await refetch(Staff, staff.id)
        assert staff.active_order_count == 0
        assert staff.completed_orders == 1

    @pytest.mark.asyncio
    async def test_cancel_releases_capacity(self, order_service, db_session, make_staff, refetch):
        staff = await make_staff()
        staff_id = staff.id
        placement = await order_service.create_order(db_session, "h1", "b1")

        order = await order_service.update_status(db_session, placement.order.id, OrderStatus.CANCELLED)

        assert order.cancelled_at is not None
        staff = await refetch(Staff, staff_id)
        assert staff.active_order_count == 0
        assert staff.completed_orders == 0

    @pytest.mark.asyncio
    async def test_skipping_steps_is_refused(self, order_service, db_session, make_order):
        order = await make_order()

        with pytest.raises(InvalidStatusTransition):
            await order_service.update_status(db_session, order.id, OrderStatus.SERVED)

    @pytest.mark.asyncio
    async def test_pending_cannot_complete(self, order_service, db_session, make_staff, refetch):
        staff = await make_staff()
        staff_id = staff.id
        placement = await order_service.create_order(db_session, "h1", "b1")
        order_id = placement.order.id

        with pytest.raises(InvalidStatusTransition):
            await order_service.update_status(db_session, order_id, OrderStatus.COMPLETED)

        assert (await refetch(Staff, staff_id)).active_order_count == 1

    @pytest.mark.asyncio
    async def test_terminal_orders_stay_terminal(self, order_service, db_session, make_order):
        order = await make_order()
        order_id = order.id
        await order_service.update_status(db_session, order_id, OrderStatus.CANCELLED)

        with pytest.raises(OrderInTerminalState):
            await order_service.update_status(db_session, order_id, OrderStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_freed_capacity_goes_to_waiting_order(self, order_service, db_session, make_staff, refetch):
        staff = await make_staff(capacity=1)
        staff_id = staff.id
        first = await order_service.create_order(db_session, "h1", "b1")
        first_id = first.order.id
        blocked = await order_service.create_order(db_session, "h1", "b1")
        blocked_id = blocked.order.id
        assert not blocked.assigned
        assert blocked.queue_position == 1

        await order_service.update_status(db_session, first_id, OrderStatus.CANCELLED)

        waiting = await refetch(Order, blocked_id)
        assert waiting.staff_id == staff_id
        assert await order_service.queue.position(db_session, blocked_id) is None


class TestAssigneeSignals:

    @pytest.mark.asyncio
    async def test_acknowledge_by_assignee(self, order_service, transport, fanout, db_session, make_staff):
        staff = await make_staff(manager_id="m5")
        placement = await order_service.create_order(db_session, "h1", "b1")
        await fanout.drain()
        transport.clear()

        order = await order_service.acknowledge(db_session, placement.order.id, staff.id)
        await fanout.drain()

        assert order.acknowledged_by == staff.id
        assert order.acknowledged_at is not None
        assert [m.event for m in transport.published] == ["order:acknowledged"]
        assert transport.published[0].channel == "manager_m5"

    @pytest.mark.asyncio
    async def test_acknowledge_by_someone_else(self, order_service, db_session, make_staff):
        await make_staff("A")
        b = await make_staff("B")
        placement = await order_service.create_order(db_session, "h1", "b1")

        with pytest.raises(OrderNotAssignedToStaff):
            await order_service.acknowledge(db_session, placement.order.id, b.id)

    @pytest.mark.asyncio
    async def test_mark_viewed(self, order_service, db_session, make_staff):
        staff = await make_staff()
        placement = await order_service.create_order(db_session, "h1", "b1")

        order = await order_service.mark_viewed(db_session, placement.order.id, staff.id)

        assert order.viewed_at is not None


class TestStaffRemoval:

    @pytest.mark.asyncio
    async def test_staff_with_orders_cannot_be_removed(self, service, order_service, db_session, make_staff, refetch):
        staff = await make_staff()
        staff_id = staff.id
        await order_service.create_order(db_session, "h1", "b1")

        with pytest.raises(StaffHasActiveOrders):
            await service.directory.remove_staff(db_session, staff_id)

        assert await refetch(Staff, staff_id) is not None

    @pytest.mark.asyncio
    async def test_idle_staff_can_be_removed(self, service, db_session, make_staff, refetch):
        staff = await make_staff()
        staff_id = staff.id

        await service.directory.remove_staff(db_session, staff_id)

        assert await refetch(Staff, staff_id) is None

    @pytest.mark.asyncio
    async def test_history_lists_assignments(self, order_service, db_session, make_staff):
        staff = await make_staff()
        placement = await order_service.create_order(db_session, "h1", "b1")

        history = await order_service.history(db_session, placement.order.id)

        assert [h.staff_id for h in history] == [staff.id]
        assert isinstance(placement.order, Order)
