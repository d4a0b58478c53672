"""Tests for the branch waiting queue and the startup recovery pass."""

import pytest
from sqlalchemy import update

from orderflow.core.exceptions import NoEligibleStaff
from orderflow.models import Order, OrderPriority, OrderStatus, QueuedOrder, Staff


async def complete(order_service, db, order_id):
    for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED, OrderStatus.COMPLETED):
        await order_service.update_status(db, order_id, status)


class TestQueueing:

    @pytest.mark.asyncio
    async def test_full_branch_queues_in_arrival_order(self, order_service, db_session, make_staff):
        await make_staff(capacity=1)
        await order_service.create_order(db_session, "h1", "b1")

        second = await order_service.create_order(db_session, "h1", "b1")
        second_id = second.order.id
        third = await order_service.create_order(db_session, "h1", "b1")

        assert second.queued and second.queue_position == 1
        assert third.queue_position == 2
        assert second.assignment_error

        line = await order_service.queue.list_branch(db_session, "h1", "b1")
        assert [e.order_id for e in line] == [second_id, third.order.id]

    @pytest.mark.asyncio
    async def test_queue_is_per_branch(self, order_service, db_session):
        await order_service.create_order(db_session, "h1", "b1")
        other = await order_service.create_order(db_session, "h1", "b2")

        assert other.queue_position == 1
        assert await order_service.queue.scopes(db_session) == [("h1", "b1"), ("h1", "b2")]

    @pytest.mark.asyncio
    async def test_urgent_orders_wait_ahead_of_normal(self, order_service, db_session, make_staff):
        await make_staff(capacity=1)
        await order_service.create_order(db_session, "h1", "b1")
        normal = await order_service.create_order(db_session, "h1", "b1")
        normal_id = normal.order.id
        urgent = await order_service.create_order(db_session, "h1", "b1", priority=OrderPriority.URGENT)

        assert urgent.queue_position == 1

        line = await order_service.queue.list_branch(db_session, "h1", "b1")
        assert [(e.order_id, e.priority) for e in line] == [
            (urgent.order.id, OrderPriority.URGENT),
            (normal_id, OrderPriority.NORMAL),
        ]

    @pytest.mark.asyncio
    async def test_explicit_assign_without_capacity_keeps_order_waiting(self, order_service, db_session, make_order):
        order = await make_order()
        order_id = order.id

        with pytest.raises(NoEligibleStaff):
            await order_service.assign(db_session, order_id)

        assert await order_service.queue.position(db_session, order_id) == 1


class TestDraining:

    @pytest.mark.asyncio
    async def test_completion_hands_slot_to_queue_head(self, order_service, db_session, make_staff, refetch):
        staff = await make_staff(capacity=1)
        staff_id = staff.id
        first = await order_service.create_order(db_session, "h1", "b1")
        first_id = first.order.id
        waiting = await order_service.create_order(db_session, "h1", "b1")
        waiting_id = waiting.order.id
        behind = await order_service.create_order(db_session, "h1", "b1")
        behind_id = behind.order.id

        await complete(order_service, db_session, first_id)

        assert (await refetch(Order, waiting_id)).staff_id == staff_id
        assert (await refetch(Order, behind_id)).staff_id is None
        assert await order_service.queue.position(db_session, behind_id) == 1
        assert (await refetch(Staff, staff_id)).active_order_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiting_order_leaves_queue(self, order_service, db_session, make_staff):
        await make_staff(capacity=1)
        await order_service.create_order(db_session, "h1", "b1")
        waiting = await order_service.create_order(db_session, "h1", "b1")
        waiting_id = waiting.order.id
        behind = await order_service.create_order(db_session, "h1", "b1")
        behind_id = behind.order.id

        order = await order_service.update_status(db_session, waiting_id, OrderStatus.CANCELLED)

        assert order.status == OrderStatus.CANCELLED
        assert order.staff_id is None
        assert await order_service.queue.position(db_session, waiting_id) is None
        assert await order_service.queue.position(db_session, behind_id) == 1

    @pytest.mark.asyncio
    async def test_manual_assign_removes_queue_entry(self, order_service, db_session, make_staff):
        await make_staff("A", capacity=1)
        await order_service.create_order(db_session, "h1", "b1")
        waiting = await order_service.create_order(db_session, "h1", "b1")
        waiting_id = waiting.order.id
        extra = await make_staff("B", capacity=1)
        extra_id = extra.id

        result = await order_service.manual_assign(db_session, waiting_id, extra_id, actor="mgr-1")

        assert result.staff_id == extra_id
        assert await order_service.queue.list_branch(db_session, "h1", "b1") == []

    @pytest.mark.asyncio
    async def test_stale_entry_is_dropped(self, order_service, service, db_session, make_staff, refetch):
        a = await make_staff("A", capacity=1)
        a_id = a.id
        first = await order_service.create_order(db_session, "h1", "b1")
        first_id = first.order.id
        waiting = await order_service.create_order(db_session, "h1", "b1")
        waiting_id = waiting.order.id
        behind = await order_service.create_order(db_session, "h1", "b1")
        behind_id = behind.order.id
        b = await make_staff("B", capacity=1)
        b_id = b.id

        # Assigned behind the queue's back
        await service.manual_assign(db_session, waiting_id, b_id)
        await order_service.update_status(db_session, first_id, OrderStatus.CANCELLED)

        assert (await refetch(Order, behind_id)).staff_id == a_id
        assert await order_service.queue.list_branch(db_session, "h1", "b1") == []

    @pytest.mark.asyncio
    async def test_drain_stops_when_branch_is_full(self, order_service, db_session, make_staff, make_order):
        for _ in range(3):
            order = await make_order()
            await order_service.queue.enqueue(db_session, order)
        await db_session.commit()
        await make_staff(capacity=2)

        assigned = await order_service.drain_queue(db_session, "h1", "b1")

        assert len(assigned) == 2
        assert len(await order_service.queue.list_branch(db_session, "h1", "b1")) == 1


class TestRecovery:

    @pytest.mark.asyncio
    async def test_recover_queues_orphans_and_repairs_counters(
        self, order_service, db_session, make_staff, make_order, refetch,
    ):
        orphans = [await make_order(), await make_order()]
        orphan_ids = [o.id for o in orphans]
        gone = await make_order()
        gone_id = gone.id
        await order_service.update_status(db_session, gone_id, OrderStatus.CANCELLED)
        db_session.add(QueuedOrder(order_id=gone_id, hotel_id="h1", branch_id="b1", priority_value=0))

        staff = await make_staff(capacity=5)
        staff_id = staff.id
        await db_session.execute(update(Staff).where(Staff.id == staff_id).values(active_order_count=3))
        await db_session.commit()

        report = await order_service.recover(db_session)

        assert report.queued == 2
        assert report.dropped == 1
        assert report.repaired == {staff_id: (3, 0)}
        assert [r.order_id for r in report.assigned] == orphan_ids
        assert (await refetch(Staff, staff_id)).active_order_count == 2
        assert await order_service.queue.scopes(db_session) == []

    @pytest.mark.asyncio
    async def test_recover_leaves_orders_waiting_without_staff(self, order_service, db_session, make_order):
        order = await make_order(branch_id="b9")
        order_id = order.id

        report = await order_service.recover(db_session)
        again = await order_service.recover(db_session)

        assert report.queued == 1
        assert again.queued == 0
        assert report.assigned == []
        assert await order_service.queue.position(db_session, order_id) == 1
