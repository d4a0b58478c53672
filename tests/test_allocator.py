"""Tests for round-robin allocation."""

import asyncio
from collections import Counter

import pytest

from orderflow.core.exceptions import NoEligibleStaff, OrderAlreadyAssigned
from orderflow.database import build_session_maker
from orderflow.models import (
    AssignmentHistory,
    AssignmentMethod,
    Order,
    RoundRobinPointer,
    Staff,
    StaffRole,
)
from orderflow.services.assignment import AssignmentService
from orderflow.services.assignment.allocator import RoundRobinAllocator
from orderflow.services.notifications.fanout import NotificationFanout
from orderflow.services.notifications.mock import MockNotificationTransport
from orderflow.services.notifications.websocket import ConnectionManager
from sqlalchemy import select


class TestStartIndex:
    """Where the circular scan begins."""

    def _staff(self, *ids):
        return [Staff(id=i) for i in ids]

    def test_no_pointer_starts_at_zero(self):
        assert RoundRobinAllocator.start_index(self._staff(1, 2, 3), None) == 0

    def test_continues_after_last_assignee(self):
        pointer = RoundRobinPointer(last_staff_id=2, last_index=1)
        assert RoundRobinAllocator.start_index(self._staff(1, 2, 3), pointer) == 2

    def test_wraps_after_last_position(self):
        pointer = RoundRobinPointer(last_staff_id=3, last_index=2)
        assert RoundRobinAllocator.start_index(self._staff(1, 2, 3), pointer) == 0

    def test_departed_assignee_hands_slot_to_successor(self):
        # Staff 2 sat at index 1 and left; staff 3 moved into that slot
        pointer = RoundRobinPointer(last_staff_id=2, last_index=1)
        assert RoundRobinAllocator.start_index(self._staff(1, 3), pointer) == 1


class TestAssign:
    """Automatic assignment through the service."""

    @pytest.mark.asyncio
    async def test_rotates_through_staff_in_order(self, service, db_session, make_staff, make_order):
        a = await make_staff("A")
        b = await make_staff("B")
        c = await make_staff("C")

        assigned = []
        for _ in range(4):
            order = await make_order()
            result = await service.assign(db_session, order.id)
            assigned.append(result.staff_id)

        assert assigned == [a.id, b.id, c.id, a.id]

    @pytest.mark.asyncio
    async def test_even_distribution(self, service, db_session, make_staff, make_order):
        staff = [await make_staff(f"W{i}") for i in range(4)]

        for _ in range(12):
            order = await make_order()
            await service.assign(db_session, order.id)

        loads = [(await db_session.get(Staff, s.id, populate_existing=True)).active_order_count for s in staff]
        assert loads == [3, 3, 3, 3]

    @pytest.mark.asyncio
    async def test_skips_full_staff(self, service, db_session, make_staff, make_order):
        # Two waiters with capacity 1: the third order finds nobody
        a = await make_staff("A", capacity=1)
        b = await make_staff("B", capacity=1)

        first = await service.assign(db_session, (await make_order()).id)
        second = await service.assign(db_session, (await make_order()).id)
        assert [first.staff_id, second.staff_id] == [a.id, b.id]

        third = await make_order()
        third_id = third.id
        with pytest.raises(NoEligibleStaff):
            await service.assign(db_session, third_id)

        order = await db_session.get(Order, third_id, populate_existing=True)
        assert order.staff_id is None
        assert order.assigned_at is None

    @pytest.mark.asyncio
    async def test_full_staff_member_is_passed_over(self, service, db_session, make_staff, make_order):
        a = await make_staff("A", capacity=1)
        b = await make_staff("B")

        await service.assign(db_session, (await make_order()).id)   # A (now full)
        await service.assign(db_session, (await make_order()).id)   # B
        result = await service.assign(db_session, (await make_order()).id)

        assert result.staff_id == b.id

    @pytest.mark.asyncio
    async def test_no_staff_in_branch(self, service, db_session, make_order):
        order = await make_order(branch_id="empty")
        with pytest.raises(NoEligibleStaff):
            await service.assign(db_session, order.id)

    @pytest.mark.asyncio
    async def test_only_assignable_roles_and_available_staff(self, service, db_session, make_staff, make_order):
        await make_staff("Chef", role=StaffRole.KITCHEN_STAFF)
        await make_staff("Off", is_available=False)
        waiter = await make_staff("On")

        for _ in range(3):
            result = await service.assign(db_session, (await make_order()).id)
            assert result.staff_id == waiter.id

    @pytest.mark.asyncio
    async def test_branches_rotate_independently(self, service, db_session, make_staff, make_order):
        b1_first = await make_staff("B1-A", branch_id="b1")
        await make_staff("B1-B", branch_id="b1")
        b2_first = await make_staff("B2-A", branch_id="b2")

        await service.assign(db_session, (await make_order(branch_id="b1")).id)
        result = await service.assign(db_session, (await make_order(branch_id="b2")).id)

        assert result.staff_id == b2_first.id
        pointer = await service.allocator.get_pointer(db_session, "h1", "b1")
        assert pointer.last_staff_id == b1_first.id

    @pytest.mark.asyncio
    async def test_records_history_and_method(self, service, db_session, make_staff, make_order):
        staff = await make_staff()
        order = await make_order()

        result = await service.assign(db_session, order.id)

        assert result.method == AssignmentMethod.ROUND_ROBIN
        assert result.rotation_index == 0
        order = await db_session.get(Order, order.id, populate_existing=True)
        assert order.staff_id == staff.id
        assert order.assignment_method == AssignmentMethod.ROUND_ROBIN
        history = (await db_session.execute(
            select(AssignmentHistory).where(AssignmentHistory.order_id == order.id)
        )).scalars().all()
        assert len(history) == 1
        assert history[0].staff_id == staff.id
        assert history[0].actor == "system"

    @pytest.mark.asyncio
    async def test_already_assigned_order_is_refused(self, service, db_session, make_staff, make_order):
        await make_staff()
        order = await make_order()
        order_id = order.id
        await service.assign(db_session, order_id)

        with pytest.raises(OrderAlreadyAssigned):
            await service.assign(db_session, order_id)

    @pytest.mark.asyncio
    async def test_pointer_reset_restarts_rotation(self, service, db_session, make_staff, make_order):
        a = await make_staff("A")
        await make_staff("B")
        await service.assign(db_session, (await make_order()).id)

        cleared = await service.reset_round_robin(db_session, "h1", "b1")
        result = await service.assign(db_session, (await make_order()).id)

        assert cleared == 1
        assert result.staff_id == a.id

    @pytest.mark.asyncio
    async def test_scoped_reset_leaves_other_branches(self, service, db_session, make_staff, make_order):
        await make_staff("A", branch_id="b1")
        await make_staff("B", branch_id="b2")
        await service.assign(db_session, (await make_order(branch_id="b1")).id)
        await service.assign(db_session, (await make_order(branch_id="b2")).id)

        assert await service.reset_round_robin(db_session, "h1", "b1") == 1

        remaining = await service.allocator.list_pointers(db_session)
        assert [p.scope_key for p in remaining] == ["h1:b2"]


class TestConcurrentAssign:
    """Simultaneous requests against one branch."""

    @pytest.mark.asyncio
    async def test_burst_never_exceeds_capacity(self, file_engine):
        session_maker = build_session_maker(file_engine)
        service = AssignmentService(
            NotificationFanout(MockNotificationTransport(connections=ConnectionManager())),
        )

        async with session_maker() as db:
            staff_ids = []
            for name in ("A", "B", "C"):
                staff = await service.directory.create_staff(db, name, "h1", "b1", max_orders_capacity=3)
                staff_ids.append(staff.id)
            order_ids = []
            for _ in range(12):
                order = Order(hotel_id="h1", branch_id="b1")
                db.add(order)
                await db.commit()
                order_ids.append(order.id)

        async def attempt(order_id):
            async with session_maker() as db:
                try:
                    return (await service.assign(db, order_id)).staff_id
                except NoEligibleStaff:
                    return None

        results = await asyncio.gather(*(attempt(oid) for oid in order_ids))
        await service.fanout.drain()

        assigned = Counter(r for r in results if r is not None)
        assert sum(assigned.values()) == 9
        assert results.count(None) == 3
        assert set(assigned.values()) == {3}

        async with session_maker() as db:
            for staff_id in staff_ids:
                staff = await db.get(Staff, staff_id)
                assert staff.active_order_count == 3
