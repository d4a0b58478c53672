"""Tests for the daily round-robin reset."""

import asyncio
import random
from datetime import datetime, time, timedelta, timezone

import pytest

from orderflow.models import ScheduledJob
from orderflow.services.scheduler import DailyWindow, ResetScheduler, SchedulerState

IST_WINDOW = DailyWindow(start=time(5, 0), minutes=60, tz_name="Asia/Kolkata")


class TestDailyWindow:

    def test_slot_is_inside_window(self):
        rng = random.Random(1)
        for _ in range(200):
            assert 0 <= IST_WINDOW.pick_slot(rng) < 3600

    def test_same_seed_same_slot(self):
        assert IST_WINDOW.pick_slot(random.Random(42)) == IST_WINDOW.pick_slot(random.Random(42))

    def test_slot_time(self):
        assert IST_WINDOW.slot_time(1800) == time(5, 30)
        assert IST_WINDOW.slot_time(3599) == time(5, 59, 59)

    def test_next_run_later_same_day(self):
        # 04:30 IST on the 20th; 05:30 IST is 00:00 UTC
        after = datetime(2026, 10, 19, 23, 0, tzinfo=timezone.utc)
        assert IST_WINDOW.next_run(1800, after) == datetime(2026, 10, 20, 0, 0, tzinfo=timezone.utc)

    def test_next_run_is_strictly_after(self):
        after = datetime(2026, 10, 20, 0, 0, tzinfo=timezone.utc)
        assert IST_WINDOW.next_run(1800, after) == datetime(2026, 10, 21, 0, 0, tzinfo=timezone.utc)

    def test_next_run_accepts_naive_utc(self):
        after = datetime(2026, 10, 20, 6, 0)
        assert IST_WINDOW.next_run(0, after) == datetime(2026, 10, 20, 23, 30, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def noop_reset(db) -> int:
    return 0


class TestResetScheduler:

    @pytest.mark.asyncio
    async def test_load_job_creates_row(self, session_maker):
        scheduler = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=3)

        job = await scheduler.load_job()

        assert job.name == "round_robin_reset"
        assert 0 <= scheduler.slot_seconds < 3600
        assert scheduler.next_run_at > datetime.now(timezone.utc)
        assert scheduler.next_run_at - datetime.now(timezone.utc) <= timedelta(days=1)

    @pytest.mark.asyncio
    async def test_slot_survives_restart(self, session_maker):
        first = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=3)
        await first.load_job()

        restarted = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=99)
        await restarted.load_job()

        assert restarted.slot_seconds == first.slot_seconds

    @pytest.mark.asyncio
    async def test_changed_window_redraws_slot(self, session_maker):
        await ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=3).load_job()

        evening = DailyWindow(start=time(22, 0), minutes=30, tz_name="Asia/Kolkata")
        scheduler = ResetScheduler(session_maker, evening, reset=noop_reset, seed=3)
        job = await scheduler.load_job()

        assert job.window_start == "22:00"
        assert 0 <= scheduler.slot_seconds < 1800

    @pytest.mark.asyncio
    async def test_run_once_clears_pointers(self, scheduler, service, db_session, make_staff, make_order):
        a = await make_staff("A")
        await make_staff("B")
        await service.assign(db_session, (await make_order()).id)
        await scheduler.load_job()

        cleared = await scheduler.run_once("manual")

        assert cleared == 1
        assert scheduler.last_status == "success"
        assert scheduler.run_count == 1
        assert scheduler.state == SchedulerState.IDLE
        result = await service.assign(db_session, (await make_order()).id)
        assert result.staff_id == a.id

        job = await db_session.get(ScheduledJob, "round_robin_reset", populate_existing=True)
        assert job.run_count == 1
        assert job.last_status == "success"

    @pytest.mark.asyncio
    async def test_failed_run_is_recorded_not_raised(self, session_maker, db_session):
        async def broken_reset(db):
            raise RuntimeError("database unreachable")

        scheduler = ResetScheduler(session_maker, IST_WINDOW, reset=broken_reset, seed=1)
        await scheduler.load_job()
        next_run = scheduler.next_run_at

        assert await scheduler.run_once() is None

        assert scheduler.state == SchedulerState.IDLE
        assert scheduler.last_status == "failure"
        assert "database unreachable" in scheduler.last_error
        assert scheduler.next_run_at >= next_run
        job = await db_session.get(ScheduledJob, "round_robin_reset", populate_existing=True)
        assert job.last_status == "failure"

    @pytest.mark.asyncio
    async def test_loop_fires_when_due(self, session_maker):
        clock = Clock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
        runs = []

        async def counting_reset(db):
            runs.append(clock())
            return 0

        scheduler = ResetScheduler(
            session_maker, IST_WINDOW, reset=counting_reset, seed=5, clock=clock, poll_interval=0.01,
        )
        await scheduler.start()
        assert scheduler.running

        clock.now = clock.now + timedelta(days=2)
        for _ in range(100):
            if runs:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert len(runs) == 1
        assert not scheduler.running
        assert scheduler.next_run_at > clock.now

    @pytest.mark.asyncio
    async def test_stop_before_first_run(self, session_maker):
        scheduler = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=5)
        await scheduler.start()

        await scheduler.stop()

        assert scheduler.run_count == 0
        status = scheduler.status()
        assert status["state"] == "idle"
        assert status["running"] is False
        assert status["slot_time"].startswith("05:")


class TestSharedSlot:
    """Several processes running the loop against one job row."""

    @pytest.mark.asyncio
    async def test_only_one_process_claims_a_due_slot(self, session_maker):
        clock = Clock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
        first = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=5, clock=clock)
        second = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=8, clock=clock)
        await first.load_job()
        await second.load_job()
        assert first.next_run_at == second.next_run_at

        clock.now = first.next_run_at + timedelta(seconds=1)

        assert await first.claim_due_run() is True
        assert await second.claim_due_run() is False
        assert second.next_run_at == first.next_run_at
        assert first.next_run_at - clock.now < timedelta(days=1)

    @pytest.mark.asyncio
    async def test_slot_not_due_is_not_claimed(self, session_maker):
        clock = Clock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
        scheduler = ResetScheduler(session_maker, IST_WINDOW, reset=noop_reset, seed=5, clock=clock)
        await scheduler.load_job()
        next_run = scheduler.next_run_at

        assert await scheduler.claim_due_run() is False
        assert scheduler.next_run_at == next_run

    @pytest.mark.asyncio
    async def test_two_loops_reset_once(self, session_maker):
        clock = Clock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
        runs = []

        async def counting_reset(db):
            runs.append(clock())
            return 0

        loops = [
            ResetScheduler(session_maker, IST_WINDOW, reset=counting_reset, seed=seed, clock=clock, poll_interval=0.01)
            for seed in (5, 6)
        ]
        for loop in loops:
            await loop.start()

        clock.now = loops[0].next_run_at + timedelta(seconds=1)
        for _ in range(100):
            if runs and all(loop.next_run_at > clock.now for loop in loops):
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        for loop in loops:
            await loop.stop()

        assert len(runs) == 1
        assert sum(loop.run_count for loop in loops) == 1
