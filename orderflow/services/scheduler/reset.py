"""
Round-Robin Reset Scheduler

Clears every round-robin pointer once a day at a slot drawn uniformly at
random inside a configured local-time window (05:00-06:00 Asia/Kolkata by
default). The drawn slot is stored in the ``scheduled_jobs`` table, so a
restart keeps the same time of day unless the window itself changes.

States:
    IDLE -> RESETTING -> IDLE

A failed reset is logged and recorded on the job row; the loop carries on
and tries again at the next slot.

Several API processes may run the loop against one database. The job
row's ``next_run_at`` doubles as a lease: when a slot comes due, only the
process whose conditional UPDATE moves it forward runs the reset, and the
others adopt the new value and go back to waiting.
"""

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.exceptions import ResetJobFailure
from orderflow.models import ScheduledJob, as_utc, utcnow

logger = logging.getLogger(__name__)

RESET_JOB_NAME = "round_robin_reset"

ResetCallable = Callable[[AsyncSession], Awaitable[int]]


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    RESETTING = "resetting"


@dataclass(frozen=True)
class DailyWindow:
    """A daily local-time window, e.g. 05:00 for 60 minutes in Asia/Kolkata."""
    start: time
    minutes: int
    tz_name: str

    @classmethod
    def from_settings(cls, settings) -> "DailyWindow":
        return cls(
            start=settings.reset_window_start_time,
            minutes=settings.reset_window_minutes,
            tz_name=settings.reset_timezone,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.tz_name)

    @property
    def start_label(self) -> str:
        return self.start.strftime("%H:%M")

    def pick_slot(self, rng: Optional[random.Random] = None) -> int:
        """Seconds into the window, uniform over [0, minutes * 60)."""
        rng = rng or random.Random()
        return rng.randrange(self.minutes * 60)

    def slot_time(self, slot_seconds: int) -> time:
        """Local wall-clock time of a slot."""
        anchor = datetime.combine(datetime(2000, 1, 1).date(), self.start)
        return (anchor + timedelta(seconds=slot_seconds)).time()

    def next_run(self, slot_seconds: int, after: datetime) -> datetime:
        """First occurrence of the slot strictly after ``after`` (returned in UTC)."""
        tz = self.tz
        local_after = as_utc(after).astimezone(tz)

        for day_offset in (-1, 0, 1, 2):
            day = local_after.date() + timedelta(days=day_offset)
            candidate = datetime.combine(day, self.start, tzinfo=tz) + timedelta(seconds=slot_seconds)
            if candidate > local_after:
                return candidate.astimezone(timezone.utc)

        # Unreachable: a slot occurs every day
        raise ValueError(f"No run found after {after}")

    def matches(self, job: ScheduledJob) -> bool:
        return (
            job.window_start == self.start_label
            and job.window_minutes == self.minutes
            and job.timezone == self.tz_name
        )


class ResetScheduler:
    """In-process daily reset loop with persisted slot bookkeeping."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        window: DailyWindow,
        reset: ResetCallable,
        seed: Optional[int] = None,
        job_name: str = RESET_JOB_NAME,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 60.0,
    ):
        self.session_maker = session_maker
        self.window = window
        self._reset = reset
        self._rng = random.Random(seed)
        self.job_name = job_name
        self._clock = clock
        self.poll_interval = poll_interval

        self.state = SchedulerState.IDLE
        self.slot_seconds: Optional[int] = None
        self.next_run_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.last_status: Optional[str] = None
        self.last_error: Optional[str] = None
        self.run_count = 0

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================

    async def load_job(self) -> ScheduledJob:
        """
        Load the job row, creating it (or re-drawing the slot when the window
        config changed). Missed runs are not replayed; the next run is always
        computed from now.
        """
        now = self._clock()
        async with self.session_maker() as db:
            job = await db.get(ScheduledJob, self.job_name)

            if job is None:
                job = ScheduledJob(
                    name=self.job_name,
                    slot_seconds=self.window.pick_slot(self._rng),
                    window_start=self.window.start_label,
                    window_minutes=self.window.minutes,
                    timezone=self.window.tz_name,
                    run_count=0,
                )
                db.add(job)
                logger.info(f"Reset job created, slot {self.window.slot_time(job.slot_seconds)} {self.window.tz_name}")
            elif not self.window.matches(job):
                job.slot_seconds = self.window.pick_slot(self._rng)
                job.window_start = self.window.start_label
                job.window_minutes = self.window.minutes
                job.timezone = self.window.tz_name
                logger.info(
                    f"Reset window changed, new slot {self.window.slot_time(job.slot_seconds)} {self.window.tz_name}"
                )

            job.next_run_at = self.window.next_run(job.slot_seconds, now)
            await db.commit()

            self.slot_seconds = job.slot_seconds
            self.next_run_at = as_utc(job.next_run_at)
            self.last_run_at = as_utc(job.last_run_at)
            self.last_status = job.last_status
            self.last_error = job.last_error
            self.run_count = job.run_count
            return job

    async def _record_run(self, started_at: datetime, status: str, error: Optional[str]) -> None:
        self.last_run_at = started_at
        self.last_status = status
        self.last_error = error
        self.run_count += 1
        if self.slot_seconds is not None:
            self.next_run_at = self.window.next_run(self.slot_seconds, self._clock())

        try:
            async with self.session_maker() as db:
                job = await db.get(ScheduledJob, self.job_name)
                if job is None:
                    return
                job.last_run_at = started_at
                job.last_status = status
                job.last_error = error
                job.run_count = (job.run_count or 0) + 1
                job.next_run_at = self.next_run_at
                await db.commit()
        except Exception as e:
            logger.error(f"Could not record reset run: {e}")

    async def claim_due_run(self) -> bool:
        """
        Try to take the slot that is due now.

        Moves the row's ``next_run_at`` to the following slot only if it is
        still due, so across processes exactly one caller gets True. The
        losers pick up the stored value as their next run.
        """
        now = self._clock()
        following = self.window.next_run(self.slot_seconds, now)
        claimed = False
        stored: Optional[datetime] = None

        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    update(ScheduledJob)
                    .where(ScheduledJob.name == self.job_name, ScheduledJob.next_run_at <= now)
                    .values(next_run_at=following)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                claimed = result.rowcount == 1
                if not claimed:
                    stored = await db.scalar(
                        select(ScheduledJob.next_run_at).where(ScheduledJob.name == self.job_name)
                    )
        except Exception as e:
            logger.error(f"Could not claim reset run: {e}")

        stored = as_utc(stored)
        if claimed or stored is None or stored <= now:
            self.next_run_at = following
        else:
            self.next_run_at = stored

        if not claimed:
            logger.info(f"Reset slot taken by another process; next run {self.next_run_at.isoformat()}")
        return claimed

    # =========================================================================
    # RUNNING
    # =========================================================================

    async def run_once(self, reason: str = "scheduled") -> Optional[int]:
        """
        Clear all pointers now. Returns the number cleared, or None when the
        run failed or another run was already in progress.
        """
        if self.state == SchedulerState.RESETTING:
            logger.warning(f"Reset ({reason}) skipped: a reset is already running")
            return None

        self.state = SchedulerState.RESETTING
        started_at = self._clock()
        cleared: Optional[int] = None
        error: Optional[str] = None

        try:
            async with self.session_maker() as db:
                cleared = await self._reset(db)
        except Exception as e:
            failure = ResetJobFailure(f"Round-robin reset ({reason}) failed: {e}")
            logger.error(str(failure))
            error = str(e)
        finally:
            self.state = SchedulerState.IDLE

        await self._record_run(started_at, "failure" if error else "success", error)
        if error is None:
            logger.info(f"Round-robin reset ({reason}) cleared {cleared} pointer(s); next at {self.next_run_at}")
        return cleared

    async def _loop(self) -> None:
        while not self._stop.is_set():
            remaining = (self.next_run_at - self._clock()).total_seconds()
            if remaining <= 0:
                if await self.claim_due_run():
                    await self.run_once("scheduled")
                continue

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=min(remaining, self.poll_interval))
                break
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        await self.load_job()
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Reset scheduler started: daily at {self.window.slot_time(self.slot_seconds)} "
            f"{self.window.tz_name}, next {self.next_run_at.isoformat()}"
        )

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Reset scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        return {
            "name": self.job_name,
            "state": self.state.value,
            "running": self.running,
            "window_start": self.window.start_label,
            "window_minutes": self.window.minutes,
            "timezone": self.window.tz_name,
            "slot_seconds": self.slot_seconds,
            "slot_time": (
                self.window.slot_time(self.slot_seconds).strftime("%H:%M:%S")
                if self.slot_seconds is not None else None
            ),
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "run_count": self.run_count,
        }
