"""
Reset Scheduler Factory

The daily round-robin reset runs either inside the API process
(RESET_RUNNER=inprocess), from Celery beat (RESET_RUNNER=celery) or not at
all (RESET_RUNNER=disabled). Both runners share the slot and run history
stored in the ``scheduled_jobs`` row.
"""

import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.config import get_settings
from orderflow.core.exceptions import ResetJobFailure
from orderflow.services.scheduler.reset import (
    RESET_JOB_NAME,
    DailyWindow,
    ResetCallable,
    ResetScheduler,
    SchedulerState,
)

logger = logging.getLogger(__name__)


async def reset_all_pointers(db: AsyncSession) -> int:
    """Global reset through the assignment engine."""
    from orderflow.services.assignment import get_assignment_service

    return await get_assignment_service().reset_round_robin(db)


async def perform_round_robin_reset(
    session_maker: async_sessionmaker[AsyncSession],
    hotel_id: Optional[str] = None,
    branch_id: Optional[str] = None,
) -> int:
    """One-shot scoped reset with its own session."""
    from orderflow.services.assignment import get_assignment_service

    async with session_maker() as db:
        return await get_assignment_service().reset_round_robin(db, hotel_id, branch_id)


def build_reset_scheduler(
    session_maker: async_sessionmaker[AsyncSession],
    reset: ResetCallable = reset_all_pointers,
) -> ResetScheduler:
    """Reset scheduler configured from settings."""
    settings = get_settings()
    return ResetScheduler(
        session_maker=session_maker,
        window=DailyWindow.from_settings(settings),
        reset=reset,
        seed=settings.reset_schedule_seed,
    )


async def load_reset_slot(session_maker: async_sessionmaker[AsyncSession]) -> int:
    """The persisted slot (seconds into the window), drawn once on first use."""
    scheduler = build_reset_scheduler(session_maker)
    await scheduler.load_job()
    return scheduler.slot_seconds


async def run_scheduled_reset(
    session_maker: async_sessionmaker[AsyncSession],
    reason: str = "celery",
    reset: ResetCallable = reset_all_pointers,
) -> int:
    """
    Run the daily job once and record it on the job row.

    Raises:
        ResetJobFailure: the reset failed (already recorded as a failure)
    """
    scheduler = build_reset_scheduler(session_maker, reset=reset)
    await scheduler.load_job()
    cleared = await scheduler.run_once(reason)
    if cleared is None:
        raise ResetJobFailure(f"Round-robin reset ({reason}) failed: {scheduler.last_error}")
    return cleared


@lru_cache()
def get_reset_scheduler() -> ResetScheduler:
    """Get the process-wide reset scheduler."""
    from orderflow.database import async_session_maker

    return build_reset_scheduler(async_session_maker)


__all__ = [
    "build_reset_scheduler",
    "get_reset_scheduler",
    "load_reset_slot",
    "perform_round_robin_reset",
    "reset_all_pointers",
    "run_scheduled_reset",
    "DailyWindow",
    "ResetScheduler",
    "SchedulerState",
    "RESET_JOB_NAME",
]
