"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.

With RESET_RUNNER=celery, beat fires the round-robin reset once a day at the
slot stored in the ``scheduled_jobs`` row (drawn inside the reset window on
first start), so a beat restart keeps the same time of day. Crontab fires
at minute resolution; the seconds of the slot are dropped.
"""

import asyncio
import logging
from typing import Optional

from celery import Celery
from celery.beat import PersistentScheduler
from celery.schedules import crontab

from orderflow.core.config import ResetRunner, get_settings
from orderflow.database import build_engine, build_session_maker, init_db
from orderflow.services.scheduler import load_reset_slot
from orderflow.services.scheduler.reset import DailyWindow

logger = logging.getLogger(__name__)
settings = get_settings()

# Create Celery app
celery_app = Celery(
    'orderflow_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['orderflow.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=settings.reset_timezone,  # crontab entries are read in this zone
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=4,  # Number of worker processes

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,
)


def build_beat_schedule(slot_seconds: int, window: Optional[DailyWindow] = None) -> dict:
    """Daily reset entry firing at the given slot of the reset window."""
    window = window or DailyWindow.from_settings(settings)
    at = window.slot_time(slot_seconds)
    logger.info(f"Beat: round-robin reset daily at {at.strftime('%H:%M')} {window.tz_name}")

    return {
        'round-robin-daily-reset': {
            'task': 'orderflow.tasks.reset_round_robin_pointers',
            'schedule': crontab(hour=at.hour, minute=at.minute),
        },
    }


async def _stored_slot() -> int:
    # Beat may start before the API ever created the tables
    engine = build_engine(settings.database_url)
    try:
        await init_db(engine)
        return await load_reset_slot(build_session_maker(engine))
    finally:
        await engine.dispose()


def stored_beat_schedule() -> dict:
    """Beat schedule for the persisted slot; empty unless the Celery runner is selected."""
    if settings.reset_runner != ResetRunner.CELERY:
        return {}
    return build_beat_schedule(asyncio.run(_stored_slot()))


class ResetBeatScheduler(PersistentScheduler):
    """Beat scheduler that reads the reset slot from the database at startup."""

    def setup_schedule(self):
        self.app.conf.beat_schedule = stored_beat_schedule()
        super().setup_schedule()


celery_app.conf.beat_scheduler = 'orderflow.celery_worker:ResetBeatScheduler'


if __name__ == '__main__':
    celery_app.start()
