"""
Celery Tasks
Background tasks for the assignment service.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from orderflow.celery_worker import celery_app
from orderflow.core.config import get_settings
from orderflow.database import build_engine, build_session_maker
from orderflow.services.scheduler import perform_round_robin_reset, run_scheduled_reset

logger = logging.getLogger(__name__)


async def _reset(hotel_id: Optional[str], branch_id: Optional[str]) -> int:
    # Each task run gets its own engine; pooled connections cannot cross event loops
    settings = get_settings()
    engine = build_engine(settings.database_url)
    session_maker = build_session_maker(engine)
    try:
        if hotel_id is None and branch_id is None:
            # The daily job: recorded on the scheduled_jobs row
            return await run_scheduled_reset(session_maker, reason="celery")
        return await perform_round_robin_reset(session_maker, hotel_id, branch_id)
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def reset_round_robin_pointers(
    self,
    hotel_id: Optional[str] = None,
    branch_id: Optional[str] = None,
) -> dict:
    """
    Clear round-robin pointers (all scopes by default).
    Fired daily by Celery beat when RESET_RUNNER=celery; a global run is
    recorded on the scheduled_jobs row like an in-process one.

    Returns:
        dict: Number of pointers cleared and timing
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: round-robin reset hotel={hotel_id or '*'} branch={branch_id or '*'}")
    start_time = time.time()

    try:
        cleared = asyncio.run(_reset(hotel_id, branch_id))
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        logger.error(f"Task {task_id}: reset failed after {elapsed}s - {e}")
        # Celery will auto-retry based on configuration
        raise

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"Task {task_id}: {cleared} pointer(s) cleared in {elapsed}s")
    return {
        'success': True,
        'cleared': cleared,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
        'timestamp': datetime.now().isoformat(),
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
