"""
Periodic alert evaluation.

Runs the same evaluator functions as the admin scheduled-task endpoints on a
fixed interval inside the API process. Enabled with ENABLE_SCHEDULER=true.
"""
import asyncio
import logging
from typing import Optional

from sqlmodel import Session

from database import engine
from services import alert_evaluator
from services.notification_dispatcher import pop_dispatched
from services.websocket_manager import notification_payload, ws_manager
from validators.business_rules import get_business_rules

logger = logging.getLogger(__name__)

STARTUP_DELAY_SECONDS = 10

_scheduler_task: Optional[asyncio.Task] = None


def run_evaluators() -> dict:
    """One evaluator pass in its own session. Returns counts and pending pushes."""
    with Session(engine) as session:
        counts = alert_evaluator.run_all(session)
        payloads = [notification_payload(n) for n in pop_dispatched(session)]
    return {"counts": counts, "payloads": payloads}


async def _scheduler_loop(interval_seconds: int):
    logger.info(f"Alert scheduler started. Interval: {interval_seconds}s")
    await asyncio.sleep(STARTUP_DELAY_SECONDS)

    while True:
        try:
            result = await asyncio.to_thread(run_evaluators)
            logger.info(f"Scheduled evaluation finished: {result['counts']}")
            await ws_manager.push_many(result["payloads"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Evaluators are idempotent; the next tick retries
            logger.error(f"Scheduled evaluation failed: {e}")

        await asyncio.sleep(interval_seconds)


def start_scheduler(interval_seconds: Optional[int] = None):
    """Start the background evaluator loop. Called from the FastAPI lifespan."""
    global _scheduler_task
    if _scheduler_task and not _scheduler_task.done():
        return
    interval = interval_seconds or get_business_rules().SCHEDULER_INTERVAL_SECONDS
    _scheduler_task = asyncio.create_task(_scheduler_loop(interval))


async def stop_scheduler():
    global _scheduler_task
    if _scheduler_task is None:
        return
    _scheduler_task.cancel()
    try:
        await _scheduler_task
    except asyncio.CancelledError:
        pass
    _scheduler_task = None
    logger.info("Alert scheduler stopped")
