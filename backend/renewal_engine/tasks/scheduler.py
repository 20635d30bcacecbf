"""Background loops: renewal tick, retry runner, grace-end tasks

Each loop opens its own session per run and executes the synchronous job in
a worker thread so gateway calls never block the event loop.
"""
import asyncio
import logging
from typing import Callable, Dict

from sqlalchemy.orm import Session

from renewal_engine.core.config import settings
from renewal_engine.core.metrics import scheduler_runs_counter
from renewal_engine.db.session import SessionLocal
from renewal_engine.services.container import BillingServices

logger = logging.getLogger(__name__)


def run_job(name: str, job: Callable[[Session], Dict[str, int]]) -> Dict[str, int]:
    """Run one job with a fresh session"""
    logger.debug(f"Running {name}")
    db = SessionLocal()
    try:
        return job(db)
    finally:
        db.close()


async def _loop(name: str, interval_seconds: int, job: Callable[[Session], Dict[str, int]]):
    logger.info(f"{name} loop started (every {interval_seconds}s)")
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            summary = await asyncio.to_thread(run_job, name, job)
            logger.debug(f"{name} run finished: {summary}")
        except asyncio.CancelledError:
            logger.info(f"{name} loop stopped")
            raise
        except Exception as e:
            scheduler_runs_counter.labels(job=name, status="error").inc()
            logger.error(f"{name} run crashed: {e}", exc_info=True)


async def renewal_tick_task(services: BillingServices):
    """Periodic renewal tick (hourly catch-up by default)"""
    await _loop("renewal_tick", settings.SCHEDULER_INTERVAL_SECONDS, services.scheduler.tick)


async def retry_runner_task(services: BillingServices):
    """Fires due payment retries"""
    await _loop("retry_runner", settings.RETRY_RUNNER_INTERVAL_SECONDS, services.retry_engine.process_due_retries)


async def delayed_task_runner(services: BillingServices):
    """Runs due grace-end tasks"""
    await _loop("grace_end", settings.DELAYED_TASK_INTERVAL_SECONDS, services.grace.process_due_tasks)


def start_background_tasks(services: BillingServices):
    return [
        asyncio.create_task(renewal_tick_task(services)),
        asyncio.create_task(retry_runner_task(services)),
        asyncio.create_task(delayed_task_runner(services)),
    ]
