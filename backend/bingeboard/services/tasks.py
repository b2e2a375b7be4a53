"""
tasks.py

Celery tasks for the scheduled pipeline jobs. Each task runs its async job on a
fresh event loop and disposes the database engine before the loop closes.
"""
import asyncio
from typing import Any, Dict, Optional

from celery import shared_task
from celery.signals import worker_shutting_down

from bingeboard.core.database import dispose_engine
from bingeboard.core.shutdown import ShutdownFlag
from bingeboard.utils.logger import logger

# Set when the worker begins a warm shutdown; the aggregator stops at the next batch boundary
worker_shutdown = ShutdownFlag()


@worker_shutting_down.connect
def _on_worker_shutting_down(sig=None, how=None, exitcode=None, **kwargs):
    worker_shutdown.set(f"worker {how or 'shutdown'} ({sig})")


def _run_in_fresh_loop(job):
    loop = None
    try:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(job())
    finally:
        if loop:
            loop.close()


@shared_task(bind=True, max_retries=1, default_retry_delay=300)
def run_nightly_aggregation(self) -> Dict[str, Any]:
    """Precompute temporal profiles for all active users."""
    async def _run():
        from bingeboard.services.factory import build_aggregator
        try:
            stats = await build_aggregator(shutdown=worker_shutdown).run_aggregation()
            return {
                "status": stats.status,
                "users_processed": stats.users_processed,
                "users_skipped": stats.users_skipped,
                "errors": stats.errors,
                "batches_completed": stats.batches_completed,
                "batch_count": stats.batch_count,
            }
        finally:
            await dispose_engine()

    try:
        return _run_in_fresh_loop(_run)
    except Exception as e:
        logger.error(f"run_nightly_aggregation failed: {e}", exc_info=True)
        raise self.retry(exc=e)


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def run_fairness_audit(self, window: Optional[str] = None) -> Dict[str, Any]:
    """Audit a window of logged fusion output and dispatch bias alerts."""
    async def _run():
        from bingeboard.services.factory import build_fairness_auditor
        try:
            record = await build_fairness_auditor().audit(window)
            return {
                "window_start": record.window_start.isoformat(),
                "window_end": record.window_end.isoformat(),
                "alerts": [a.type for a in record.alerts],
                "metrics": record.metrics.model_dump(mode="json"),
            }
        finally:
            await dispose_engine()

    try:
        return _run_in_fresh_loop(_run)
    except Exception as e:
        logger.error(f"run_fairness_audit failed: {e}", exc_info=True)
        raise self.retry(exc=e)
