from celery import Celery
import os
import pytz
from bingeboard.core.config import settings

celery_app = Celery(
    "bingeboard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["bingeboard.services.tasks"]
)

def _get_celery_timezone() -> str:
    """Resolve timezone for Celery from the environment.

    Order of precedence:
    1) BINGEBOARD_TIMEZONE or TZ, when pytz knows the name
    2) Default 'UTC'
    """
    tz = os.getenv("BINGEBOARD_TIMEZONE") or os.getenv("TZ") or "UTC"
    try:
        pytz.timezone(tz)
    except pytz.UnknownTimeZoneError:
        tz = "UTC"
    return tz

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,
    worker_prefetch_multiplier=1,    # Process one task at a time

    # Connection settings
    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # RedBeat scheduler configuration
    beat_scheduler='redbeat.schedulers:RedBeatScheduler',
    redbeat_redis_url=settings.redis_url,
    redbeat_key_prefix='celery:beat:',

    task_routes={
        'bingeboard.services.tasks.run_nightly_aggregation': {'queue': 'maintenance'},
        'bingeboard.services.tasks.run_fairness_audit': {'queue': 'maintenance'},
    },

    # Scheduled tasks
    beat_schedule={
        "nightly-aggregation": {
            "task": "bingeboard.services.tasks.run_nightly_aggregation",
            "schedule": 60 * 60 * settings.aggregation_interval_hours,  # daily by default
        },
        "fairness-audit-weekly": {
            "task": "bingeboard.services.tasks.run_fairness_audit",
            "schedule": 60 * 60 * 24 * settings.fairness_audit_interval_days,
            "kwargs": {"window": settings.fairness_default_window},
        },
    },
    timezone=_get_celery_timezone(),
)
