"""
aggregation.py

Nightly aggregation job: precomputes user temporal profiles.

- Active users (last activity within the active window) are split into fixed-size batches
- Each batch runs under a concurrency limit; batches run strictly in order with a short pause
- Users with a profile younger than the freshness window are skipped
- Transient failures are retried with backoff; any other failure is isolated to that user
- A shutdown flag is checked at each batch boundary; partial stats are always persisted
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.core.metrics import MetricsSink, NullMetricsSink, Timer
from bingeboard.core.shutdown import ShutdownFlag
from bingeboard.schemas import HealthStatus
from bingeboard.services.backoff import with_backoff
from bingeboard.utils.timezone import ensure_utc, hours_since, utc_now

logger = logging.getLogger(__name__)

RUN_VERSION = "2.1.0"


class UserOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass
class BatchStats:
    users_processed: int = 0
    users_skipped: int = 0
    errors: int = 0

    def record(self, outcome: UserOutcome) -> None:
        if outcome is UserOutcome.PROCESSED:
            self.users_processed += 1
        elif outcome is UserOutcome.SKIPPED:
            self.users_skipped += 1
        else:
            self.errors += 1


@dataclass
class AggregationRunStats:
    users_processed: int = 0
    users_skipped: int = 0
    errors: int = 0
    batch_count: int = 0
    batches_completed: int = 0
    processing_time_ms: float = 0.0
    avg_computation_ms: float = 0.0
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    cancelled: bool = False
    failed: bool = False
    failure: Optional[str] = None

    def add(self, batch: BatchStats) -> None:
        self.users_processed += batch.users_processed
        self.users_skipped += batch.users_skipped
        self.errors += batch.errors

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        if self.cancelled:
            return "cancelled"
        return "completed"

    @property
    def success_rate(self) -> float:
        attempted = self.users_processed + self.errors
        return self.users_processed / attempted if attempted else 0.0


def create_batches(items: Sequence[str], batch_size: int) -> List[List[str]]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


class NightlyAggregator:
    def __init__(
        self,
        store,
        reader,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsSink] = None,
        shutdown: Optional[ShutdownFlag] = None,
    ):
        self.store = store
        self.reader = reader
        self.settings = settings or default_settings
        self.metrics = metrics or NullMetricsSink()
        self.shutdown = shutdown or ShutdownFlag()
        self.current_stats: Optional[AggregationRunStats] = None

    async def run_aggregation(self) -> AggregationRunStats:
        """Run one aggregation pass. Cancellation returns normally with partial stats."""
        cfg = self.settings
        started = time.perf_counter()
        stats = AggregationRunStats(start_time=utc_now())
        self.current_stats = stats
        logger.info("Starting nightly aggregation job...")

        try:
            await self.store.ping()

            since = utc_now() - timedelta(days=cfg.aggregation_active_window_days)
            # A user id appears once, so no two in-flight tasks ever touch the same profile row
            active_users = list(dict.fromkeys(await self.reader.list_active_users(since)))
            logger.info(f"Found {len(active_users)} active users to process")

            batches = create_batches(active_users, cfg.aggregation_batch_size)
            stats.batch_count = len(batches)
            logger.info(f"Processing {len(batches)} batches of up to {cfg.aggregation_batch_size} users")

            for index, batch in enumerate(batches, start=1):
                if self.shutdown.is_set():
                    logger.warning(
                        f"Graceful shutdown in progress, skipping remaining {len(batches) - index + 1} batches"
                    )
                    stats.cancelled = True
                    break

                batch_stats = await self.process_batch(batch, index, len(batches))
                stats.add(batch_stats)
                stats.batches_completed += 1

                if index % cfg.aggregation_progress_every_batches == 0 or index == len(batches):
                    logger.info(
                        f"Progress: {index}/{len(batches)} batches ({stats.users_processed} users processed)"
                    )
                if index < len(batches):
                    await asyncio.sleep(cfg.aggregation_batch_pause_seconds)

            await self.cleanup_old_metrics()
        except Exception as e:
            stats.failed = True
            stats.failure = f"{type(e).__name__}: {e}"
            logger.error(f"Nightly aggregation failed: {e}", exc_info=True)
            raise
        finally:
            stats.end_time = utc_now()
            stats.processing_time_ms = (time.perf_counter() - started) * 1000.0
            stats.avg_computation_ms = (
                stats.processing_time_ms / stats.users_processed if stats.users_processed else 0.0
            )
            self.log_aggregation_stats(stats)
            await self.store_aggregation_run(stats)
            await self.metrics.timing("aggregation.run", stats.processing_time_ms)
            self.current_stats = None

        if stats.cancelled:
            logger.info("Nightly aggregation stopped early; partial stats saved")
        else:
            logger.info("Nightly aggregation completed successfully")
        return stats

    async def process_batch(self, user_ids: List[str], batch_number: int, total_batches: int) -> BatchStats:
        logger.info(f"Processing batch {batch_number}/{total_batches} ({len(user_ids)} users)")
        batch_stats = BatchStats()
        limiter = asyncio.Semaphore(self.settings.aggregation_concurrency)

        async def guarded(user_id: str) -> UserOutcome:
            async with limiter:
                return await self.process_user(user_id)

        outcomes = await asyncio.gather(*(guarded(u) for u in user_ids))
        for outcome in outcomes:
            batch_stats.record(outcome)
        await self.metrics.increment("aggregation.users.processed", batch_stats.users_processed)
        await self.metrics.increment("aggregation.users.skipped", batch_stats.users_skipped)
        await self.metrics.increment("aggregation.users.errored", batch_stats.errors)
        return batch_stats

    async def process_user(self, user_id: str) -> UserOutcome:
        """Refresh one user's profile. Never raises; failures become ERRORED."""
        try:
            async with Timer(self.metrics, "aggregation.user"):
                return await with_backoff(
                    self._refresh_profile,
                    user_id,
                    max_retries=self.settings.aggregation_max_retries,
                    base_delay=self.settings.aggregation_retry_base_delay,
                    label=f"aggregate user {user_id}",
                )
        except Exception as e:
            logger.error(f"Failed to process user {user_id}: {type(e).__name__}: {e}")
            return UserOutcome.ERRORED

    async def _refresh_profile(self, user_id: str) -> UserOutcome:
        existing = await self.store.get_profile(user_id)
        if existing is not None and self.is_recent_enough(existing.last_computed_at):
            return UserOutcome.SKIPPED

        profile = await self.reader.compute_temporal_profile(user_id)
        await self.store.upsert_profile(profile)
        return UserOutcome.PROCESSED

    def is_recent_enough(self, computed_at: Optional[datetime]) -> bool:
        if computed_at is None:
            return False
        threshold = utc_now() - timedelta(hours=self.settings.aggregation_freshness_hours)
        return ensure_utc(computed_at) > threshold

    async def cleanup_old_metrics(self) -> None:
        """Apply retention windows. Failures are logged, never raised."""
        cfg = self.settings
        now = utc_now()
        profile_cutoff = now - timedelta(days=cfg.profile_retention_days)
        log_cutoff = now - timedelta(days=cfg.log_retention_days)
        try:
            logger.info(f"Cleaning up profiles older than {profile_cutoff.date()} ({cfg.profile_retention_days} days)")
            profiles = await self.store.delete_older_than("user_temporal_metrics", profile_cutoff)
            logs = await self.store.delete_older_than("recommendation_performance_logs", log_cutoff)
            runs = await self.store.delete_older_than("aggregation_runs", log_cutoff)
            alerts = await self.store.delete_older_than("bias_alerts", log_cutoff)
            audits = await self.store.delete_older_than(
                "fairness_audits", log_cutoff, keep_recent_days=cfg.keep_daily_snapshots
            )
            logger.info(
                f"Cleanup removed {profiles} profiles, {logs} log rows, {runs} runs, "
                f"{alerts} alerts, {audits} audits"
            )
        except Exception as e:
            logger.error(f"Failed to cleanup old metrics: {e}", exc_info=True)

    def build_run_record(self, stats: AggregationRunStats) -> Dict[str, Any]:
        cfg = self.settings
        return {
            "start_time": stats.start_time,
            "end_time": stats.end_time or utc_now(),
            "duration_ms": int(round(stats.processing_time_ms)),
            "users_processed": stats.users_processed,
            "users_skipped": stats.users_skipped,
            "error_count": stats.errors,
            "avg_processing_ms": int(round(stats.avg_computation_ms)),
            "batch_count": stats.batch_count,
            "concurrency_limit": cfg.aggregation_concurrency,
            "status": stats.status,
            "context": {
                "batch_size": cfg.aggregation_batch_size,
                "max_retries": cfg.aggregation_max_retries,
                "retention_days": cfg.profile_retention_days,
                "version": RUN_VERSION,
                "batches_completed": stats.batches_completed,
                "cancelled": stats.cancelled,
                "shutdown_reason": self.shutdown.reason,
                "failure": stats.failure,
                "performance": {
                    "total_users": stats.users_processed + stats.users_skipped + stats.errors,
                    "success_rate": stats.success_rate,
                    "avg_batch_time_ms": (
                        stats.processing_time_ms / stats.batches_completed if stats.batches_completed else 0.0
                    ),
                },
            },
        }

    async def store_aggregation_run(self, stats: AggregationRunStats) -> None:
        try:
            await self.store.insert_run_record(self.build_run_record(stats))
            logger.info("Aggregation run data stored successfully")
        except Exception as e:
            logger.error(f"Failed to store aggregation run data: {e}", exc_info=True)

    def log_aggregation_stats(self, stats: AggregationRunStats) -> None:
        logger.info("Nightly Aggregation Statistics:")
        logger.info(f"   Users Processed: {stats.users_processed:,}")
        logger.info(f"   Users Skipped: {stats.users_skipped:,}")
        logger.info(f"   Total Processing Time: {stats.processing_time_ms / 1000 / 60:.2f} minutes")
        logger.info(f"   Average Time per User: {stats.avg_computation_ms:.2f}ms")
        logger.info(f"   Errors: {stats.errors}")
        logger.info(f"   Success Rate: {stats.success_rate * 100:.2f}%")

    async def check_health(self) -> HealthStatus:
        cfg = self.settings
        try:
            last = await self.store.latest_run_record()
        except Exception as e:
            return HealthStatus(status="error", issues=[f"Database error during health check: {e}"])

        if last is None:
            return HealthStatus(status="error", issues=["No aggregation runs found in database"])

        issues: List[str] = []
        status = "healthy"
        last_run = last.get("end_time") or last.get("created_at")
        age = hours_since(last_run)

        if age is not None and age > cfg.health_stale_hours:
            issues.append(f"Last aggregation run was {age:.1f} hours ago")
            status = "error" if age > cfg.health_stale_hours * 2 else "warning"

        processed = last.get("users_processed") or 0
        errors = last.get("error_count") or 0
        attempted = processed + errors
        if attempted and errors > attempted * cfg.health_error_rate_threshold:
            issues.append(f"High error rate in last run: {errors} errors out of {attempted} users")
            if status == "healthy":
                status = "warning"

        if last.get("status") == "failed":
            issues.append("Last aggregation run failed")
            if status == "healthy":
                status = "warning"

        return HealthStatus(status=status, last_run=last_run, last_run_age_hours=age, issues=issues)
