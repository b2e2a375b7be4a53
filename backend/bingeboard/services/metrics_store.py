"""
metrics_store.py

SQLAlchemy-backed metrics store shared by the three pipeline components.

Access patterns:
- user_temporal_metrics: upsert-by-user, point reads
- aggregation_runs / fairness_audits / bias_alerts: append-only
- recommendation_performance_logs: append-only, queried by method name and time range
- retention: delete rows older than a cutoff, optionally preserving the most
  recent N daily snapshots
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bingeboard.errors import MetricsStoreError
from bingeboard.models import (
    AggregationRun,
    BiasAlertRecord,
    FairnessAudit,
    RecommendationLog,
    RETENTION_TABLES,
    UserTemporalMetrics,
)
from bingeboard.schemas import BiasAlert, FairnessAuditRecord, UserTemporalProfile
from bingeboard.utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class MetricsStore:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from bingeboard.core.database import get_session_factory
            session_factory = get_session_factory()
        self._session_factory = session_factory

    def _session(self) -> AsyncSession:
        return self._session_factory()

    # --- temporal profiles ---

    async def upsert_profile(self, profile: UserTemporalProfile) -> None:
        row = UserTemporalMetrics(
            user_id=profile.user_id,
            avg_session_minutes=profile.avg_session_minutes,
            total_watch_hours=profile.total_watch_hours,
            binge_session_count=profile.binge_session_count,
            top_genres=list(profile.top_genres),
            preferred_hours=list(profile.preferred_hours),
            device_split=dict(profile.device_split),
            extra=dict(profile.extra),
            updated_at=profile.last_computed_at,
        )
        async with self._session() as session:
            # merge on the primary key gives upsert-by-user on every backend
            await session.merge(row)
            await session.commit()

    async def get_profile(self, user_id: str) -> Optional[UserTemporalProfile]:
        async with self._session() as session:
            row = await session.get(UserTemporalMetrics, user_id)
            if row is None:
                return None
            return UserTemporalProfile(
                user_id=row.user_id,
                avg_session_minutes=row.avg_session_minutes or 0.0,
                total_watch_hours=row.total_watch_hours or 0.0,
                binge_session_count=row.binge_session_count or 0,
                top_genres=row.top_genres or [],
                preferred_hours=row.preferred_hours or [],
                device_split=row.device_split or {},
                extra=row.extra or {},
                last_computed_at=ensure_utc(row.updated_at),
            )

    # --- aggregation runs ---

    async def insert_run_record(self, run: Dict[str, Any]) -> int:
        async with self._session() as session:
            row = AggregationRun(**run)
            session.add(row)
            await session.commit()
            return row.id

    async def latest_run_record(self) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            stmt = select(AggregationRun).order_by(AggregationRun.created_at.desc(), AggregationRun.id.desc()).limit(1)
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return {
                "id": row.id,
                "start_time": ensure_utc(row.start_time),
                "end_time": ensure_utc(row.end_time),
                "duration_ms": row.duration_ms,
                "users_processed": row.users_processed,
                "users_skipped": row.users_skipped,
                "error_count": row.error_count,
                "batch_count": row.batch_count,
                "concurrency_limit": row.concurrency_limit,
                "status": row.status,
                "context": row.context or {},
                "created_at": ensure_utc(row.created_at),
            }

    # --- structured logs ---

    async def insert_log(self, method_name: str, context: Dict[str, Any], user_id: Optional[str] = None,
                         duration_ms: int = 0, created_at: Optional[datetime] = None) -> None:
        await self.insert_logs([{
            "method_name": method_name,
            "user_id": user_id,
            "duration_ms": duration_ms,
            "context": context,
            "created_at": created_at or utc_now(),
        }])

    async def insert_logs(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        async with self._session() as session:
            session.add_all([RecommendationLog(**r) for r in rows])
            await session.commit()

    async def query_log_window(self, method_name: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        async with self._session() as session:
            stmt = (
                select(RecommendationLog)
                .where(RecommendationLog.method_name == method_name)
                .where(RecommendationLog.created_at >= start)
                .where(RecommendationLog.created_at <= end)
                .order_by(RecommendationLog.created_at, RecommendationLog.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                {
                    "user_id": r.user_id,
                    "duration_ms": r.duration_ms,
                    "context": r.context or {},
                    "created_at": ensure_utc(r.created_at),
                }
                for r in rows
            ]

    # --- fairness ---

    async def insert_audit_record(self, record: FairnessAuditRecord) -> None:
        async with self._session() as session:
            session.add(FairnessAudit(
                window_start=record.window_start,
                window_end=record.window_end,
                metrics=record.metrics.model_dump(mode="json"),
                alerts=[a.model_dump(mode="json") for a in record.alerts],
            ))
            await session.commit()

    async def insert_bias_alert(self, alert: BiasAlert) -> None:
        async with self._session() as session:
            session.add(BiasAlertRecord(
                alert_type=alert.type,
                severity=alert.severity,
                message=alert.message,
                recommended_action=alert.recommended_action,
                affected_users=alert.affected_users,
                created_at=alert.timestamp,
            ))
            await session.commit()

    # --- retention ---

    async def delete_older_than(self, table: str, cutoff: datetime, keep_recent_days: int = 0) -> int:
        """Delete rows older than cutoff; rows on the keep_recent_days most recent days survive."""
        if table not in RETENTION_TABLES:
            raise MetricsStoreError(f"Unknown table for retention: {table}")
        model, column = RETENTION_TABLES[table]
        async with self._session() as session:
            stmt = delete(model).where(column < cutoff)
            if keep_recent_days > 0:
                day = func.date(column)
                recent_days = (
                    select(day.label("d")).group_by(day).order_by(day.desc()).limit(keep_recent_days).subquery()
                )
                stmt = stmt.where(day.not_in(select(recent_days.c.d)))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def ping(self) -> None:
        try:
            async with self._session() as session:
                await session.execute(select(func.count()).select_from(AggregationRun))
        except SQLAlchemyError as e:
            raise MetricsStoreError(f"Metrics store unreachable: {e}") from e
