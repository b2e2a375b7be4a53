"""
models.py

SQLAlchemy models for the metrics store: temporal profiles, aggregation runs,
fusion output logs, fairness audits and bias alerts.
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, JSON, Index
from sqlalchemy.orm import declarative_base
from bingeboard.utils.timezone import utc_now

Base = declarative_base()


class UserTemporalMetrics(Base):
    """One row per user; overwritten nightly by the aggregator."""
    __tablename__ = "user_temporal_metrics"
    user_id = Column(String, primary_key=True)
    avg_session_minutes = Column(Float, default=0.0)
    total_watch_hours = Column(Float, default=0.0)
    binge_session_count = Column(Integer, default=0)
    top_genres = Column(JSON, default=list)
    preferred_hours = Column(JSON, default=list)
    device_split = Column(JSON, default=dict)
    extra = Column(JSON, default=dict)  # forward-compatible signals
    updated_at = Column(DateTime(timezone=True), default=utc_now, index=True)


class AggregationRun(Base):
    __tablename__ = "aggregation_runs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration_ms = Column(Integer, default=0)
    users_processed = Column(Integer, default=0)
    users_skipped = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    avg_processing_ms = Column(Integer, default=0)
    batch_count = Column(Integer, default=0)
    concurrency_limit = Column(Integer, default=0)
    status = Column(String, default="completed")  # completed | cancelled | failed
    context = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)


class RecommendationLog(Base):
    """Append-only structured log rows keyed by method/event name."""
    __tablename__ = "recommendation_performance_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    method_name = Column(String, nullable=False)
    user_id = Column(String, nullable=True, index=True)
    duration_ms = Column(Integer, default=0)
    context = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_perf_logs_method_created", "method_name", "created_at"),
    )


class FairnessAudit(Base):
    __tablename__ = "fairness_audits"
    id = Column(Integer, primary_key=True, autoincrement=True)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    metrics = Column(JSON, default=dict)
    alerts = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)


class BiasAlertRecord(Base):
    __tablename__ = "bias_alerts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    recommended_action = Column(Text)
    affected_users = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)


# Tables the retention cleanup is allowed to touch, keyed by the name callers use
RETENTION_TABLES = {
    "user_temporal_metrics": (UserTemporalMetrics, UserTemporalMetrics.updated_at),
    "aggregation_runs": (AggregationRun, AggregationRun.created_at),
    "recommendation_performance_logs": (RecommendationLog, RecommendationLog.created_at),
    "fairness_audits": (FairnessAudit, FairnessAudit.created_at),
    "bias_alerts": (BiasAlertRecord, BiasAlertRecord.created_at),
}


class UserBehavior(Base):
    """Raw viewing events written by the tracking layer; read-only for this pipeline."""
    __tablename__ = "user_behavior"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    action_type = Column(String, nullable=False)  # watch_start | watch_complete | rate | ...
    timestamp = Column(DateTime(timezone=True), default=utc_now, index=True)
    event_metadata = Column("metadata", JSON, default=dict)
