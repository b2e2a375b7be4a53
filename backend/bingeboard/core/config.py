import os
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings


_DEFAULT_SOURCE_QUOTAS = {"primary": 0.6, "secondary": 0.3, "tertiary": 0.1}


class Settings(BaseSettings):
    db_user: str = os.getenv("POSTGRES_USER", "bingeboard")
    db_password: str = os.getenv("POSTGRES_PASSWORD", "bingeboard")
    db_name: str = os.getenv("POSTGRES_DB", "bingeboard")
    database_url: str = os.getenv(
        "DATABASE_URL",
        f"postgresql+asyncpg://{os.getenv('POSTGRES_USER', 'bingeboard')}:{os.getenv('POSTGRES_PASSWORD', 'bingeboard')}@db:5432/{os.getenv('POSTGRES_DB', 'bingeboard')}",
    )
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Catalog providers
    tmdb_api_key: str = os.getenv("TMDB_API_KEY", "")
    tmdb_base_url: str = os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org/3")
    watchmode_api_key: str = os.getenv("WATCHMODE_API_KEY", "")
    watchmode_base_url: str = os.getenv("WATCHMODE_BASE_URL", "https://api.watchmode.com/v1")
    utelly_api_key: str = os.getenv("UTELLY_API_KEY", "")
    utelly_host: str = os.getenv("UTELLY_HOST", "utelly-tv-shows-and-movies-availability-v1.p.rapidapi.com")
    utelly_country: str = os.getenv("UTELLY_COUNTRY", "us")
    availability_region: str = os.getenv("AVAILABILITY_REGION", "US")
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # Nightly aggregation
    aggregation_batch_size: int = int(os.getenv("AGGREGATION_BATCH_SIZE", "1000"))
    aggregation_concurrency: int = int(os.getenv("AGGREGATION_CONCURRENCY", "20"))
    aggregation_max_retries: int = int(os.getenv("AGGREGATION_MAX_RETRIES", "3"))
    aggregation_retry_base_delay: float = float(os.getenv("AGGREGATION_RETRY_BASE_DELAY", "1.0"))
    aggregation_batch_pause_seconds: float = float(os.getenv("AGGREGATION_BATCH_PAUSE_SECONDS", "0.1"))
    aggregation_active_window_days: int = int(os.getenv("AGGREGATION_ACTIVE_WINDOW_DAYS", "90"))
    aggregation_freshness_hours: int = int(os.getenv("AGGREGATION_FRESHNESS_HOURS", "24"))
    aggregation_interval_hours: int = int(os.getenv("AGGREGATION_INTERVAL_HOURS", "24"))
    aggregation_progress_every_batches: int = int(os.getenv("AGGREGATION_PROGRESS_EVERY_BATCHES", "5"))
    profile_retention_days: int = int(os.getenv("PROFILE_RETENTION_DAYS", "7"))
    log_retention_days: int = int(os.getenv("LOG_RETENTION_DAYS", "30"))
    keep_daily_snapshots: int = int(os.getenv("KEEP_DAILY_SNAPSHOTS", "30"))
    profile_top_genres: int = int(os.getenv("PROFILE_TOP_GENRES", "5"))
    behavior_events_limit: int = int(os.getenv("BEHAVIOR_EVENTS_LIMIT", "1000"))

    # Health check
    health_stale_hours: float = float(os.getenv("HEALTH_STALE_HOURS", "25"))
    health_error_rate_threshold: float = float(os.getenv("HEALTH_ERROR_RATE_THRESHOLD", "0.05"))

    # Fusion engine
    fusion_adapter_timeout_seconds: float = float(os.getenv("FUSION_ADAPTER_TIMEOUT_SECONDS", "5"))
    fusion_corroboration_bonus: float = float(os.getenv("FUSION_CORROBORATION_BONUS", "10"))
    fusion_genre_match_bonus: float = float(os.getenv("FUSION_GENRE_MATCH_BONUS", "15"))
    fusion_recency_bonus: float = float(os.getenv("FUSION_RECENCY_BONUS", "10"))
    fusion_recency_years: int = int(os.getenv("FUSION_RECENCY_YEARS", "2"))
    fusion_network_bonus: float = float(os.getenv("FUSION_NETWORK_BONUS", "10"))
    fusion_affiliate_bonus: float = float(os.getenv("FUSION_AFFILIATE_BONUS", "5"))
    fusion_profile_genre_bonus: float = float(os.getenv("FUSION_PROFILE_GENRE_BONUS", "5"))
    fusion_reason_delimiter: str = os.getenv("FUSION_REASON_DELIMITER", " • ")
    fusion_log_output: bool = os.getenv("FUSION_LOG_OUTPUT", "true").lower() == "true"
    fusion_source_quotas: Dict[str, float] = Field(default_factory=lambda: dict(_DEFAULT_SOURCE_QUOTAS))

    # Fairness auditing
    fairness_min_genres_per_user: float = float(os.getenv("FAIRNESS_MIN_GENRES_PER_USER", "5"))
    fairness_max_creator_share: float = float(os.getenv("FAIRNESS_MAX_CREATOR_SHARE", "0.15"))
    fairness_max_demographic_variance: float = float(os.getenv("FAIRNESS_MAX_DEMOGRAPHIC_VARIANCE", "0.10"))
    fairness_target_recent_content: float = float(os.getenv("FAIRNESS_TARGET_RECENT_CONTENT", "0.70"))
    fairness_target_familiar_content: float = float(os.getenv("FAIRNESS_TARGET_FAMILIAR_CONTENT", "0.80"))
    fairness_min_balance_score: float = float(os.getenv("FAIRNESS_MIN_BALANCE_SCORE", "0.8"))
    fairness_min_exploration_score: float = float(os.getenv("FAIRNESS_MIN_EXPLORATION_SCORE", "0.8"))
    fairness_recent_years: int = int(os.getenv("FAIRNESS_RECENT_YEARS", "2"))
    fairness_default_window: str = os.getenv("FAIRNESS_DEFAULT_WINDOW", "7d")
    fairness_report_window: str = os.getenv("FAIRNESS_REPORT_WINDOW", "30d")
    fairness_audit_interval_days: int = int(os.getenv("FAIRNESS_AUDIT_INTERVAL_DAYS", "7"))
    alert_channel: str = os.getenv("ALERT_CHANNEL", "alerts:bias")

settings = Settings()
