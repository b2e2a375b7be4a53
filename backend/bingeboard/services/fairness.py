"""
fairness.py

Fairness & bias auditing over logged fusion output.

Metrics (fusion_recommendation log rows unless noted):
- Genre diversity: distinct genres per user, normalized Shannon index (log2) over all genres
- Creator representation: share per creator/platform, Herfindahl index, >15% share is a violation
- Content-age balance: recent (within 2 years) vs catalog, 1 - |recent - 0.70|
- Exploration vs comfort: familiar vs exploration, 1 - |familiar - 0.80|
- Demographic fairness: engagement rate per demographic bucket (recommendation_engagement rows),
  standard deviation across buckets

A metric with no rows in the window scores 0 and raises no alert.
"""
import asyncio
import logging
import re
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Union

import numpy as np

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.core.metrics import MetricsSink, NullMetricsSink, Timer
from bingeboard.schemas import (
    BiasAlert,
    ContentAgeBalance,
    CreatorRepresentation,
    CreatorShare,
    DemographicFairness,
    ExplorationComfort,
    FairnessAuditRecord,
    FairnessMetrics,
    GenreDiversity,
)
from bingeboard.utils.timezone import format_iso_utc, utc_now

logger = logging.getLogger(__name__)

FUSION_LOG_METHOD = "fusion_recommendation"
ENGAGEMENT_LOG_METHOD = "recommendation_engagement"
TOP_CREATORS = 10

_WINDOW_RE = re.compile(r"^\s*(\d+)\s*([dh])\s*$", re.IGNORECASE)

Rows = List[Dict[str, Any]]


def parse_time_window(window: Union[str, timedelta]) -> timedelta:
    """'7d' -> 7 days, '24h' -> 24 hours; timedeltas pass through."""
    if isinstance(window, timedelta):
        if window <= timedelta(0):
            raise ValueError("time window must be positive")
        return window
    match = _WINDOW_RE.match(window or "")
    if not match:
        raise ValueError(f"Invalid time window '{window}' (expected e.g. '7d' or '24h')")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if amount <= 0:
        raise ValueError("time window must be positive")
    return timedelta(days=amount) if unit == "d" else timedelta(hours=amount)


def _genres(row: Dict[str, Any]) -> List[str]:
    genres = row["context"].get("genres")
    if not isinstance(genres, list):
        return []
    return [g for g in genres if isinstance(g, str) and g]


def genre_diversity(rows: Rows) -> GenreDiversity:
    user_genres: Dict[str, Set[str]] = defaultdict(set)
    counts: Counter = Counter()
    for row in rows:
        genres = _genres(row)
        if not genres:
            continue
        user_genres[row.get("user_id") or "anonymous"].update(genres)
        counts.update(genres)

    if not counts:
        return GenreDiversity()

    proportions = np.array(list(counts.values()), dtype=float)
    proportions /= proportions.sum()
    shannon = float(-(proportions * np.log2(proportions)).sum())
    max_shannon = float(np.log2(len(counts)))
    return GenreDiversity(
        average_genres_per_user=float(np.mean([len(g) for g in user_genres.values()])),
        genre_distribution={genre: count / sum(counts.values()) for genre, count in counts.items()},
        diversity_score=shannon / max_shannon if max_shannon > 0 else 0.0,
        users=len(user_genres),
    )


def creator_representation(rows: Rows, max_share: float) -> CreatorRepresentation:
    counts = Counter(row["context"].get("creator") for row in rows if row["context"].get("creator"))
    total = sum(counts.values())
    if not total:
        return CreatorRepresentation()

    shares = [CreatorShare(creator=c, percentage=n / total) for c, n in counts.most_common()]
    return CreatorRepresentation(
        top_creators=shares[:TOP_CREATORS],
        concentration_index=float(sum(s.percentage ** 2 for s in shares)),
        fairness_violations=[s.creator for s in shares if s.percentage > max_share],
    )


def content_age_balance(rows: Rows, target_recent: float, recent_years: int,
                        current_year: Optional[int] = None) -> ContentAgeBalance:
    current_year = current_year or utc_now().year
    years = [row["context"].get("release_year") for row in rows]
    years = [y for y in years if isinstance(y, int)]
    if not years:
        return ContentAgeBalance()

    recent = sum(1 for y in years if y >= current_year - recent_years) / len(years)
    return ContentAgeBalance(
        recent_content=recent,
        catalog_content=1.0 - recent,
        balance_score=1.0 - abs(recent - target_recent),
        sample_size=len(years),
    )


def exploration_comfort(rows: Rows, target_familiar: float) -> ExplorationComfort:
    flags = [row["context"].get("is_exploration") for row in rows]
    flags = [f for f in flags if isinstance(f, bool)]
    if not flags:
        return ExplorationComfort()

    exploration = sum(1 for f in flags if f) / len(flags)
    familiar = 1.0 - exploration
    return ExplorationComfort(
        familiar_content=familiar,
        exploration_content=exploration,
        exploration_score=1.0 - abs(familiar - target_familiar),
        sample_size=len(flags),
    )


def demographic_fairness(rows: Rows, max_variance: float) -> DemographicFairness:
    shown: Counter = Counter()
    engaged: Counter = Counter()
    for row in rows:
        bucket = row["context"].get("demographic")
        if not bucket:
            continue
        shown[bucket] += 1
        if row["context"].get("engaged"):
            engaged[bucket] += 1

    if not shown:
        return DemographicFairness()

    rates = {bucket: engaged[bucket] / n for bucket, n in shown.items()}
    # population standard deviation of the per-bucket engagement rates
    variance_score = float(np.std(list(rates.values()))) if len(rates) > 1 else 0.0
    alerts = ["High variance in engagement across demographic groups"] if variance_score > max_variance else []
    return DemographicFairness(
        engagement_by_demographic=rates,
        variance_score=variance_score,
        inequity_alerts=alerts,
    )


def _users(rows: Rows) -> Set[str]:
    return {row["user_id"] for row in rows if row.get("user_id")}


def build_alerts(metrics: FairnessMetrics, fusion_rows: Rows, engagement_rows: Rows,
                 settings: Settings, now: Optional[datetime] = None) -> List[BiasAlert]:
    now = now or utc_now()
    alerts: List[BiasAlert] = []
    gd = metrics.genre_diversity
    if gd.users and gd.average_genres_per_user < settings.fairness_min_genres_per_user:
        user_genres: Dict[str, Set[str]] = defaultdict(set)
        for row in fusion_rows:
            user_genres[row.get("user_id") or "anonymous"].update(_genres(row))
        narrow = sum(1 for g in user_genres.values() if g and len(g) < settings.fairness_min_genres_per_user)
        alerts.append(BiasAlert(
            type="genre_concentration",
            severity="medium",
            message=(
                f"Low genre diversity: {gd.average_genres_per_user:.1f} genres per user "
                f"(target: {settings.fairness_min_genres_per_user:g}+)"
            ),
            affected_users=narrow,
            recommended_action="Increase exploration factor in recommendation algorithm",
            timestamp=now,
        ))

    for creator in metrics.creator_representation.fairness_violations:
        exposed = {r["user_id"] for r in fusion_rows if r["context"].get("creator") == creator and r.get("user_id")}
        alerts.append(BiasAlert(
            type="creator_dominance",
            severity="high",
            message=(
                f"Creator over-representation: {creator} exceeds "
                f"{settings.fairness_max_creator_share * 100:g}% threshold"
            ),
            affected_users=len(exposed),
            recommended_action="Apply creator diversity filters to recommendation algorithm",
            timestamp=now,
        ))

    df = metrics.demographic_fairness
    if df.variance_score > settings.fairness_max_demographic_variance:
        alerts.append(BiasAlert(
            type="demographic_inequity",
            severity="high",
            message=(
                f"High demographic variance: {df.variance_score * 100:.1f}% "
                f"(target: <{settings.fairness_max_demographic_variance * 100:g}%)"
            ),
            affected_users=len(_users(engagement_rows)),
            recommended_action="Review recommendation fairness across demographic groups",
            timestamp=now,
        ))

    ec = metrics.exploration_comfort
    if ec.sample_size and ec.exploration_score < settings.fairness_min_exploration_score:
        target = (1.0 - settings.fairness_target_familiar_content) * 100
        alerts.append(BiasAlert(
            type="exploration_deficit",
            severity="medium",
            message=f"Poor exploration balance: {ec.exploration_content * 100:.1f}% exploration (target: {target:g}%)",
            affected_users=len(_users(fusion_rows)),
            recommended_action="Increase exploration content injection in recommendations",
            timestamp=now,
        ))
    return alerts


def overall_score(metrics: FairnessMetrics) -> float:
    """Mean of diversity, creator factor (1 or 0.5), balance and exploration, as a percentage."""
    scores = [
        metrics.genre_diversity.diversity_score,
        1.0 if not metrics.creator_representation.fairness_violations else 0.5,
        metrics.content_age_balance.balance_score,
        metrics.exploration_comfort.exploration_score,
    ]
    return float(np.mean(scores)) * 100


def fairness_grade(score: float) -> str:
    if score >= 90:
        return "EXCELLENT"
    if score >= 80:
        return "GOOD"
    if score >= 70:
        return "FAIR"
    if score >= 60:
        return "POOR"
    return "CRITICAL"


def _status(passed: bool) -> str:
    return "PASS" if passed else "FAIL"


def render_report(record: FairnessAuditRecord, window_label: str, settings: Settings,
                  generated_at: Optional[datetime] = None) -> str:
    m = record.metrics
    gd, cr, ab, ec, df = (
        m.genre_diversity, m.creator_representation, m.content_age_balance,
        m.exploration_comfort, m.demographic_fairness,
    )
    score = overall_score(m)
    lines = [
        "# Fairness & Bias Audit Report",
        f"**Time Period**: Last {window_label}",
        f"**Generated**: {format_iso_utc(generated_at or utc_now())}",
        "",
        "## Genre Diversity",
        f"- **Average Genres per User**: {gd.average_genres_per_user:.1f}",
        f"- **Diversity Score**: {gd.diversity_score * 100:.1f}%",
        f"- **Status**: {_status(gd.average_genres_per_user >= settings.fairness_min_genres_per_user)}",
        "",
        "## Creator Representation",
        f"- **Concentration Index**: {cr.concentration_index:.3f}",
        f"- **Fairness Violations**: {len(cr.fairness_violations)}",
    ]
    lines += [f"  - {c}" for c in cr.fairness_violations]
    lines += [
        f"- **Status**: {_status(not cr.fairness_violations)}",
        "",
        "## Content Age Balance",
        f"- **Recent Content**: {ab.recent_content * 100:.1f}%",
        f"- **Catalog Content**: {ab.catalog_content * 100:.1f}%",
        f"- **Balance Score**: {ab.balance_score * 100:.1f}%",
        f"- **Status**: {_status(ab.balance_score >= settings.fairness_min_balance_score)}",
        "",
        "## Exploration vs Comfort",
        f"- **Familiar Content**: {ec.familiar_content * 100:.1f}%",
        f"- **Exploration Content**: {ec.exploration_content * 100:.1f}%",
        f"- **Status**: {_status(ec.exploration_score >= settings.fairness_min_exploration_score)}",
        "",
        "## Demographic Fairness",
        f"- **Engagement Spread**: {df.variance_score * 100:.1f}%",
    ]
    lines += [f"  - {bucket}: {rate * 100:.1f}%" for bucket, rate in sorted(df.engagement_by_demographic.items())]
    lines += [
        f"- **Status**: {_status(df.variance_score <= settings.fairness_max_demographic_variance)}",
        "",
        "## Alerts",
    ]
    if record.alerts:
        lines += [f"- [{a.severity.upper()}] {a.type}: {a.message}" for a in record.alerts]
    else:
        lines.append("- None")
    lines += [
        "",
        "## Overall Fairness Score",
        f"{score:.1f}% - {fairness_grade(score)}",
        "",
    ]
    return "\n".join(lines)


class FairnessAuditor:
    def __init__(self, store, alert_channel=None, settings: Optional[Settings] = None,
                 metrics: Optional[MetricsSink] = None):
        self.store = store
        self.alert_channel = alert_channel
        self.settings = settings or default_settings
        self.metrics = metrics or NullMetricsSink()

    def compute_metrics(self, fusion_rows: Rows, engagement_rows: Rows) -> FairnessMetrics:
        cfg = self.settings
        return FairnessMetrics(
            genre_diversity=genre_diversity(fusion_rows),
            creator_representation=creator_representation(fusion_rows, cfg.fairness_max_creator_share),
            content_age_balance=content_age_balance(
                fusion_rows, cfg.fairness_target_recent_content, cfg.fairness_recent_years
            ),
            demographic_fairness=demographic_fairness(engagement_rows, cfg.fairness_max_demographic_variance),
            exploration_comfort=exploration_comfort(fusion_rows, cfg.fairness_target_familiar_content),
        )

    async def audit(self, window: Union[str, timedelta, None] = None) -> FairnessAuditRecord:
        """Compute metrics, persist the audit record and dispatch high/critical alerts."""
        span = parse_time_window(window or self.settings.fairness_default_window)
        end = utc_now()
        start = end - span
        logger.info(f"Starting fairness audit for {start.isoformat()} .. {end.isoformat()}")

        async with Timer(self.metrics, "fairness.audit"):
            fusion_rows, engagement_rows = await asyncio.gather(
                self.store.query_log_window(FUSION_LOG_METHOD, start, end),
                self.store.query_log_window(ENGAGEMENT_LOG_METHOD, start, end),
            )
            metrics = self.compute_metrics(fusion_rows, engagement_rows)
            alerts = build_alerts(metrics, fusion_rows, engagement_rows, self.settings, now=end)

        record = FairnessAuditRecord(window_start=start, window_end=end, metrics=metrics, alerts=alerts)
        await self.store.insert_audit_record(record)

        for alert in alerts:
            logger.warning(f"Fairness alert {alert.type} ({alert.severity}): {alert.message}")
            await self.metrics.increment(f"fairness.alerts.{alert.type}")
            if alert.is_dispatchable:
                await self._dispatch(alert)

        logger.info(f"Fairness audit finished: {len(fusion_rows)} log rows, {len(alerts)} alerts")
        return record

    async def _dispatch(self, alert: BiasAlert) -> None:
        try:
            await self.store.insert_bias_alert(alert)
        except Exception as e:
            logger.error(f"Failed to persist bias alert {alert.type}: {e}")
        if self.alert_channel is None:
            return
        try:
            await self.alert_channel.dispatch(alert)
        except Exception as e:
            logger.error(f"Failed to dispatch bias alert {alert.type}: {e}")

    async def run_audit(self, window: Union[str, timedelta, None] = None) -> FairnessMetrics:
        return (await self.audit(window)).metrics

    async def generate_report(self, window: Union[str, timedelta, None] = None) -> str:
        window = window or self.settings.fairness_report_window
        record = await self.audit(window)
        label = window if isinstance(window, str) else f"{window.total_seconds() / 3600:g}h"
        return render_report(record, label, self.settings, generated_at=record.window_end)
