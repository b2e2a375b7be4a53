"""
factory.py

Wires the pipeline components to their production collaborators
(SQLAlchemy metrics store, behavior log, Redis metrics and alerts).
Shared by the Celery tasks and the CLI.
"""
from typing import Optional

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.core.metrics import MetricsSink, RedisMetricsSink
from bingeboard.core.shutdown import ShutdownFlag
from bingeboard.services.aggregation import NightlyAggregator
from bingeboard.services.alerts import RedisAlertChannel
from bingeboard.services.behavior_log import BehaviorLogReader
from bingeboard.services.fairness import FairnessAuditor
from bingeboard.services.fusion import FusionEngine
from bingeboard.services.metrics_store import MetricsStore


def build_aggregator(shutdown: Optional[ShutdownFlag] = None, settings: Optional[Settings] = None,
                     metrics: Optional[MetricsSink] = None) -> NightlyAggregator:
    cfg = settings or default_settings
    return NightlyAggregator(
        MetricsStore(),
        BehaviorLogReader(settings=cfg),
        settings=cfg,
        metrics=metrics or RedisMetricsSink(),
        shutdown=shutdown,
    )


def build_fairness_auditor(settings: Optional[Settings] = None,
                           metrics: Optional[MetricsSink] = None) -> FairnessAuditor:
    cfg = settings or default_settings
    return FairnessAuditor(
        MetricsStore(),
        alert_channel=RedisAlertChannel(cfg.alert_channel),
        settings=cfg,
        metrics=metrics or RedisMetricsSink(),
    )


def build_fusion_engine(settings: Optional[Settings] = None,
                        metrics: Optional[MetricsSink] = None) -> FusionEngine:
    return FusionEngine.from_settings(settings, store=MetricsStore(), metrics=metrics or RedisMetricsSink())
