"""
alerts.py

Notification channels for high/critical bias alerts.
RedisAlertChannel publishes the alert as JSON on a pub/sub channel; both channels
log the alert at ERROR so it reaches log-based alerting as well.
"""
import json
import logging
from typing import Optional, Protocol

from bingeboard.schemas import BiasAlert

logger = logging.getLogger(__name__)


class AlertChannel(Protocol):
    async def dispatch(self, alert: BiasAlert) -> None: ...


def _log_alert(alert: BiasAlert) -> None:
    logger.error(f"BIAS ALERT [{alert.severity.upper()}]: {alert.message}")


class LoggingAlertChannel:
    async def dispatch(self, alert: BiasAlert) -> None:
        _log_alert(alert)


class RedisAlertChannel:
    def __init__(self, channel: Optional[str] = None, redis=None):
        if channel is None:
            from bingeboard.core.config import settings
            channel = settings.alert_channel
        self.channel = channel
        self._redis = redis

    def _r(self):
        if self._redis is not None:
            return self._redis
        from bingeboard.core.redis_client import get_redis
        return get_redis()

    async def dispatch(self, alert: BiasAlert) -> None:
        _log_alert(alert)
        payload = json.dumps(alert.model_dump(mode="json"))
        await self._r().publish(self.channel, payload)
