"""
metrics.py

Observability sinks injected into the aggregator, fusion engine and auditor.
Counters and latency aggregates live in Redis hashes; sink failures never
propagate into the pipeline.
"""
from __future__ import annotations
import logging
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

COUNTERS_KEY = "metrics:counters"
GAUGES_KEY = "metrics:gauges"


class MetricsSink(Protocol):
    async def increment(self, name: str, amount: int = 1) -> None: ...

    async def timing(self, name: str, milliseconds: float) -> None: ...

    async def gauge(self, name: str, value: float) -> None: ...


class NullMetricsSink:
    async def increment(self, name: str, amount: int = 1) -> None:
        return None

    async def timing(self, name: str, milliseconds: float) -> None:
        return None

    async def gauge(self, name: str, value: float) -> None:
        return None


class InMemoryMetricsSink:
    """Process-local sink, used by the CLI when Redis is not wanted and by tests."""

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.timings: Dict[str, List[float]] = defaultdict(list)
        self.gauges: Dict[str, float] = {}

    async def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    async def timing(self, name: str, milliseconds: float) -> None:
        self.timings[name].append(float(milliseconds))

    async def gauge(self, name: str, value: float) -> None:
        self.gauges[name] = float(value)


class RedisMetricsSink:
    def __init__(self, redis=None):
        self._redis = redis

    def _r(self):
        if self._redis is not None:
            return self._redis
        from bingeboard.core.redis_client import get_redis
        return get_redis()

    async def increment(self, name: str, amount: int = 1) -> None:
        try:
            await self._r().hincrby(COUNTERS_KEY, name, amount)
        except Exception as e:
            logger.debug(f"metrics increment failed for {name}: {e}")

    async def gauge(self, name: str, value: float) -> None:
        try:
            await self._r().hset(GAUGES_KEY, name, float(value))
        except Exception as e:
            logger.debug(f"metrics gauge failed for {name}: {e}")

    async def timing(self, name: str, milliseconds: float) -> None:
        """Record latency aggregates (count/sum/min/max)."""
        r = self._r()
        try:
            key = f"metrics:latency:{name}"
            ms = float(milliseconds)
            pipe = r.pipeline()
            pipe.hincrby(key, "count", 1)
            pipe.hincrbyfloat(key, "sum", ms)
            pipe.hget(key, "min")
            pipe.hget(key, "max")
            res = await pipe.execute()
            # res: [count, sum, min, max]
            cur_min, cur_max = res[2], res[3]
            if cur_min is None or ms < float(cur_min):
                await r.hset(key, "min", ms)
            if cur_max is None or ms > float(cur_max):
                await r.hset(key, "max", ms)
        except Exception as e:
            logger.debug(f"metrics timing failed for {name}: {e}")

    async def counters_snapshot(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        try:
            data = await self._r().hgetall(COUNTERS_KEY)
            for k, v in (data or {}).items():
                key = k.decode("utf-8") if isinstance(k, bytes) else str(k)
                try:
                    out[key] = int(v)
                except (TypeError, ValueError):
                    out[key] = 0
        except Exception as e:
            logger.debug(f"metrics snapshot failed: {e}")
        return out


class Timer:
    """Async context manager reporting elapsed milliseconds to a sink."""

    def __init__(self, sink: Optional[MetricsSink], name: str):
        self.sink = sink
        self.name = name
        self._start: Optional[float] = None
        self.elapsed_ms: float = 0.0

    async def __aenter__(self):
        self._start = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._start is not None:
            self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
            if self.sink is not None:
                await self.sink.timing(self.name, self.elapsed_ms)
        return False


def snapshot(sink: Any) -> Dict[str, Any]:
    """Readable view of an InMemoryMetricsSink, empty for other sinks."""
    if isinstance(sink, InMemoryMetricsSink):
        return {"counters": dict(sink.counters), "gauges": dict(sink.gauges)}
    return {}
