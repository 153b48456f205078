"""Adaptive concurrency and delay recommendations from recent job metrics."""

from __future__ import annotations

import abc
import json
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import psutil
from redis.asyncio import Redis

from ..models import PerformanceSample

logger = logging.getLogger(__name__)

FAST_CONCURRENCY = 10
DEFAULT_CONCURRENCY = 5
SLOW_CONCURRENCY = 3

FAST_DELAY_MS = 500
DEFAULT_DELAY_MS = 1000
SLOW_RESPONSE_DELAY_MS = 1500
FAILING_DELAY_MS = 2000

HEALTHY_SUCCESS_RATE = 0.95
FAILING_SUCCESS_RATE = 0.8
FAST_RESPONSE_MS = 500
SLOW_RESPONSE_MS = 2000


class MetricsStore(abc.ABC):
    """Time-ordered sample storage queried as a rolling window."""

    @abc.abstractmethod
    async def add(self, job_id: str, sample: PerformanceSample) -> None: ...

    @abc.abstractmethod
    async def range(self, job_id: str, since: float) -> List[PerformanceSample]: ...

    @abc.abstractmethod
    async def clear(self, job_id: str) -> None: ...

    async def close(self) -> None:
        return None


class MemoryMetricsStore(MetricsStore):
    def __init__(self, retention_seconds: float = 3600.0) -> None:
        self.retention_seconds = retention_seconds
        self._samples: Dict[str, List[PerformanceSample]] = defaultdict(list)

    async def add(self, job_id: str, sample: PerformanceSample) -> None:
        samples = self._samples[job_id]
        samples.append(sample)
        cutoff = sample.timestamp - self.retention_seconds
        while samples and samples[0].timestamp < cutoff:
            samples.pop(0)

    async def range(self, job_id: str, since: float) -> List[PerformanceSample]:
        return [sample for sample in self._samples.get(job_id, []) if sample.timestamp >= since]

    async def clear(self, job_id: str) -> None:
        self._samples.pop(job_id, None)


class RedisMetricsStore(MetricsStore):
    """Samples kept in one sorted set per job, scored by timestamp."""

    prefix = "crawler:metrics:"

    def __init__(self, client: Redis, retention_seconds: float = 3600.0) -> None:
        self.client = client
        self.retention_seconds = retention_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisMetricsStore":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    async def add(self, job_id: str, sample: PerformanceSample) -> None:
        key = self._key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {json.dumps(sample.to_dict(), sort_keys=True): sample.timestamp})
            pipe.zremrangebyscore(key, "-inf", sample.timestamp - self.retention_seconds)
            await pipe.execute()

    async def range(self, job_id: str, since: float) -> List[PerformanceSample]:
        raw = await self.client.zrangebyscore(self._key(job_id), since, "+inf")
        return [PerformanceSample.from_dict(json.loads(item)) for item in raw]

    async def clear(self, job_id: str) -> None:
        await self.client.delete(self._key(job_id))

    async def close(self) -> None:
        await self.client.aclose()


def memory_usage_pct() -> float:
    return float(psutil.virtual_memory().percent)


class PerformanceTuner:
    """Recommends worker concurrency and inter-request delay per job.

    Samples from the last ``window_seconds`` are averaged. Each rule is
    evaluated on its own and the safer value wins: the lower concurrency and
    the longer delay.
    """

    def __init__(
        self,
        store: MetricsStore,
        window_seconds: float = 300.0,
        memory_threshold_pct: float = 80.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.window_seconds = window_seconds
        self.memory_threshold_pct = memory_threshold_pct
        self._clock = clock
        self._cache_clearers: Dict[str, Callable[[], None]] = {}

    async def record(self, job_id: str, sample: PerformanceSample) -> None:
        if not sample.timestamp:
            sample = PerformanceSample(
                success_rate=sample.success_rate,
                avg_response_time_ms=sample.avg_response_time_ms,
                requests_per_second=sample.requests_per_second,
                memory_usage_pct=sample.memory_usage_pct,
                timestamp=self._clock(),
            )
        await self.store.add(job_id, sample)

    async def window(self, job_id: str, seconds: Optional[float] = None) -> List[PerformanceSample]:
        span = self.window_seconds if seconds is None else seconds
        return await self.store.range(job_id, self._clock() - span)

    @staticmethod
    def _averages(samples: List[PerformanceSample]) -> Optional[Dict[str, float]]:
        if not samples:
            return None
        count = len(samples)
        return {
            "success_rate": sum(s.success_rate for s in samples) / count,
            "avg_response_time_ms": sum(s.avg_response_time_ms for s in samples) / count,
            "requests_per_second": sum(s.requests_per_second for s in samples) / count,
            "memory_usage_pct": sum(s.memory_usage_pct for s in samples) / count,
        }

    @staticmethod
    def concurrency_for(success_rate: float, avg_response_ms: float) -> int:
        candidates = [DEFAULT_CONCURRENCY]
        if success_rate > HEALTHY_SUCCESS_RATE and avg_response_ms < FAST_RESPONSE_MS:
            candidates = [FAST_CONCURRENCY]
        if success_rate < FAILING_SUCCESS_RATE or avg_response_ms > SLOW_RESPONSE_MS:
            candidates.append(SLOW_CONCURRENCY)
        return min(candidates)

    @staticmethod
    def delay_for(success_rate: float, avg_response_ms: float) -> int:
        penalties = []
        if success_rate < FAILING_SUCCESS_RATE:
            penalties.append(FAILING_DELAY_MS)
        if avg_response_ms > SLOW_RESPONSE_MS:
            penalties.append(SLOW_RESPONSE_DELAY_MS)
        if penalties:
            return max(penalties)
        if success_rate > HEALTHY_SUCCESS_RATE and avg_response_ms < FAST_RESPONSE_MS:
            return FAST_DELAY_MS
        return DEFAULT_DELAY_MS

    async def recommend_concurrency(self, job_id: str) -> int:
        averages = self._averages(await self.window(job_id))
        if averages is None:
            return DEFAULT_CONCURRENCY
        return self.concurrency_for(averages["success_rate"], averages["avg_response_time_ms"])

    async def recommend_delay_ms(self, job_id: str) -> int:
        averages = self._averages(await self.window(job_id))
        if averages is None:
            return DEFAULT_DELAY_MS
        return self.delay_for(averages["success_rate"], averages["avg_response_time_ms"])

    def register_cache(self, job_id: str, clear: Callable[[], None]) -> None:
        self._cache_clearers[job_id] = clear

    def unregister_cache(self, job_id: str) -> None:
        self._cache_clearers.pop(job_id, None)

    async def forget(self, job_id: str) -> None:
        """Drop everything held for a finished job."""

        self.unregister_cache(job_id)
        await self.store.clear(job_id)

    async def manage_memory(self, job_id: str) -> bool:
        """Clear the job's caches when the last minute shows memory pressure.

        Advisory only: the job keeps running either way.
        """

        samples = await self.window(job_id, 60.0)
        if not samples or samples[-1].memory_usage_pct <= self.memory_threshold_pct:
            return False
        clear = self._cache_clearers.get(job_id)
        if clear is not None:
            clear()
        logger.warning(
            "Memory pressure, cleared job caches",
            extra={"job_id": job_id, "memory_usage_pct": samples[-1].memory_usage_pct},
        )
        return True

    async def approaching_rate_limit(self, job_id: str, rate_limit_per_minute: int) -> bool:
        averages = self._averages(await self.window(job_id, 60.0))
        if averages is None:
            return False
        return averages["requests_per_second"] * 60 > 0.8 * rate_limit_per_minute

    async def recommendations(self, job_id: str) -> List[str]:
        averages = self._averages(await self.window(job_id, 3600.0))
        if averages is None:
            return []
        hints: List[str] = []
        if averages["success_rate"] < FAILING_SUCCESS_RATE:
            hints.append("Consider increasing request delay")
            hints.append("Check target site response times")
        if averages["avg_response_time_ms"] > SLOW_RESPONSE_MS:
            hints.append("Target responds slowly, consider a lower page cap")
        if averages["memory_usage_pct"] > 70:
            hints.append("Memory usage is high, consider smaller pagination batches")
        return hints


__all__ = [
    "DEFAULT_CONCURRENCY",
    "DEFAULT_DELAY_MS",
    "MemoryMetricsStore",
    "MetricsStore",
    "PerformanceTuner",
    "RedisMetricsStore",
    "memory_usage_pct",
]
