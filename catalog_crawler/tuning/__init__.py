"""Adaptive tuning of job concurrency and request pacing."""

from .performance import MemoryMetricsStore, MetricsStore, PerformanceTuner, RedisMetricsStore

__all__ = ["MemoryMetricsStore", "MetricsStore", "PerformanceTuner", "RedisMetricsStore"]
