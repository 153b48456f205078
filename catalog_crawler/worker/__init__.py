"""Fetch workers and the shared admission state they consult."""

from .allowlist import DomainAllowlist
from .frontier import Frontier, FrontierItem
from .pool import FetchWorkerPool, JobRun
from .proxy import ProxyPool, ProxyRecord
from .rate_limiter import RateLimiter

__all__ = [
    "DomainAllowlist",
    "FetchWorkerPool",
    "Frontier",
    "FrontierItem",
    "JobRun",
    "ProxyPool",
    "ProxyRecord",
    "RateLimiter",
]
