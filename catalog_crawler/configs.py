"""Validation and in-place editing of crawler configs."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, List, Mapping, Optional

from .errors import InvalidConfigError
from .extraction.strategies import build_strategy
from .models import ConfigStatus, CrawlerConfig, Frequency, utcnow
from .scheduling import compute_next_crawl, next_cron_time

EDITABLE_FIELDS = frozenset(
    {
        "name",
        "target_url",
        "selectors",
        "strategy",
        "rate_limit",
        "frequency",
        "cron_expression",
        "status",
        "owner",
        "supplier_id",
        "options",
        "headers",
        "cookies",
    }
)

# A running job crawls with these; they cannot change under it.
LOCKED_WHILE_RUNNING = ("target_url", "strategy", "selectors")


def validate_config(config: CrawlerConfig) -> None:
    try:
        if not config.name or not config.target_url:
            raise ValueError("name and target_url are required")
        if not 1 <= config.rate_limit <= 1000:
            raise ValueError("rate_limit must be between 1 and 1000 requests per minute")
        if config.frequency == Frequency.CUSTOM:
            if not config.cron_expression:
                raise ValueError("cron_expression is required for custom frequency")
            next_cron_time(config.cron_expression, utcnow())
        build_strategy(config.strategy, config.selectors)
    except ValueError as exc:
        raise InvalidConfigError(str(exc)) from exc


def locked_changes(config: CrawlerConfig, changes: Mapping[str, Any]) -> List[str]:
    return [name for name in LOCKED_WHILE_RUNNING if name in changes and changes[name] != getattr(config, name)]


def apply_changes(
    config: CrawlerConfig, changes: Mapping[str, Any], now: Optional[datetime] = None
) -> CrawlerConfig:
    """Apply ``changes`` to ``config`` in place.

    ``last_crawled`` is never touched. ``next_crawl`` is recomputed from it
    when the frequency or cron expression changes.
    """

    unknown = sorted(set(changes) - EDITABLE_FIELDS)
    if unknown:
        raise InvalidConfigError(f"Fields cannot be edited: {', '.join(unknown)}")

    schedule = (config.frequency, config.cron_expression)
    known_options = config.options.to_dict()
    options = replace(config.options)
    try:
        for name, value in changes.items():
            if name == "options":
                for key, option in (value or {}).items():
                    if key not in known_options:
                        raise ValueError(f"Unknown option {key!r}")
                    setattr(options, key, option)
                config.options = options
            elif name == "frequency":
                config.frequency = Frequency(value)
            elif name == "status":
                config.status = ConfigStatus(value)
            elif name == "rate_limit":
                config.rate_limit = int(value)
            else:
                setattr(config, name, value)
    except (TypeError, ValueError) as exc:
        raise InvalidConfigError(str(exc)) from exc

    validate_config(config)
    if (config.frequency, config.cron_expression) != schedule:
        config.next_crawl = compute_next_crawl(config.frequency, config.last_crawled, config.cron_expression, now)
    return config


__all__ = ["EDITABLE_FIELDS", "LOCKED_WHILE_RUNNING", "apply_changes", "locked_changes", "validate_config"]
