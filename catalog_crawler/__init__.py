"""Catalog crawler job engine."""

__all__ = [
    "config",
    "errors",
    "models",
    "store",
    "runtime",
    "scheduling",
]

__version__ = "0.1.0"
