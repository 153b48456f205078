"""Page fetching and record extraction."""

from .fetcher import Extractor, HttpxPageFetcher, PageFetcher, PlaywrightPageFetcher
from .strategies import ExtractionStrategy, JsonApiStrategy, SelectorStrategy, build_strategy

__all__ = [
    "ExtractionStrategy",
    "Extractor",
    "HttpxPageFetcher",
    "JsonApiStrategy",
    "PageFetcher",
    "PlaywrightPageFetcher",
    "SelectorStrategy",
    "build_strategy",
]
