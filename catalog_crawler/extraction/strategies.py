"""Pluggable strategies that turn a fetched page into raw product records."""

from __future__ import annotations

import abc
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from ..errors import MalformedPageError
from ..models import ExtractionResult

CAPTCHA_MARKERS = re.compile(
    r"(g-recaptcha|h-captcha|cf-challenge|captcha-form|verify you are (a )?human|are you a robot)", re.I
)


def looks_like_captcha(html: str) -> bool:
    if not html:
        return False
    return bool(CAPTCHA_MARKERS.search(html))


def split_selector(selector: str) -> Tuple[str, Optional[str]]:
    """``"img.main@src"`` selects the ``src`` attribute; plain selectors select text."""

    css, sep, attr = selector.rpartition("@")
    if not sep or not css:
        return selector, None
    return css, attr


class ExtractionStrategy(abc.ABC):
    """Turns a page body into records plus an optional next-page link."""

    #: ``html`` pages may be rendered in a browser, ``json`` pages never are.
    content_type = "html"

    @abc.abstractmethod
    def extract(self, body: str, url: str) -> ExtractionResult: ...


class SelectorStrategy(ExtractionStrategy):
    """CSS selector extraction over HTML.

    ``selectors`` looks like::

        {
            "container": "div.product",
            "fields": {"name": "h2", "price": ".price", "image_url": "img@src"},
            "next_page": "a.next@href",
        }

    When ``fields`` is missing, every other string entry is taken as a field.
    """

    content_type = "html"

    def __init__(self, selectors: Mapping[str, Any]) -> None:
        container = selectors.get("container") or selectors.get("product_container")
        if not container:
            raise ValueError("Selector strategy requires a 'container' selector")
        self.container: str = container
        self.next_page: Optional[str] = selectors.get("next_page")
        fields = selectors.get("fields")
        if fields is None:
            reserved = {"container", "product_container", "next_page"}
            fields = {key: value for key, value in selectors.items() if key not in reserved and isinstance(value, str)}
        if "name" not in fields or "price" not in fields:
            raise ValueError("Selector strategy requires 'name' and 'price' field selectors")
        self.fields: Dict[str, str] = dict(fields)

    @staticmethod
    def _select(root: Tag, selector: str, base_url: str) -> Optional[str]:
        css, attr = split_selector(selector)
        node = root.select_one(css)
        if node is None:
            return None
        if attr is None:
            text = node.get_text(" ", strip=True)
            return text or None
        value = node.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        if value and attr in {"href", "src"}:
            return urljoin(base_url, value)
        return value or None

    def extract(self, body: str, url: str) -> ExtractionResult:
        soup = BeautifulSoup(body or "", "lxml")
        records: List[Dict[str, Any]] = []
        for node in soup.select(self.container):
            record = {field: self._select(node, selector, url) for field, selector in self.fields.items()}
            records.append({key: value for key, value in record.items() if value is not None})

        next_page_url = None
        if self.next_page:
            css, attr = split_selector(self.next_page)
            link = soup.select_one(css)
            if link is not None:
                href = link.get(attr or "href")
                if href:
                    next_page_url = urljoin(url, href)
        return ExtractionResult(records=records, next_page_url=next_page_url)


def lookup_path(payload: Any, path: str) -> Any:
    """Resolve a dotted path such as ``data.items.0.price``."""

    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


class JsonApiStrategy(ExtractionStrategy):
    """Dotted-path extraction over JSON payloads.

    ``selectors``: ``{"items": "data.products", "fields": {"name": "title"},
    "next_page": "links.next"}``. Field paths are relative to each item.
    """

    content_type = "json"

    def __init__(self, selectors: Mapping[str, Any]) -> None:
        self.items_path: str = selectors.get("items", "")
        self.fields: Dict[str, str] = dict(selectors.get("fields") or {"name": "name", "price": "price"})
        self.next_page: Optional[str] = selectors.get("next_page")

    def extract(self, body: str, url: str) -> ExtractionResult:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise MalformedPageError(f"Invalid JSON payload from {url}: {exc}") from exc

        items = lookup_path(payload, self.items_path) if self.items_path else payload
        if not isinstance(items, list):
            raise MalformedPageError(f"No item list at '{self.items_path}' in payload from {url}")

        records = []
        for item in items:
            record = {field: lookup_path(item, path) for field, path in self.fields.items()}
            records.append({key: value for key, value in record.items() if value is not None})

        next_page_url = None
        if self.next_page:
            link = lookup_path(payload, self.next_page)
            if isinstance(link, str) and link:
                next_page_url = urljoin(url, link)
        return ExtractionResult(records=records, next_page_url=next_page_url)


STRATEGIES = {
    "selector": SelectorStrategy,
    "json_api": JsonApiStrategy,
}


def build_strategy(name: str, selectors: Mapping[str, Any]) -> ExtractionStrategy:
    try:
        factory = STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown extraction strategy '{name}'") from None
    return factory(selectors)


__all__ = [
    "ExtractionStrategy",
    "JsonApiStrategy",
    "SelectorStrategy",
    "build_strategy",
    "looks_like_captcha",
    "lookup_path",
]
