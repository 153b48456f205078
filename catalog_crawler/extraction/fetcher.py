"""Page fetching backends and the extraction entry point used by workers."""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from playwright.async_api import Browser, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import (
    BlockedError,
    ExtractorUnavailableError,
    PermanentFetchError,
    TransientFetchError,
)
from ..models import ExtractionResult
from ..monitoring.metrics import FETCH_LATENCY
from .strategies import ExtractionStrategy, looks_like_captcha

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 425, 429}
BLOCKED_STATUSES = {401, 403, 451}
GONE_STATUSES = {404, 410}


@dataclass
class FetchedPage:
    url: str
    status_code: Optional[int]
    body: str
    elapsed_ms: Optional[int] = None


def raise_for_status(status_code: Optional[int], url: str) -> None:
    if status_code is None or status_code < 400:
        return
    if status_code in GONE_STATUSES:
        raise PermanentFetchError(f"{url} returned {status_code}", status_code)
    if status_code in BLOCKED_STATUSES:
        raise BlockedError(f"{url} refused access with {status_code}", status_code)
    if status_code in TRANSIENT_STATUSES or status_code >= 500:
        raise TransientFetchError(f"{url} returned {status_code}", status_code)
    raise PermanentFetchError(f"{url} returned {status_code}", status_code)


class PageFetcher(abc.ABC):
    @abc.abstractmethod
    async def fetch(
        self,
        url: str,
        proxy: Optional[str],
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
    ) -> FetchedPage: ...

    async def close(self) -> None:
        return None


class HttpxPageFetcher(PageFetcher):
    """Plain HTTP fetching with one pooled client per egress proxy."""

    def __init__(self, user_agent: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.user_agent = user_agent
        self._transport = transport
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}

    def _client(self, proxy: Optional[str]) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            client = httpx.AsyncClient(
                proxy=proxy,
                transport=self._transport,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
            self._clients[proxy] = client
        return client

    async def fetch(
        self,
        url: str,
        proxy: Optional[str],
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
    ) -> FetchedPage:
        start = time.perf_counter()
        try:
            response = await self._client(proxy).get(url, headers=headers, cookies=cookies, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"Timed out fetching {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(f"Transport error fetching {url}: {exc}") from exc
        return FetchedPage(
            url=str(response.url),
            status_code=response.status_code,
            body=response.text,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )

    async def close(self) -> None:
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.aclose()


class PlaywrightPageFetcher(PageFetcher):
    """Headless browser rendering; the browser is launched on first use."""

    def __init__(self, user_agent: str, browser_type: str = "chromium", headless: bool = True) -> None:
        self.user_agent = user_agent
        self.browser_type = browser_type
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _get_browser(self) -> Browser:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                launcher = getattr(self._playwright, self.browser_type)
                self._browser = await launcher.launch(headless=self.headless)
            except PlaywrightError as exc:
                raise ExtractorUnavailableError(f"Could not launch {self.browser_type}: {exc}") from exc
            logger.info("Launched headless browser", extra={"browser": self.browser_type})
            return self._browser

    async def fetch(
        self,
        url: str,
        proxy: Optional[str],
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
    ) -> FetchedPage:
        browser = await self._get_browser()
        start = time.perf_counter()
        context = await browser.new_context(
            user_agent=self.user_agent,
            proxy={"server": proxy} if proxy else None,
            extra_http_headers=headers or None,
        )
        try:
            if cookies:
                await context.add_cookies([{"name": k, "value": v, "url": url} for k, v in cookies.items()])
            page = await context.new_page()
            response = await page.goto(url, wait_until="networkidle", timeout=timeout * 1000)
            body = await page.content()
            return FetchedPage(
                url=page.url,
                status_code=response.status if response is not None else None,
                body=body,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
            )
        except PlaywrightTimeoutError as exc:
            raise TransientFetchError(f"Timed out rendering {url}: {exc}") from exc
        except PlaywrightError as exc:
            raise TransientFetchError(f"Browser error rendering {url}: {exc}") from exc
        finally:
            await context.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class Extractor:
    """Fetches a page through the right backend and runs the strategy on it.

    HTML pages go through the browser when one is configured and the config
    asks for it; JSON endpoints always use plain HTTP.
    """

    def __init__(self, http: PageFetcher, browser: Optional[PageFetcher] = None) -> None:
        self.http = http
        self.browser = browser

    def _fetcher_for(self, strategy: ExtractionStrategy, use_browser: bool) -> PageFetcher:
        if use_browser and self.browser is not None and strategy.content_type == "html":
            return self.browser
        return self.http

    async def fetch_and_extract(
        self,
        url: str,
        strategy: ExtractionStrategy,
        proxy: Optional[str],
        timeout_ms: int,
        use_browser: bool = False,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
    ) -> ExtractionResult:
        timeout = timeout_ms / 1000
        fetcher = self._fetcher_for(strategy, use_browser)
        start = time.perf_counter()
        try:
            page = await asyncio.wait_for(fetcher.fetch(url, proxy, timeout, headers, cookies), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientFetchError(f"Extraction of {url} exceeded {timeout_ms} ms") from exc
        FETCH_LATENCY.observe(time.perf_counter() - start)

        raise_for_status(page.status_code, url)
        if strategy.content_type == "html" and looks_like_captcha(page.body):
            raise BlockedError(f"CAPTCHA challenge served for {url}", page.status_code)

        result = strategy.extract(page.body, page.url)
        result.status_code = page.status_code
        result.elapsed_ms = page.elapsed_ms
        return result

    async def close(self) -> None:
        await self.http.close()
        if self.browser is not None:
            await self.browser.close()


__all__ = [
    "Extractor",
    "FetchedPage",
    "HttpxPageFetcher",
    "PageFetcher",
    "PlaywrightPageFetcher",
    "raise_for_status",
]
