"""Cost-ordered page fetcher.

Strategies are tried cheapest first until one produces usable content:

1. direct HTTP GET with browser-like headers
2. storefront JSON endpoints (``?view=json``, ``.json``, ``/product.json``)
3. embedded structured data (schema.org Product) in the direct HTML
4. headless browser render

The whole chain runs under one deadline. Each strategy returns a hit or a
miss; exceptions inside a strategy are turned into misses so the chain always
advances and ``fetch()`` never raises.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from selectolax.parser import HTMLParser

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import utcnow
from pricewatch.ingest.headless import RenderedPage, render_page
from pricewatch.ingest.http_client import (
    BoundedResponse,
    HTTPFetchError,
    default_headers,
    get_bounded,
    json_headers,
)
from pricewatch.ingest.json_extractor import has_json_ld_product
from pricewatch.ingest.memory_guard import MemoryGuard
from pricewatch.ingest.storefront import detect_storefront, json_probe_urls, parse_product_payload

logger = logging.getLogger(__name__)

MIN_HTML_LENGTH = 5000
MIN_BODY_TEXT = 100


class FetchMode(str, Enum):
    """Strategy that produced the content."""

    HTTP = "http"
    STOREFRONT_JSON = "storefront_json"
    STRUCTURED_DATA = "structured_data"
    HEADLESS = "headless"
    FAILED = "failed"


class ContentKind(str, Enum):
    HTML = "html"
    STOREFRONT_JSON = "storefront_json"


@dataclass
class FetchResult:
    """Result of a fetch operation."""

    success: bool
    mode_used: FetchMode
    url: str
    final_url: Optional[str] = None
    status_code: Optional[int] = None
    content: Optional[str] = None
    content_kind: ContentKind = ContentKind.HTML
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    fetched_at: datetime = field(default_factory=utcnow)


@dataclass
class StrategyOutcome:
    """A hit carries a result; a miss carries the reason the chain moved on."""

    result: Optional[FetchResult] = None
    reason: Optional[str] = None

    @property
    def hit(self) -> bool:
        return self.result is not None


def hit(result: FetchResult) -> StrategyOutcome:
    return StrategyOutcome(result=result)


def miss(reason: str) -> StrategyOutcome:
    return StrategyOutcome(reason=reason)


@dataclass
class FetchContext:
    """State shared by the strategies of one fetch."""

    url: str
    response: Optional[BoundedResponse] = None
    html_complete: bool = False
    platform: Optional[str] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def page_url(self) -> str:
        return self.response.url if self.response else self.url


class FetchFailedError(Exception):
    """Raised by callers that need an exception instead of a failed result."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to fetch {url}: {reason}")


Strategy = Callable[[FetchContext], Awaitable[StrategyOutcome]]
Renderer = Callable[..., Awaitable[RenderedPage]]


def is_complete_html(html: Optional[str]) -> bool:
    """
    Heuristic for "this is a real page, not a shell or interstitial".

    Requires a minimum length, html and body tags, and some visible body text
    once scripts and styles are removed.
    """
    if not html or len(html) < MIN_HTML_LENGTH:
        return False
    lowered = html.lower()
    if "<html" not in lowered or "<body" not in lowered:
        return False

    tree = HTMLParser(html)
    tree.strip_tags(["script", "style", "noscript"])
    body = tree.body
    text = body.text(separator=" ", strip=True) if body is not None else ""
    return len(text) > MIN_BODY_TEXT


class PageFetcher:
    """
    Fetch product pages through the strategy chain.

    Args:
        client: Shared httpx client (created lazily if omitted)
        renderer: Coroutine that renders a page headlessly
        memory_guard: Sampler consulted before the headless step
        timeout_seconds: Global deadline for the whole chain
        max_content_bytes: Byte ceiling for any content
        headless_enabled: Allow the headless step
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        renderer: Optional[Renderer] = None,
        memory_guard: Optional[MemoryGuard] = None,
        timeout_seconds: Optional[float] = None,
        max_content_bytes: Optional[int] = None,
        headless_enabled: Optional[bool] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self._renderer = renderer or render_page
        self.memory_guard = memory_guard or MemoryGuard()
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self.max_content_bytes = max_content_bytes or settings.max_content_bytes
        self.headless_enabled = (
            settings.headless_enabled if headless_enabled is None else headless_enabled
        )

        self.strategies: List[Tuple[str, Strategy]] = [
            ("direct_http", self._direct_http),
            ("storefront_json", self._storefront_json),
            ("structured_data", self._structured_data),
            ("headless", self._headless),
        ]

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def close(self):
        """Close the HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a product page. Never raises; failures come back as results.

        Args:
            url: Product page URL

        Returns:
            FetchResult (success=False, mode_used=FAILED on exhaustion or timeout)
        """
        started = time.monotonic()
        ctx = FetchContext(url=url)

        if urlsplit(url).scheme not in ("http", "https"):
            result = self._failure(ctx, f"Unsupported URL: {url}")
        else:
            try:
                result = await asyncio.wait_for(self._run_chain(ctx), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Fetch of {url} timed out after {self.timeout_seconds:g}s")
                result = self._failure(ctx, f"Fetch timed out after {self.timeout_seconds:g}s")

        duration = time.monotonic() - started
        result.metadata.update(
            {
                "attempts": ctx.attempts,
                "timing_ms": int(duration * 1000),
                "platform": ctx.platform,
                "redirected": bool(result.final_url and result.final_url != url),
            }
        )
        result.metadata.setdefault("json_ld_found", False)
        metrics.record_fetch(result.mode_used.value, result.success, duration)
        return result

    async def _run_chain(self, ctx: FetchContext) -> FetchResult:
        for name, strategy in self.strategies:
            step_started = time.monotonic()
            try:
                outcome = await strategy(ctx)
            except Exception as e:
                logger.debug(f"Strategy {name} raised for {ctx.url}: {e}", exc_info=True)
                outcome = miss(f"{type(e).__name__}: {e}")

            ctx.attempts.append(
                {
                    "strategy": name,
                    "hit": outcome.hit,
                    "reason": outcome.reason,
                    "ms": int((time.monotonic() - step_started) * 1000),
                }
            )
            if outcome.hit:
                logger.debug(f"Fetched {ctx.url} via {name}")
                return outcome.result

            metrics.record_strategy_miss(name)
            logger.debug(f"Strategy {name} missed for {ctx.url}: {outcome.reason}")

        reasons = "; ".join(f"{a['strategy']}: {a['reason']}" for a in ctx.attempts)
        logger.warning(f"All fetch strategies failed for {ctx.url}")
        return self._failure(ctx, f"All fetch strategies failed ({reasons})")

    def _result(
        self,
        ctx: FetchContext,
        mode: FetchMode,
        content: str,
        kind: ContentKind = ContentKind.HTML,
    ) -> FetchResult:
        response = ctx.response
        return FetchResult(
            success=True,
            mode_used=mode,
            url=ctx.url,
            final_url=ctx.page_url,
            status_code=response.status_code if response else None,
            content=content,
            content_kind=kind,
            metadata={"content_type": response.content_type} if response else {},
        )

    def _failure(self, ctx: FetchContext, error: str) -> FetchResult:
        response = ctx.response
        return FetchResult(
            success=False,
            mode_used=FetchMode.FAILED,
            url=ctx.url,
            final_url=response.url if response else None,
            status_code=response.status_code if response else None,
            error=error,
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _direct_http(self, ctx: FetchContext) -> StrategyOutcome:
        client = await self._get_client()
        response = await get_bounded(
            client,
            ctx.url,
            max_bytes=self.max_content_bytes,
            headers=default_headers(),
            timeout=settings.http_timeout_seconds,
            max_attempts=settings.http_max_attempts,
        )
        ctx.response = response
        ctx.platform = detect_storefront(response.url, response.text if response.ok else None)

        if not response.ok:
            return miss(f"HTTP {response.status_code}")

        ctx.html_complete = is_complete_html(response.text)
        if ctx.platform:
            return miss(f"{ctx.platform} storefront detected")
        if not ctx.html_complete:
            return miss(f"incomplete HTML ({len(response.text)} chars)")
        return hit(self._result(ctx, FetchMode.HTTP, response.text))

    async def _storefront_json(self, ctx: FetchContext) -> StrategyOutcome:
        platform = ctx.platform or detect_storefront(ctx.url)
        if platform is None:
            return miss("no storefront platform detected")
        ctx.platform = platform

        client = await self._get_client()
        for probe_url in json_probe_urls(ctx.page_url):
            try:
                response = await get_bounded(
                    client,
                    probe_url,
                    max_bytes=self.max_content_bytes,
                    headers=json_headers(),
                    timeout=settings.http_timeout_seconds,
                )
            except HTTPFetchError as e:
                logger.debug(f"Storefront probe {probe_url} failed: {e}")
                continue

            if not response.ok or parse_product_payload(response.text) is None:
                continue

            result = self._result(ctx, FetchMode.STOREFRONT_JSON, response.text, ContentKind.STOREFRONT_JSON)
            result.status_code = response.status_code
            result.metadata["storefront_json_url"] = probe_url
            return hit(result)

        return miss(f"no {platform} JSON endpoint returned a product")

    async def _structured_data(self, ctx: FetchContext) -> StrategyOutcome:
        response = ctx.response
        if response is None or not response.ok:
            return miss("no HTML from direct request")

        if has_json_ld_product(response.text):
            result = self._result(ctx, FetchMode.STRUCTURED_DATA, response.text)
            result.metadata["json_ld_found"] = True
            return hit(result)

        # Storefront page whose JSON endpoints failed but whose markup is usable
        if ctx.html_complete:
            return hit(self._result(ctx, FetchMode.HTTP, response.text))

        return miss("no product schema block in HTML")

    async def _headless(self, ctx: FetchContext) -> StrategyOutcome:
        if not self.headless_enabled:
            return miss("headless rendering disabled")

        sample = self.memory_guard.check()
        page = await self._renderer(
            ctx.url,
            timeout_seconds=settings.headless_timeout_seconds,
            user_agent=settings.user_agent,
        )

        if page.status_code is not None and page.status_code >= 400:
            return miss(f"rendered page returned HTTP {page.status_code}")
        if not page.html or not page.html.strip():
            return miss("empty rendered page")
        if len(page.html.encode("utf-8")) > self.max_content_bytes:
            return miss(f"rendered content exceeds {self.max_content_bytes} bytes")

        result = FetchResult(
            success=True,
            mode_used=FetchMode.HEADLESS,
            url=ctx.url,
            final_url=page.final_url,
            status_code=page.status_code,
            content=page.html,
            metadata={
                "console_errors": page.console_errors,
                "memory_rss_mb": round(sample.rss_mb, 1),
                "memory_reclaimed": sample.reclaimed,
            },
        )
        return hit(result)
