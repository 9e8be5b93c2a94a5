"""HTTP client helpers: browser-like headers, bounded reads and timeout retries."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from pricewatch.config import settings

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


class HTTPFetchError(RuntimeError):
    """Raised when a request cannot produce a usable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OversizedContentError(HTTPFetchError):
    """Raised when a body exceeds the configured byte ceiling."""

    def __init__(self, url: str, limit: int):
        super().__init__(f"Content from {url} exceeds {limit} bytes")
        self.limit = limit


@dataclass
class BoundedResponse:
    """Response whose body was read under a byte ceiling."""

    status_code: int
    url: str  # Final URL after redirects
    text: str
    content_type: str = ""
    elapsed_ms: int = 0
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def default_headers(user_agent: Optional[str] = None) -> dict[str, str]:
    """Browser-like headers for product pages."""
    return {
        "User-Agent": user_agent or settings.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "gzip, deflate",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }


def json_headers(user_agent: Optional[str] = None) -> dict[str, str]:
    """Headers for storefront JSON endpoints."""
    headers = default_headers(user_agent)
    headers["Accept"] = "application/json, text/javascript, */*;q=0.01"
    headers.pop("Upgrade-Insecure-Requests", None)
    return headers


async def _read_bounded(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    timeout: float,
    max_bytes: int,
) -> BoundedResponse:
    started = time.monotonic()
    async with client.stream(
        "GET", url, headers=headers, timeout=timeout, follow_redirects=True
    ) as response:
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > max_bytes:
            raise OversizedContentError(url, max_bytes)

        chunks = []
        size = 0
        async for chunk in response.aiter_bytes():
            size += len(chunk)
            if size > max_bytes:
                raise OversizedContentError(url, max_bytes)
            chunks.append(chunk)

        body = b"".join(chunks)
        encoding = response.charset_encoding or "utf-8"
        try:
            text = body.decode(encoding, errors="replace")
        except LookupError:
            text = body.decode("utf-8", errors="replace")

        return BoundedResponse(
            status_code=response.status_code,
            url=str(response.url),
            text=text,
            content_type=response.headers.get("content-type", ""),
            elapsed_ms=int((time.monotonic() - started) * 1000),
            headers=dict(response.headers),
        )


async def get_bounded(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_bytes: Optional[int] = None,
    headers: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
    max_attempts: int = 1,
) -> BoundedResponse:
    """
    GET a URL, reading at most ``max_bytes`` of body.

    Non-2xx responses are returned as-is; the caller decides what they mean.

    Args:
        client: httpx AsyncClient instance
        url: URL to fetch
        max_bytes: Byte ceiling (defaults to settings.max_content_bytes)
        headers: Request headers (defaults to browser-like headers)
        timeout: Per-attempt timeout in seconds
        max_attempts: Attempts for transport errors such as timeouts

    Returns:
        BoundedResponse

    Raises:
        OversizedContentError: If the body exceeds the ceiling
        HTTPFetchError: If every attempt failed at the transport level
    """
    limit = max_bytes or settings.max_content_bytes
    hdrs = headers or default_headers()
    per_attempt = timeout or settings.http_timeout_seconds

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await _read_bounded(client, url, hdrs, per_attempt, limit)
        except RETRYABLE_EXC as e:
            last_exc = e
            if attempt < max_attempts:
                sleep_s = 0.5 * attempt + random.random() * 0.25
                logger.warning(
                    f"{type(e).__name__} fetching {url}, retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{max_attempts})"
                )
                await asyncio.sleep(sleep_s)
        except httpx.HTTPError as e:
            raise HTTPFetchError(f"{type(e).__name__}: {e}") from e

    raise HTTPFetchError(
        f"{type(last_exc).__name__} after {max_attempts} attempts: {last_exc}"
    ) from last_exc
