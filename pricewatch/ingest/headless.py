"""Headless browser rendering for JavaScript-only product pages."""

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import List, Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from pricewatch.config import settings

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
]


class HeadlessRenderError(Exception):
    """Page failed to render in the headless browser."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to render {url}: {reason}")


@dataclass
class RenderedPage:
    url: str
    final_url: str
    html: str
    status_code: Optional[int] = None
    console_errors: List[str] = field(default_factory=list)


async def _close_quietly(name: str, handle) -> None:
    try:
        await handle.close()
    except Exception as e:
        logger.debug(f"Error closing headless {name}: {e}")


async def render_page(
    url: str,
    timeout_seconds: Optional[float] = None,
    user_agent: Optional[str] = None,
) -> RenderedPage:
    """
    Render a page in an isolated Chromium context and return its markup.

    Navigation waits for ``domcontentloaded`` only. Browser, context and page
    are closed on every exit path, including cancellation by the caller's
    deadline.

    Raises:
        HeadlessRenderError: navigation failed or timed out
    """
    timeout_ms = int((timeout_seconds or settings.headless_timeout_seconds) * 1000)
    console_errors: List[str] = []

    async with AsyncExitStack() as stack:
        playwright = await stack.enter_async_context(async_playwright())
        browser = await playwright.chromium.launch(headless=True, args=BROWSER_ARGS)
        stack.push_async_callback(_close_quietly, "browser", browser)

        context = await browser.new_context(
            user_agent=user_agent or settings.user_agent,
            viewport={"width": 1366, "height": 900},
            locale="en-US",
        )
        stack.push_async_callback(_close_quietly, "context", context)

        page = await context.new_page()
        stack.push_async_callback(_close_quietly, "page", page)
        page.on(
            "console",
            lambda msg: console_errors.append(msg.text) if msg.type == "error" else None,
        )

        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise HeadlessRenderError(url, f"navigation timed out after {timeout_ms}ms") from e

        if response is None:
            raise HeadlessRenderError(url, "no response")

        html = await page.content()
        return RenderedPage(
            url=url,
            final_url=page.url,
            html=html,
            status_code=response.status,
            console_errors=console_errors[:20],
        )
