"""Tests for headless rendering cleanup and the memory guard."""

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pricewatch.ingest import headless
from pricewatch.ingest.headless import HeadlessRenderError, render_page
from pricewatch.ingest.memory_guard import MemoryGuard


class FakeHandle:
    def __init__(self, name, closed):
        self.name = name
        self.closed = closed

    async def close(self):
        self.closed.append(self.name)


class FakeResponse:
    status = 200


class FakePage(FakeHandle):
    url = "https://shop.example.com/products/tee"

    def __init__(self, closed, goto_error=None):
        super().__init__("page", closed)
        self.goto_error = goto_error

    def on(self, event, handler):
        pass

    async def goto(self, url, wait_until=None, timeout=None):
        assert wait_until == "domcontentloaded"
        if self.goto_error is not None:
            raise self.goto_error
        return FakeResponse()

    async def content(self):
        return "<html><body>rendered</body></html>"


class FakeContext(FakeHandle):
    def __init__(self, closed, page):
        super().__init__("context", closed)
        self.page = page

    async def new_page(self):
        return self.page


class FakeBrowser(FakeHandle):
    def __init__(self, closed, context):
        super().__init__("browser", closed)
        self.context = context

    async def new_context(self, **kwargs):
        return self.context


class FakeChromium:
    def __init__(self, browser):
        self.browser = browser

    async def launch(self, **kwargs):
        return self.browser


class FakePlaywright:
    def __init__(self, browser):
        self.chromium = FakeChromium(browser)
        self.stopped = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.stopped = True
        return False


@pytest.fixture
def fake_browser(monkeypatch):
    """Install a fake playwright whose page raises the configured goto error."""
    closed = []
    state = {}

    def install(goto_error=None):
        page = FakePage(closed, goto_error)
        browser = FakeBrowser(closed, FakeContext(closed, page))
        state["playwright"] = FakePlaywright(browser)
        monkeypatch.setattr(headless, "async_playwright", lambda: state["playwright"])
        return state["playwright"]

    return install, closed


@pytest.mark.asyncio
async def test_render_page_closes_handles_on_success(fake_browser):
    install, closed = fake_browser
    playwright = install()

    page = await render_page("https://shop.example.com/products/tee", timeout_seconds=1)

    assert page.html == "<html><body>rendered</body></html>"
    assert page.status_code == 200
    assert closed == ["page", "context", "browser"]
    assert playwright.stopped


@pytest.mark.asyncio
async def test_render_page_closes_handles_when_navigation_fails(fake_browser):
    install, closed = fake_browser
    playwright = install(goto_error=RuntimeError("net::ERR_CONNECTION_RESET"))

    with pytest.raises(RuntimeError):
        await render_page("https://shop.example.com/products/tee", timeout_seconds=1)

    assert sorted(closed) == ["browser", "context", "page"]
    assert playwright.stopped


@pytest.mark.asyncio
async def test_render_page_timeout_raises_render_error(fake_browser):
    install, closed = fake_browser
    install(goto_error=PlaywrightTimeoutError("Timeout 1000ms exceeded"))

    with pytest.raises(HeadlessRenderError, match="timed out"):
        await render_page("https://shop.example.com/products/tee", timeout_seconds=1)

    assert sorted(closed) == ["browser", "context", "page"]


def test_memory_guard_under_threshold():
    sample = MemoryGuard(threshold_mb=1_000_000).check()

    assert sample.rss_mb > 0
    assert not sample.over_threshold
    assert sample.reclaimed is False
    assert sample.rss_after_mb is None


def test_memory_guard_reclaims_over_threshold(monkeypatch):
    collected = []
    monkeypatch.setattr("pricewatch.ingest.memory_guard.gc.collect", lambda: collected.append(1) or 0)

    sample = MemoryGuard(threshold_mb=0).check()

    assert sample.over_threshold
    assert sample.reclaimed is True
    assert sample.rss_after_mb is not None and sample.rss_after_mb > 0
    assert collected == [1]
