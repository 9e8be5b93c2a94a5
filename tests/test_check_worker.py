"""Tests for the check worker: selection, locking, isolation and persistence."""

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from pricewatch.db.models import CheckRun, CheckStatus, Product, TrackedItem, Variant, utcnow
from pricewatch.detect.change_detector import ChangeKind
from pricewatch.ingest.fetcher import FetchFailedError, FetchMode, FetchResult
from pricewatch.worker.check_worker import (
    CheckOutcome,
    CheckWorker,
    DueProduct,
    PersistenceError,
    SchedulerState,
)
from pricewatch.worker.ingestion import ProductIngestion
from pricewatch.worker.product_lock import LocalProductLock

from tests.factories import create_product


def product_page(name="Classic Tee", price="29.99", availability="InStock"):
    data = {
        "@type": "Product",
        "name": name,
        "offers": {"price": price, "priceCurrency": "USD", "availability": f"https://schema.org/{availability}"},
    }
    return f'<html><head><script type="application/ld+json">{json.dumps(data)}</script></head><body></body></html>'


class FakeFetcher:
    """Serves canned pages; unknown URLs fail like an exhausted strategy chain."""

    def __init__(self, pages=None, delay=0.0):
        self.pages = pages or {}
        self.delay = delay
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        page = self.pages.get(url)
        if page is None:
            return FetchResult(success=False, mode_used=FetchMode.FAILED, url=url, error="All fetch strategies failed")
        return FetchResult(
            success=True,
            mode_used=FetchMode.STRUCTURED_DATA,
            url=url,
            final_url=url,
            status_code=200,
            content=page,
            metadata={"timing_ms": 12},
        )

    async def close(self):
        pass


class FlakyIngestion(ProductIngestion):
    """Raises a transient store error for the first ``failures`` attempts."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def apply(self, session, shell, product_id=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OperationalError("INSERT INTO variants", {}, Exception("server closed the connection"))
        return await super().apply(session, shell, product_id=product_id)


def make_worker(session_factory, fetcher, **kwargs):
    kwargs.setdefault("lock", LocalProductLock())
    kwargs.setdefault("batch_size", 10)
    kwargs.setdefault("concurrency", 2)
    kwargs.setdefault("min_check_interval_minutes", 30)
    kwargs.setdefault("persistence_retry_delay", 0.01)
    return CheckWorker(session_factory=session_factory, fetcher=fetcher, **kwargs)


async def add_run(session, product_id, status=CheckStatus.SUCCESS, minutes_ago=0):
    finished = utcnow() - timedelta(minutes=minutes_ago)
    session.add(
        CheckRun(
            product_id=product_id,
            started_at=finished - timedelta(seconds=1),
            finished_at=finished,
            status=status.value,
            duration_ms=1000,
        )
    )
    await session.commit()


async def runs_for(session_factory, product_id):
    async with session_factory() as session:
        result = await session.execute(
            select(CheckRun).where(CheckRun.product_id == product_id).order_by(CheckRun.id)
        )
        return list(result.scalars())


@pytest.mark.asyncio
async def test_select_due_products(session_factory, db_session):
    never = await create_product(db_session, url="https://a.example.com/p")
    fresh = await create_product(db_session, url="https://b.example.com/p")
    stale = await create_product(db_session, url="https://c.example.com/p")
    await create_product(db_session, url="https://d.example.com/p", tracked=False)
    inactive = await create_product(db_session, url="https://e.example.com/p", tracked=False)
    only_failed = await create_product(db_session, url="https://f.example.com/p")

    db_session.add(TrackedItem(user_id=2, product_id=inactive.id, active=False))
    await db_session.commit()
    await add_run(db_session, fresh.id, minutes_ago=10)
    await add_run(db_session, stale.id, minutes_ago=120)
    await add_run(db_session, only_failed.id, status=CheckStatus.FAILED, minutes_ago=5)

    worker = make_worker(session_factory, FakeFetcher())
    due = await worker.select_due_products()

    assert [d.id for d in due] == [never.id, only_failed.id, stale.id]
    assert due[0].last_checked_at is None
    assert due[2].last_checked_at is not None


@pytest.mark.asyncio
async def test_select_due_products_respects_batch_size(session_factory, db_session):
    for i in range(5):
        await create_product(db_session, url=f"https://shop.example.com/p{i}")

    worker = make_worker(session_factory, FakeFetcher(), batch_size=3)
    assert len(await worker.select_due_products()) == 3


@pytest.mark.asyncio
async def test_cycle_persists_product_and_check_run(session_factory, db_session):
    product = await create_product(db_session, display_name=None)
    fetcher = FakeFetcher({product.canonical_url: product_page()})
    worker = make_worker(session_factory, fetcher)

    summary = await worker.run_cycle()

    assert summary.selected == 1
    assert summary.checked == 1
    assert summary.events == []
    assert worker.state == SchedulerState.IDLE

    runs = await runs_for(session_factory, product.id)
    assert len(runs) == 1
    assert runs[0].status == CheckStatus.SUCCESS.value
    assert runs[0].details["mode_used"] == "structured_data"
    assert runs[0].details["variants_found"] == 1
    assert runs[0].details["changes_detected"] == 0

    async with session_factory() as session:
        stored = await session.get(Product, product.id)
        variants = (await session.execute(select(Variant).where(Variant.product_id == product.id))).scalars().all()
    assert stored.display_name == "Classic Tee"
    assert len(variants) == 1
    assert str(variants[0].current_price) == "29.99"
    assert variants[0].current_stock_status == "in_stock"


@pytest.mark.asyncio
async def test_changes_are_handed_off(session_factory, db_session):
    product = await create_product(db_session)
    fetcher = FakeFetcher({product.canonical_url: product_page(availability="OutOfStock")})
    received = []

    async def on_events(events):
        received.extend(events)

    worker = make_worker(session_factory, fetcher, on_events=on_events)
    await worker.run_cycle()
    assert received == []

    # Make the product due again, then observe a price drop and a restock
    async with session_factory() as session:
        await session.execute(
            update(CheckRun).values(finished_at=utcnow() - timedelta(hours=2))
        )
        await session.commit()
    fetcher.pages[product.canonical_url] = product_page(price="24.99", availability="InStock")

    summary = await worker.run_cycle()

    assert summary.checked == 1
    assert [e.kind for e in received] == [ChangeKind.PRICE, ChangeKind.RESTOCK]
    assert received[0].product_id == product.id
    runs = await runs_for(session_factory, product.id)
    assert runs[-1].details["changes_detected"] == 2

    async with session_factory() as session:
        variants = (await session.execute(select(Variant).where(Variant.product_id == product.id))).scalars().all()
    assert len(variants) == 1


@pytest.mark.asyncio
async def test_failures_are_isolated(session_factory, db_session):
    good = await create_product(db_session, url="https://shop.example.com/good")
    missing = await create_product(db_session, url="https://shop.example.com/missing")
    empty = await create_product(db_session, url="https://shop.example.com/empty")
    fetcher = FakeFetcher(
        {
            good.canonical_url: product_page(),
            empty.canonical_url: "<html><body><div></div></body></html>",
        }
    )
    worker = make_worker(session_factory, fetcher)

    summary = await worker.run_cycle()

    assert summary.checked == 1
    assert summary.failed == 2
    assert set(summary.errors) == {missing.id, empty.id}

    failed_fetch = await runs_for(session_factory, missing.id)
    assert failed_fetch[0].status == CheckStatus.FAILED.value
    assert "Failed to fetch" in failed_fetch[0].error_message
    assert failed_fetch[0].details["mode_used"] == "failed"

    failed_extract = await runs_for(session_factory, empty.id)
    assert "No product name or variants" in failed_extract[0].error_message

    # Failed products stay due
    due = await worker.select_due_products()
    assert {d.id for d in due} == {missing.id, empty.id}


@pytest.mark.asyncio
async def test_locked_product_is_skipped(session_factory, db_session):
    product = await create_product(db_session)
    fetcher = FakeFetcher({product.canonical_url: product_page()})
    lock = LocalProductLock()
    worker = make_worker(session_factory, fetcher, lock=lock)

    guard = await lock.acquire(product.id)
    summary = await worker.run_cycle()
    await guard.release()

    assert summary.locked == 1
    assert summary.checked == 0
    assert fetcher.calls == []
    assert await runs_for(session_factory, product.id) == []


@pytest.mark.asyncio
async def test_lock_released_after_unexpected_error(session_factory, db_session):
    product = await create_product(db_session)
    lock = LocalProductLock()

    class BrokenFetcher(FakeFetcher):
        async def fetch(self, url):
            raise RuntimeError("socket exploded")

    worker = make_worker(session_factory, BrokenFetcher(), lock=lock)
    summary = await worker.run_cycle()

    assert summary.failed == 1
    assert "RuntimeError: socket exploded" in summary.errors[product.id]
    assert not lock.is_held(product.id)


@pytest.mark.asyncio
async def test_race_guard_skips_product_checked_after_selection(session_factory, db_session):
    product = await create_product(db_session)
    fetcher = FakeFetcher({product.canonical_url: product_page()})
    worker = make_worker(session_factory, fetcher)

    due = await worker.select_due_products()
    await add_run(db_session, product.id)

    result = await worker.check_product(due[0])

    assert result.outcome == CheckOutcome.SKIPPED
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_overlapping_cycles_are_refused(session_factory, db_session):
    product = await create_product(db_session)
    fetcher = FakeFetcher({product.canonical_url: product_page()}, delay=0.2)
    worker = make_worker(session_factory, fetcher)

    first = asyncio.create_task(worker.run_cycle())
    await asyncio.sleep(0)
    assert worker.is_running

    second = await worker.run_cycle()
    assert second.already_running

    summary = await first
    assert summary.checked == 1
    assert not worker.is_running


@pytest.mark.asyncio
async def test_concurrent_workers_check_each_product_once(session_factory, db_session):
    products = [await create_product(db_session, url=f"https://shop.example.com/p{i}") for i in range(4)]
    pages = {p.canonical_url: product_page(name=f"Item {i}") for i, p in enumerate(products)}
    lock = LocalProductLock()
    workers = [
        make_worker(session_factory, FakeFetcher(pages, delay=0.05), lock=lock)
        for _ in range(3)
    ]

    summaries = await asyncio.gather(*(w.run_cycle() for w in workers))

    assert sum(s.checked for s in summaries) == len(products)
    for product in products:
        runs = await runs_for(session_factory, product.id)
        assert [r.status for r in runs] == [CheckStatus.SUCCESS.value]


@pytest.mark.asyncio
async def test_transient_store_error_is_retried(session_factory, db_session):
    product = await create_product(db_session)
    ingestion = FlakyIngestion(failures=2)
    worker = make_worker(
        session_factory,
        FakeFetcher({product.canonical_url: product_page()}),
        ingestion=ingestion,
        persistence_max_retries=3,
    )

    summary = await worker.run_cycle()

    assert summary.checked == 1
    assert ingestion.attempts == 3
    runs = await runs_for(session_factory, product.id)
    assert [r.status for r in runs] == [CheckStatus.SUCCESS.value]


@pytest.mark.asyncio
async def test_exhausted_retries_record_failed_run(session_factory, db_session):
    product = await create_product(db_session)
    worker = make_worker(
        session_factory,
        FakeFetcher({product.canonical_url: product_page()}),
        ingestion=FlakyIngestion(failures=10),
        persistence_max_retries=2,
    )

    summary = await worker.run_cycle()

    assert summary.failed == 1
    runs = await runs_for(session_factory, product.id)
    assert runs[0].status == CheckStatus.FAILED.value
    assert runs[0].error_message.startswith("Store unavailable after 3 attempts")


@pytest.mark.asyncio
async def test_ingest_url_creates_product(session_factory):
    url = "https://shop.example.com/products/new"
    worker = make_worker(session_factory, FakeFetcher({url: product_page(name="New Thing")}))

    result = await worker.ingest_url(url)

    assert result.created_variants == 1
    async with session_factory() as session:
        product = await session.get(Product, result.product_id)
    assert product.canonical_url == url
    assert product.display_name == "New Thing"

    # Same URL again updates in place
    again = await worker.ingest_url(url)
    assert again.product_id == result.product_id
    assert again.created_variants == 0


@pytest.mark.asyncio
async def test_ingest_url_retries_transient_store_errors(session_factory):
    url = "https://shop.example.com/products/flaky"
    ingestion = FlakyIngestion(failures=1)
    worker = make_worker(
        session_factory,
        FakeFetcher({url: product_page()}),
        ingestion=ingestion,
        persistence_max_retries=2,
    )

    result = await worker.ingest_url(url)

    assert ingestion.attempts == 2
    assert result.created_variants == 1


@pytest.mark.asyncio
async def test_ingest_url_raises_after_exhausted_retries(session_factory):
    url = "https://shop.example.com/products/down"
    ingestion = FlakyIngestion(failures=10)
    worker = make_worker(
        session_factory,
        FakeFetcher({url: product_page()}),
        ingestion=ingestion,
        persistence_max_retries=2,
    )

    with pytest.raises(PersistenceError, match="after 3 attempts"):
        await worker.ingest_url(url)
    assert ingestion.attempts == 3

    async with session_factory() as session:
        products = (await session.execute(select(Product))).scalars().all()
    assert products == []

@pytest.mark.asyncio
async def test_ingest_url_raises_on_fetch_failure(session_factory):
    worker = make_worker(session_factory, FakeFetcher())
    with pytest.raises(FetchFailedError):
        await worker.ingest_url("https://shop.example.com/nowhere")


@pytest.mark.asyncio
async def test_due_product_snapshot_type():
    product = DueProduct(id=1, url="https://shop.example.com/p")
    assert product.last_checked_at is None
