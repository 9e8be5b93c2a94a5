"""Scheduled re-checks of tracked products.

One cycle: select due products, then for each product (bounded pool)
lock -> fetch -> extract -> reconcile -> detect changes -> record CheckRun.
A failure in one product is recorded on its CheckRun and never aborts the
cycle.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import CheckRun, CheckStatus, Product, TrackedItem, utcnow
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.detect.change_detector import ChangeEvent
from pricewatch.extract.extractor import StructuredExtractor
from pricewatch.extract.shell import ExtractionError, ProductShell
from pricewatch.ingest.fetcher import FetchFailedError, PageFetcher
from pricewatch.logging_config import get_logger
from pricewatch.worker.ingestion import IngestResult, ProductIngestion
from pricewatch.worker.product_lock import LocalProductLock, ProductLock

logger = logging.getLogger(__name__)

EventHandler = Callable[[List[ChangeEvent]], Awaitable[None]]

ERROR_MESSAGE_LIMIT = 500

T = TypeVar("T")


class PersistenceError(Exception):
    """Store stayed unavailable after the allowed retries."""

    pass


class SchedulerState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    PROCESSING = "processing"


class CheckOutcome(str, Enum):
    CHECKED = "checked"
    FAILED = "failed"
    LOCKED = "locked"  # Another worker holds the product lock
    SKIPPED = "skipped"  # Checked by another worker since selection


@dataclass(frozen=True)
class DueProduct:
    id: int
    url: str
    last_checked_at: Optional[datetime] = None


@dataclass
class ProductCheckResult:
    product_id: int
    outcome: CheckOutcome
    check_run_id: Optional[int] = None
    events: List[ChangeEvent] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CycleSummary:
    started_at: datetime = field(default_factory=utcnow)
    already_running: bool = False
    selected: int = 0
    checked: int = 0
    failed: int = 0
    locked: int = 0
    skipped: int = 0
    events: List[ChangeEvent] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0

    def add(self, result: ProductCheckResult):
        if result.outcome == CheckOutcome.CHECKED:
            self.checked += 1
            self.events.extend(result.events)
        elif result.outcome == CheckOutcome.FAILED:
            self.failed += 1
            self.errors[result.product_id] = result.error or "unknown error"
        elif result.outcome == CheckOutcome.LOCKED:
            self.locked += 1
        else:
            self.skipped += 1


def is_transient_db_error(exc: DBAPIError) -> bool:
    return exc.connection_invalidated or isinstance(exc, (OperationalError, InterfaceError))


class CheckWorker:
    """
    Runs check cycles.

    The running state belongs to the instance: overlapping ``run_cycle``
    calls on one worker are refused, while separate workers coordinate only
    through the product lock and the store.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        fetcher: Optional[PageFetcher] = None,
        extractor: Optional[StructuredExtractor] = None,
        lock: Optional[ProductLock] = None,
        ingestion: Optional[ProductIngestion] = None,
        on_events: Optional[EventHandler] = None,
        min_check_interval_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        persistence_max_retries: Optional[int] = None,
        persistence_retry_delay: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.fetcher = fetcher or PageFetcher()
        self.extractor = extractor or StructuredExtractor()
        self.lock = lock or LocalProductLock()
        self.ingestion = ingestion or ProductIngestion()
        self.on_events = on_events
        self.min_check_interval = timedelta(
            minutes=min_check_interval_minutes or settings.min_check_interval_minutes
        )
        self.batch_size = batch_size or settings.max_products_per_cycle
        self.concurrency = concurrency or settings.check_concurrency
        self.persistence_max_retries = (
            settings.persistence_max_retries if persistence_max_retries is None else persistence_max_retries
        )
        self.persistence_retry_delay = (
            settings.persistence_retry_delay_seconds if persistence_retry_delay is None else persistence_retry_delay
        )
        self._state = SchedulerState.IDLE

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state != SchedulerState.IDLE

    async def close(self):
        await self.fetcher.close()
        await self.lock.close()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleSummary:
        """Select due products and check them with bounded parallelism."""
        if self.is_running:
            logger.warning("Check cycle already in progress; skipping this invocation")
            metrics.record_cycle("already_running")
            return CycleSummary(already_running=True)

        self._state = SchedulerState.SELECTING
        started = time.monotonic()
        summary = CycleSummary()
        try:
            due = await self.select_due_products()
            summary.selected = len(due)
            logger.info(f"Check cycle selected {len(due)} due products")

            self._state = SchedulerState.PROCESSING
            semaphore = asyncio.Semaphore(self.concurrency)

            async def run_one(product: DueProduct) -> ProductCheckResult:
                async with semaphore:
                    return await self._check_isolated(product)

            for result in await asyncio.gather(*(run_one(p) for p in due)):
                summary.add(result)
        except Exception as e:
            logger.error(f"Check cycle aborted during selection: {e}", exc_info=True)
            summary.error = str(e)[:ERROR_MESSAGE_LIMIT]
            metrics.record_cycle("error")
        else:
            metrics.record_cycle("completed", time.monotonic() - started)
        finally:
            self._state = SchedulerState.IDLE
            summary.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            f"Check cycle done in {summary.duration_ms}ms: {summary.checked} checked, "
            f"{summary.failed} failed, {summary.locked} locked, {summary.skipped} skipped, "
            f"{len(summary.events)} change events"
        )
        return summary

    async def select_due_products(self) -> List[DueProduct]:
        """
        Products with an active tracker whose last successful check is older
        than the minimum interval, never-checked first, then oldest first.
        """
        cutoff = utcnow() - self.min_check_interval
        last_success = (
            select(
                CheckRun.product_id.label("product_id"),
                func.max(CheckRun.finished_at).label("last_checked_at"),
            )
            .where(CheckRun.status == CheckStatus.SUCCESS.value)
            .group_by(CheckRun.product_id)
            .subquery()
        )
        has_tracker = (
            select(TrackedItem.id)
            .where(TrackedItem.product_id == Product.id, TrackedItem.active.is_(True))
            .exists()
        )
        stmt = (
            select(Product.id, Product.canonical_url, last_success.c.last_checked_at)
            .outerjoin(last_success, last_success.c.product_id == Product.id)
            .where(has_tracker)
            .where(
                (last_success.c.last_checked_at.is_(None))
                | (last_success.c.last_checked_at < cutoff)
            )
            .order_by(last_success.c.last_checked_at.asc().nulls_first(), Product.id)
            .limit(self.batch_size)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [DueProduct(id=row.id, url=row.canonical_url, last_checked_at=row.last_checked_at) for row in rows]

    # ------------------------------------------------------------------
    # Per product
    # ------------------------------------------------------------------

    async def _check_isolated(self, product: DueProduct) -> ProductCheckResult:
        try:
            return await self.check_product(product)
        except Exception as e:
            # Lock backend or store failures outside the check body
            logger.error(f"Check of product {product.id} failed: {e}", exc_info=True)
            message = f"{type(e).__name__}: {e}"
            run_id = await self._record_failure(product.id, utcnow(), time.monotonic(), message, {})
            return ProductCheckResult(product.id, CheckOutcome.FAILED, check_run_id=run_id, error=message)

    async def check_product(self, product: DueProduct) -> ProductCheckResult:
        """Check one product under its lock."""
        async with self.lock.hold(product.id) as guard:
            if guard is None:
                metrics.record_check_skip("locked")
                logger.debug(f"Product {product.id} locked by another worker; skipping")
                return ProductCheckResult(product.id, CheckOutcome.LOCKED)

            if await self._checked_since_selection(product):
                metrics.record_check_skip("recently_checked")
                logger.debug(f"Product {product.id} was checked by another worker; skipping")
                return ProductCheckResult(product.id, CheckOutcome.SKIPPED)

            return await self._run_check(product)

    async def _checked_since_selection(self, product: DueProduct) -> bool:
        async with self.session_factory() as session:
            last = await session.scalar(
                select(func.max(CheckRun.finished_at)).where(
                    CheckRun.product_id == product.id,
                    CheckRun.status == CheckStatus.SUCCESS.value,
                )
            )
        if last is None:
            return False
        return product.last_checked_at is None or last > product.last_checked_at

    async def _run_check(self, product: DueProduct) -> ProductCheckResult:
        log = get_logger(__name__, product_id=product.id)
        started_at = utcnow()
        started = time.monotonic()
        details: Dict[str, object] = {}

        try:
            fetch_result = await self.fetcher.fetch(product.url)
            details["mode_used"] = fetch_result.mode_used.value
            details["fetch_ms"] = fetch_result.metadata.get("timing_ms")
            if not fetch_result.success:
                raise FetchFailedError(product.url, fetch_result.error or "fetch failed")

            shell = self.extractor.extract(fetch_result)
            details["variants_found"] = len(shell.variants)

            ingest, run_id = await self._persist(product.id, shell, started_at, started, details)
        except (FetchFailedError, ExtractionError, PersistenceError) as e:
            log.warning(f"Check of product {product.id} failed: {e}")
            message = str(e)
        except Exception as e:
            log.error(f"Unexpected error checking product {product.id}: {e}", exc_info=True)
            message = f"{type(e).__name__}: {e}"
        else:
            await self._hand_off(ingest.events)
            return ProductCheckResult(
                product.id, CheckOutcome.CHECKED, check_run_id=run_id, events=ingest.events
            )

        run_id = await self._record_failure(product.id, started_at, started, message, details)
        return ProductCheckResult(product.id, CheckOutcome.FAILED, check_run_id=run_id, error=message)

    async def _with_retries(self, work: Callable[[AsyncSession], Awaitable[T]], what: str) -> T:
        """
        Run ``work`` inside one transaction, retrying transient store errors.

        Backoff doubles from ``persistence_retry_delay``; once
        ``persistence_max_retries`` is exceeded a PersistenceError is raised.
        """
        attempt = 0
        while True:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        return await work(session)
            except DBAPIError as e:
                if not is_transient_db_error(e):
                    raise
                attempt += 1
                if attempt > self.persistence_max_retries:
                    raise PersistenceError(
                        f"Store unavailable after {attempt} attempts: {e.orig or e}"
                    ) from e
                delay = self.persistence_retry_delay * (2 ** (attempt - 1))
                metrics.record_persistence_retry()
                logger.warning(
                    f"Transient store error persisting {what}, retrying in "
                    f"{delay:.2f}s (attempt {attempt}/{self.persistence_max_retries}): {e.orig or e}"
                )
                await asyncio.sleep(delay)

    async def _persist(
        self,
        product_id: int,
        shell: ProductShell,
        started_at: datetime,
        started: float,
        details: Dict[str, object],
    ) -> tuple[IngestResult, int]:
        """
        Apply the shell and record a successful CheckRun in one transaction.

        Events are only returned once the transaction has committed.
        """

        async def work(session: AsyncSession) -> tuple[IngestResult, int]:
            ingest = await self.ingestion.apply(session, shell, product_id=product_id)
            run = CheckRun(
                product_id=product_id,
                started_at=started_at,
                finished_at=utcnow(),
                status=CheckStatus.SUCCESS.value,
                duration_ms=int((time.monotonic() - started) * 1000),
                details={**details, "changes_detected": len(ingest.events)},
            )
            session.add(run)
            await session.flush()
            return ingest, run.id

        result = await self._with_retries(work, f"product {product_id}")
        metrics.record_check_run(CheckStatus.SUCCESS.value)
        return result

    async def _record_failure(
        self,
        product_id: int,
        started_at: datetime,
        started: float,
        message: str,
        details: Dict[str, object],
    ) -> Optional[int]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    run = CheckRun(
                        product_id=product_id,
                        started_at=started_at,
                        finished_at=utcnow(),
                        status=CheckStatus.FAILED.value,
                        error_message=message[:ERROR_MESSAGE_LIMIT],
                        duration_ms=int((time.monotonic() - started) * 1000),
                        details=details or None,
                    )
                    session.add(run)
                    await session.flush()
                    run_id = run.id
        except Exception as e:
            logger.error(f"Could not record failed check for product {product_id}: {e}")
            return None
        metrics.record_check_run(CheckStatus.FAILED.value)
        return run_id

    async def _hand_off(self, events: List[ChangeEvent]):
        for event in events:
            metrics.record_change_event(event.kind.value)
        if not events or self.on_events is None:
            return
        try:
            await self.on_events(events)
        except Exception as e:
            logger.error(f"Change event handler failed for {len(events)} events: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # First-time ingestion
    # ------------------------------------------------------------------

    async def ingest_url(self, url: str) -> IngestResult:
        """
        Fetch, extract and store a URL that may not be tracked yet.

        Creates the product on first successful extraction.

        Raises:
            FetchFailedError: all fetch strategies failed
            ExtractionError: nothing recognizable on the page
            PersistenceError: store unavailable after retries
        """
        fetch_result = await self.fetcher.fetch(url)
        if not fetch_result.success:
            raise FetchFailedError(url, fetch_result.error or "fetch failed")
        shell = self.extractor.extract(fetch_result)

        ingest = await self._with_retries(
            lambda session: self.ingestion.apply(session, shell), url
        )

        await self._hand_off(ingest.events)
        return ingest
