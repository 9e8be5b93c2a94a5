"""Tests for check run reporting."""

from datetime import timedelta

import pytest

from pricewatch.db.models import CheckRun, CheckStatus, utcnow
from pricewatch.worker.check_reports import check_run_stats, recent_check_runs, slow_check_runs

from tests.factories import create_product


async def seed_runs(session, product_id, durations, status=CheckStatus.SUCCESS, hours_ago=0):
    base = utcnow() - timedelta(hours=hours_ago)
    for offset, duration in enumerate(durations):
        started = base + timedelta(seconds=offset)
        session.add(
            CheckRun(
                product_id=product_id,
                started_at=started,
                finished_at=started + timedelta(milliseconds=duration),
                status=status.value,
                error_message="boom" if status == CheckStatus.FAILED else None,
                duration_ms=duration,
            )
        )
    await session.commit()


@pytest.mark.asyncio
async def test_check_run_stats(db_session):
    product = await create_product(db_session)
    await seed_runs(db_session, product.id, [1000, 3000])
    await seed_runs(db_session, product.id, [2000], status=CheckStatus.FAILED)
    await seed_runs(db_session, product.id, [9000], hours_ago=48)

    stats = await check_run_stats(db_session, since=utcnow() - timedelta(hours=1))

    assert stats.total == 3
    assert stats.failed == 1
    assert stats.succeeded == 2
    assert stats.failure_rate == pytest.approx(1 / 3)
    assert stats.avg_duration_ms == pytest.approx(2000)
    assert stats.max_duration_ms == 3000


@pytest.mark.asyncio
async def test_empty_stats(db_session):
    stats = await check_run_stats(db_session, since=utcnow())
    assert stats.total == 0
    assert stats.failure_rate == 0.0
    assert stats.avg_duration_ms is None


@pytest.mark.asyncio
async def test_recent_and_slow_runs(db_session):
    first = await create_product(db_session, url="https://shop.example.com/a")
    second = await create_product(db_session, url="https://shop.example.com/b")
    await seed_runs(db_session, first.id, [500, 15000], hours_ago=1)
    await seed_runs(db_session, second.id, [12000])

    recent = await recent_check_runs(db_session, limit=2)
    assert [r.product_id for r in recent] == [second.id, first.id]

    only_first = await recent_check_runs(db_session, product_id=first.id)
    assert {r.product_id for r in only_first} == {first.id}

    slow = await slow_check_runs(db_session, threshold_ms=10_000)
    assert [r.duration_ms for r in slow] == [15000, 12000]
