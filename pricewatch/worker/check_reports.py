"""Read-only reporting over check runs."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import CheckRun, CheckStatus


@dataclass
class CheckRunStats:
    since: datetime
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    avg_duration_ms: Optional[float] = None
    max_duration_ms: Optional[int] = None

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total if self.total else 0.0


async def recent_check_runs(
    session: AsyncSession,
    limit: int = 50,
    product_id: Optional[int] = None,
) -> List[CheckRun]:
    """Most recent runs first, optionally for one product."""
    stmt = select(CheckRun).order_by(CheckRun.started_at.desc(), CheckRun.id.desc()).limit(limit)
    if product_id is not None:
        stmt = stmt.where(CheckRun.product_id == product_id)
    return list((await session.execute(stmt)).scalars().all())


async def check_run_stats(session: AsyncSession, since: datetime) -> CheckRunStats:
    """Totals, failures and duration figures for runs started at or after ``since``."""
    row = (
        await session.execute(
            select(
                func.count(CheckRun.id),
                func.sum(case((CheckRun.status == CheckStatus.FAILED.value, 1), else_=0)),
                func.avg(CheckRun.duration_ms),
                func.max(CheckRun.duration_ms),
            ).where(CheckRun.started_at >= since)
        )
    ).one()
    total, failed, avg_ms, max_ms = row
    total = total or 0
    failed = int(failed or 0)
    return CheckRunStats(
        since=since,
        total=total,
        succeeded=total - failed,
        failed=failed,
        avg_duration_ms=float(avg_ms) if avg_ms is not None else None,
        max_duration_ms=max_ms,
    )


async def slow_check_runs(
    session: AsyncSession,
    threshold_ms: int = 10_000,
    limit: int = 20,
) -> List[CheckRun]:
    """Slowest runs above the threshold."""
    stmt = (
        select(CheckRun)
        .where(CheckRun.duration_ms >= threshold_ms)
        .order_by(CheckRun.duration_ms.desc(), CheckRun.id.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())
