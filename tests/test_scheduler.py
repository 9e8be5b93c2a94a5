"""Tests for the scheduler host wiring."""

from pricewatch.config import settings
from pricewatch.main import cli
from pricewatch.worker.check_worker import CheckWorker
from pricewatch.worker.product_lock import LocalProductLock
from pricewatch.worker.scheduler import setup_scheduler


class IdleFetcher:
    async def fetch(self, url):
        raise AssertionError("no fetch expected")

    async def close(self):
        pass


def test_setup_scheduler_registers_interval_job(session_factory):
    worker = CheckWorker(session_factory=session_factory, fetcher=IdleFetcher(), lock=LocalProductLock())
    scheduler = setup_scheduler(worker)

    job = scheduler.get_job("product_checks")
    assert job is not None
    assert job.func == worker.run_cycle
    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.misfire_grace_time == settings.misfire_grace_seconds
    assert job.trigger.interval.total_seconds() == settings.check_interval_minutes * 60


def test_cli_rejects_invalid_configuration(monkeypatch):
    monkeypatch.setattr(settings, "lock_backend", "carrier-pigeon")
    monkeypatch.setattr("pricewatch.main.setup_logging", lambda: None)
    assert cli(["--once"]) == 2
