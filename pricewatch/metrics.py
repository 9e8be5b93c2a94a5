"""Prometheus metrics for the change-detection pipeline."""

import logging
import time

from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)

app_info = Info("pricewatch", "Pricewatch checker info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Fetch metrics
page_fetches_total = Counter(
    "page_fetches_total",
    "Page fetches by the strategy that produced the result",
    ["mode", "status"],
)

fetch_strategy_misses_total = Counter(
    "fetch_strategy_misses_total",
    "Strategies that were attempted but did not produce content",
    ["strategy"],
)

page_fetch_duration_seconds = Histogram(
    "page_fetch_duration_seconds",
    "Wall time of a full fetch (all strategies)",
    ["mode"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 20.0, 30.0],
)

# Extraction
extraction_failures_total = Counter(
    "extraction_failures_total",
    "Pages from which no product could be extracted",
)

# Check runs
check_runs_total = Counter(
    "check_runs_total",
    "Recorded check runs",
    ["status"],
)

check_skips_total = Counter(
    "check_skips_total",
    "Products skipped during a cycle",
    ["reason"],  # locked, recently_checked
)

persistence_retries_total = Counter(
    "persistence_retries_total",
    "Retries after transient store failures",
)

# Change events
change_events_total = Counter(
    "change_events_total",
    "Change events handed to the notification dispatcher",
    ["kind"],
)

# Scheduler cycles
check_cycles_total = Counter(
    "check_cycles_total",
    "Scheduler cycles",
    ["status"],  # completed, already_running, error
)

check_cycle_duration_seconds = Histogram(
    "check_cycle_duration_seconds",
    "Duration of a full scheduler cycle",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200],
)

check_cycle_last_run_timestamp = Gauge(
    "check_cycle_last_run_timestamp",
    "Unix time of the last completed cycle",
)


def record_fetch(mode: str, success: bool, duration: float):
    """Record the outcome of a full fetch."""
    status = "success" if success else "error"
    page_fetches_total.labels(mode=mode, status=status).inc()
    page_fetch_duration_seconds.labels(mode=mode).observe(duration)


def record_strategy_miss(strategy: str):
    """Record a strategy that fell through to the next one."""
    fetch_strategy_misses_total.labels(strategy=strategy).inc()


def record_extraction_failure():
    extraction_failures_total.inc()


def record_check_run(status: str):
    """Record a finished check run (success or failed)."""
    check_runs_total.labels(status=status).inc()


def record_check_skip(reason: str):
    check_skips_total.labels(reason=reason).inc()


def record_persistence_retry():
    persistence_retries_total.inc()


def record_change_event(kind: str):
    change_events_total.labels(kind=kind).inc()


def record_cycle(status: str, duration: float | None = None):
    """Record a scheduler cycle."""
    check_cycles_total.labels(status=status).inc()
    if duration is not None:
        check_cycle_duration_seconds.observe(duration)
        check_cycle_last_run_timestamp.set(time.time())


def start_metrics_server(port: int) -> bool:
    """
    Expose metrics over HTTP.

    Returns:
        True if the exporter was started
    """
    if port <= 0:
        return False
    start_http_server(port)
    logger.info(f"Prometheus metrics exporter listening on :{port}")
    return True
