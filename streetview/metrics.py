"""Prometheus instruments for the capture pipeline."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

LOGGER = logging.getLogger(__name__)

CAPTURE_TOTAL = Counter(
    "streetview_capture_total",
    "Finished capture jobs by outcome (street_view, map_view, failed, cache_hit).",
    ["outcome"],
)
STRATEGY_ATTEMPTS = Counter(
    "streetview_strategy_attempts_total",
    "Strategy attempts by strategy and result (success, miss, timeout, error).",
    ["strategy", "result"],
)
CAPTURE_DURATION_SECONDS = Histogram(
    "streetview_capture_duration_seconds",
    "Wall-clock duration of strategy chain runs.",
    buckets=(1, 2.5, 5, 10, 20, 30, 45, 60, 90, 120, 180, 300),
)
DEDUP_REJECTIONS = Counter(
    "streetview_dedup_rejections_total",
    "Triggers rejected because the same target was already processing.",
)
ACTIVE_CONTEXTS = Gauge(
    "streetview_active_contexts",
    "Browser contexts currently open against the shared browser.",
)

_EXPORTER_STARTED = False


def record_capture(outcome: str, duration_seconds: float | None = None) -> None:
    CAPTURE_TOTAL.labels(outcome=outcome).inc()
    if duration_seconds is not None:
        CAPTURE_DURATION_SECONDS.observe(max(0.0, duration_seconds))


def record_strategy_attempt(strategy: str, result: str) -> None:
    STRATEGY_ATTEMPTS.labels(strategy=strategy, result=result).inc()


def record_dedup_rejection() -> None:
    DEDUP_REJECTIONS.inc()


def context_opened() -> None:
    ACTIVE_CONTEXTS.inc()


def context_closed() -> None:
    ACTIVE_CONTEXTS.dec()


def start_exporter(port: int) -> bool:
    """Expose metrics on ``port``; returns False when disabled or already bound."""

    global _EXPORTER_STARTED
    if _EXPORTER_STARTED or port <= 0:
        return False
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return False
    _EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)
    return True
