"""Prometheus metrics definitions for Stowage.

All custom metrics use the ``stowage_`` prefix. HTTP-level metrics (request
count, latency, sizes) come from ``prometheus-fastapi-instrumentator`` and are
not duplicated here.

Counters reset on restart. The per-bucket usage gauge is repopulated by the
next capacity refresh.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Broker operation counter  (labels: operation, status)
# ---------------------------------------------------------------------------
broker_operations_total: Counter | None = None

# ---------------------------------------------------------------------------
# Capacity accounting
# ---------------------------------------------------------------------------
bucket_used_bytes: Gauge | None = None
capacity_refresh_total: Counter | None = None

# ---------------------------------------------------------------------------
# Client-side upload outcomes  (labels: strategy, outcome)
# ---------------------------------------------------------------------------
uploads_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Idempotent. When metrics are disabled in config this is never called, the
    module-level references stay ``None`` and the ``record_*`` helpers become
    no-ops.
    """
    global _initialized
    global broker_operations_total, bucket_used_bytes
    global capacity_refresh_total, uploads_total

    if _initialized:
        return

    broker_operations_total = Counter(
        "stowage_broker_operations_total",
        "Total broker operations by type and outcome",
        ["operation", "status"],
    )

    bucket_used_bytes = Gauge(
        "stowage_bucket_used_bytes",
        "Bytes used per bucket as of the last successful refresh",
        ["bucket"],
    )

    capacity_refresh_total = Counter(
        "stowage_capacity_refresh_total",
        "Capacity refresh results per bucket by status",
        ["status"],
    )

    uploads_total = Counter(
        "stowage_uploads_total",
        "Client uploads by strategy and outcome",
        ["strategy", "outcome"],
    )

    _initialized = True


def record_operation(operation: str, status: str) -> None:
    """Increment the broker operation counter if metrics are enabled."""
    if broker_operations_total is not None:
        broker_operations_total.labels(operation=operation, status=status).inc()


def record_refresh(bucket: str, status: str, used_bytes: int | None = None) -> None:
    """Record one bucket's refresh outcome and, on success, its usage."""
    if capacity_refresh_total is not None:
        capacity_refresh_total.labels(status=status).inc()
    if used_bytes is not None and bucket_used_bytes is not None:
        bucket_used_bytes.labels(bucket=bucket).set(used_bytes)


def record_upload(strategy: str, outcome: str) -> None:
    """Increment the upload outcome counter if metrics are enabled."""
    if uploads_total is not None:
        uploads_total.labels(strategy=strategy, outcome=outcome).inc()
