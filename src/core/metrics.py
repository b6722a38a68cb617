"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, upload outcomes, storage calls and HTTP traffic.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
import functools
from typing import Callable
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage (sign, download, process, store, persist, ...)
media_stage_latency_seconds = Histogram(
    "media_stage_latency_seconds",
    "Time spent in each media pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Upload outcomes
media_uploads_total = Counter(
    "media_uploads_total",
    "Total number of upload sessions by outcome",
    labelnames=["status"]  # signed, completed, failed, abandoned, rejected
)

# Artifact sizes
media_artifact_bytes = Histogram(
    "media_artifact_bytes",
    "Encoded size of stored artifacts",
    labelnames=["format", "suffix"],
    buckets=[1_000, 10_000, 50_000, 100_000, 250_000, 500_000, 1_000_000, 2_500_000, 5_000_000, 10_000_000]
)

# Storage backend calls
media_storage_operations_total = Counter(
    "media_storage_operations_total",
    "Storage backend operations",
    labelnames=["backend", "operation", "status"]
)

# Reaper
media_abandoned_sessions_total = Counter(
    "media_abandoned_sessions_total",
    "Upload sessions reclaimed after expiry or cancellation",
    labelnames=["reason"]  # expired, cancelled
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "media_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("process"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        media_stage_latency_seconds.labels(stage=stage, status=status).observe(duration)


def track_latency(stage: str):
    """
    Decorator to track function latency.

    Usage:
        @track_latency("sign")
        async def sign(self, ...):
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with track_stage_latency(stage):
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with track_stage_latency(stage):
                return func(*args, **kwargs)

        import asyncio
        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_upload(status: str):
    """Record an upload session outcome."""
    media_uploads_total.labels(status=status).inc()


def record_artifact(format: str, suffix: str, size_bytes: int):
    media_artifact_bytes.labels(format=format, suffix=suffix).observe(size_bytes)


def record_storage_operation(backend: str, operation: str, status: str):
    media_storage_operations_total.labels(
        backend=backend,
        operation=operation,
        status=status
    ).inc()


def record_abandoned(reason: str = "expired"):
    media_abandoned_sessions_total.labels(reason=reason).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version="1.0.0", environment="development")
