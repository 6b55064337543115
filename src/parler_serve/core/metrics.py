"""
Prometheus Metrics for parler-serve.

Metrics Exposed:
    parler_jobs_total{outcome}          - Jobs by terminal state
                                          (completed/failed/timed_out/cancelled/rejected)
    parler_generate_duration_seconds    - Histogram of generate() wall time
    parler_queue_wait_seconds           - Histogram of time spent queued
    parler_queue_depth                  - Gauge of waiting jobs
    parler_job_running                  - Gauge, 1 while a job holds the resource
    parler_audio_bytes_total            - Counter of WAV bytes streamed
    parler_model_loaded{engine,device}  - Gauge, 1 once the model is loaded

Usage:
    from parler_serve.core.metrics import metrics

    metrics.record_job("completed", wait_s=0.4, generate_s=2.1)
    content, content_type = metrics.get_metrics_response()

The /api/debug endpoint is the authoritative view of scheduler counters;
these metrics exist for scraping and alerting.
"""
from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class ServiceMetrics:
    """
    Metric collection on a private CollectorRegistry.

    A private registry keeps repeated instantiation (tests, multiple apps in
    one process) from colliding with the global default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self._registry = registry or CollectorRegistry()

        self._jobs_total = Counter(
            "parler_jobs_total",
            "Jobs by terminal outcome",
            ["outcome"],
            registry=self._registry,
        )
        self._generate_duration = Histogram(
            "parler_generate_duration_seconds",
            "Wall time of one generate() call",
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0, 160.0),
            registry=self._registry,
        )
        self._queue_wait = Histogram(
            "parler_queue_wait_seconds",
            "Time a job spent queued before running",
            buckets=(0.01, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "parler_queue_depth",
            "Jobs waiting for the synthesis resource",
            registry=self._registry,
        )
        self._job_running = Gauge(
            "parler_job_running",
            "1 while a job holds the synthesis resource",
            registry=self._registry,
        )
        self._audio_bytes_total = Counter(
            "parler_audio_bytes_total",
            "WAV bytes streamed to clients",
            registry=self._registry,
        )
        self._model_loaded = Gauge(
            "parler_model_loaded",
            "Whether the model is loaded (1) or not (0)",
            ["engine", "device"],
            registry=self._registry,
        )

    def record_job(self, outcome: str, wait_s: Optional[float] = None, generate_s: Optional[float] = None) -> None:
        """Record a job reaching a terminal state (or being rejected)."""
        self._jobs_total.labels(outcome=outcome).inc()
        if wait_s is not None:
            self._queue_wait.observe(wait_s)
        if generate_s is not None:
            self._generate_duration.observe(generate_s)

    def set_queue_depth(self, depth: int) -> None:
        self._queue_depth.set(depth)

    def set_running(self, running: bool) -> None:
        self._job_running.set(1 if running else 0)

    def add_audio_bytes(self, count: int) -> None:
        if count > 0:
            self._audio_bytes_total.inc(count)

    def set_model_loaded(self, engine: str, device: str, loaded: bool) -> None:
        self._model_loaded.labels(engine=engine, device=device).set(1 if loaded else 0)

    def get_metrics_response(self) -> tuple[bytes, str]:
        """Prometheus text exposition and its content type."""
        return generate_latest(self._registry), CONTENT_TYPE_LATEST


# Process-wide instance
metrics = ServiceMetrics()
