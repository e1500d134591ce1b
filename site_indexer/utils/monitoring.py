"""
Monitoring and metrics collection for the site indexer.
"""

import time
import logging
from typing import Dict, Any

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
from prometheus_client import start_http_server


class MetricsCollector:
    """Owns the Prometheus metrics of one indexer process."""

    def __init__(self, enable_server: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()
        self.current_values: Dict[str, float] = {}

        self.pages_fetched = Counter(
            'indexer_pages_fetched_total',
            'Pages fetched successfully',
            ['site'],
            registry=self.registry
        )
        self.fetch_errors = Counter(
            'indexer_fetch_errors_total',
            'Pages recorded as failed',
            ['site'],
            registry=self.registry
        )
        self.pages_saved = Counter(
            'indexer_pages_saved_total',
            'Page records persisted',
            ['site'],
            registry=self.registry
        )
        self.pages_dropped = Counter(
            'indexer_pages_dropped_total',
            'Page records dropped after exhausting save retries',
            ['site'],
            registry=self.registry
        )
        self.save_retries = Counter(
            'indexer_save_retries_total',
            'Retried page batch writes',
            ['site'],
            registry=self.registry
        )
        self.jobs_finished = Counter(
            'indexer_jobs_finished_total',
            'Site jobs finalized by terminal status',
            ['status'],
            registry=self.registry
        )
        self.indexing_running = Gauge(
            'indexer_running',
            'Whether an indexing run is active',
            registry=self.registry
        )
        self.run_duration = Histogram(
            'indexer_run_duration_seconds',
            'Wall-clock duration of indexing runs',
            buckets=(10, 60, 300, 900, 1800, 3600, 7200, float('inf')),
            registry=self.registry
        )

        self.logger.debug("Prometheus metrics initialized")

    def start_prometheus_server(self):
        """Start Prometheus metrics HTTP server."""
        if not self.enable_server:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def increment(self, name: str, amount: float = 1):
        """Track a running total alongside the Prometheus counters."""
        self.current_values[name] = self.current_values.get(name, 0) + amount

    def export_text(self) -> bytes:
        """Render the registry in the Prometheus exposition format."""
        return generate_latest(self.registry)


class IndexingMonitor:
    """High-level monitoring interface for the indexer."""

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.logger = logging.getLogger(__name__)
        self.start_time = time.time()

    def record_page_fetched(self, site: str):
        self.metrics.pages_fetched.labels(site=site).inc()
        self.metrics.increment('pages_fetched_total')

    def record_fetch_error(self, site: str):
        self.metrics.fetch_errors.labels(site=site).inc()
        self.metrics.increment('fetch_errors_total')

    def record_pages_saved(self, site: str, count: int):
        self.metrics.pages_saved.labels(site=site).inc(count)
        self.metrics.increment('pages_saved_total', count)

    def record_pages_dropped(self, site: str, count: int):
        self.metrics.pages_dropped.labels(site=site).inc(count)
        self.metrics.increment('pages_dropped_total', count)

    def record_save_retry(self, site: str):
        self.metrics.save_retries.labels(site=site).inc()
        self.metrics.increment('save_retries_total')

    def record_job_finished(self, status: str):
        self.metrics.jobs_finished.labels(status=status).inc()
        self.metrics.increment(f'jobs_{status.lower()}_total')

    def set_running(self, running: bool):
        self.metrics.indexing_running.set(1 if running else 0)

    def record_run_duration(self, seconds: float):
        self.metrics.run_duration.observe(seconds)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        runtime = time.time() - self.start_time
        current_values = dict(self.metrics.current_values)

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'pages_per_minute': current_values.get('pages_fetched_total', 0) / (runtime / 60) if runtime > 0 else 0,
            }
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> IndexingMonitor:
    """Create the monitor for this process."""
    metrics_collector = MetricsCollector(enable_prometheus, prometheus_port)
    return IndexingMonitor(metrics_collector)
