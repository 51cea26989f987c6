"""
Monitoring and metrics collection for the site audit crawler.
"""

import time
import logging
from typing import Dict, Optional, Any, Union

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, start_http_server


class MetricsCollector:
    """Collects crawl metrics and mirrors them into a Prometheus registry."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.values: Dict[str, float] = {}
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port

        # A private registry keeps repeated collectors (tests, resumed runs) from clashing
        self.registry = CollectorRegistry()
        self.prometheus_metrics = {
            'pages_processed_total': Counter(
                'site_audit_pages_processed_total',
                'Pages dequeued and processed',
                registry=self.registry
            ),
            'bad_requests_total': Counter(
                'site_audit_bad_requests_total',
                'Pages recorded as bad requests',
                ['status'],
                registry=self.registry
            ),
            'external_checks_total': Counter(
                'site_audit_external_checks_total',
                'External links checked',
                ['outcome'],
                registry=self.registry
            ),
            'checkpoints_total': Counter(
                'site_audit_checkpoints_total',
                'Crawl state checkpoints written',
                registry=self.registry
            ),
            'bytes_downloaded_total': Counter(
                'site_audit_bytes_downloaded_total',
                'Page body bytes downloaded',
                registry=self.registry
            ),
            'response_time_seconds': Histogram(
                'site_audit_response_time_seconds',
                'Time to response headers for page fetches',
                registry=self.registry
            ),
            'frontier_size': Gauge(
                'site_audit_frontier_size',
                'URLs waiting in the frontier',
                registry=self.registry
            ),
            'active_workers': Gauge(
                'site_audit_active_workers',
                'Crawl workers currently processing a page',
                registry=self.registry
            ),
        }

    def start_server(self):
        """Start the Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def increment(self, name: str, amount: float = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        key = name if not labels else f"{name}{{{','.join(f'{k}={v}' for k, v in sorted(labels.items()))}}}"
        self.values[key] = self.values.get(key, 0) + amount

        metric = self.prometheus_metrics.get(name)
        if metric is not None:
            (metric.labels(**labels) if labels else metric).inc(amount)

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric value."""
        self.values[name] = value
        metric = self.prometheus_metrics.get(name)
        if metric is not None:
            metric.set(value)

    def observe(self, name: str, value: float):
        """Record a histogram observation."""
        self.values[f"{name}_last"] = value
        metric = self.prometheus_metrics.get(name)
        if metric is not None:
            metric.observe(value)

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        return dict(self.values)


class CrawlerMonitor:
    """High-level monitoring interface used by the crawl components."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_page(self, status: Union[int, str], response_time_ms: float, size: int):
        """Record a processed page."""
        self.metrics.increment('pages_processed_total')
        self.metrics.observe('response_time_seconds', response_time_ms / 1000)
        if size:
            self.metrics.increment('bytes_downloaded_total', size)

    def record_bad_request(self, status: Union[int, str]):
        """Record a page that ended up in BadRequests."""
        self.metrics.increment('bad_requests_total', labels={'status': str(status)})

    def record_external_check(self, status: Union[int, str]):
        """Record an external link check outcome."""
        ok = isinstance(status, int) and 200 <= status < 400
        self.metrics.increment('external_checks_total', labels={'outcome': 'ok' if ok else 'broken'})

    def record_checkpoint(self):
        self.metrics.increment('checkpoints_total')

    def update_queue_size(self, size: int):
        self.metrics.set_gauge('frontier_size', size)

    def update_active_workers(self, count: int):
        self.metrics.set_gauge('active_workers', count)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time
        pages = current_values.get('pages_processed_total', 0)

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'pages_per_minute': pages / (runtime / 60) if runtime > 0 else 0,
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor and start the metrics server when enabled."""
    monitor = CrawlerMonitor(MetricsCollector(enable_prometheus, prometheus_port))
    monitor.metrics.start_server()
    return monitor
