"""
Tests for logging and monitoring helpers.
"""

import json
import logging

from site_audit.utils.logger import JSONFormatter, PerformanceFilter, get_crawler_logger
from site_audit.utils.monitoring import CrawlerMonitor, MetricsCollector


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_adapter_context_reaches_json_output():
    handler = ListHandler()
    base = logging.getLogger('site_audit.tests.adapter')
    base.addHandler(handler)
    base.setLevel(logging.INFO)
    try:
        logger = get_crawler_logger('site_audit.tests.adapter', worker_id=3)
        logger.info("Processed page")
    finally:
        base.removeHandler(handler)

    entry = json.loads(JSONFormatter().format(handler.records[0]))
    assert entry['message'] == 'Processed page'
    assert entry['level'] == 'INFO'
    assert entry['worker_id'] == 3


def test_performance_filter_drops_noisy_loggers():
    noisy = logging.LogRecord('aiohttp.access', logging.INFO, __file__, 1, 'GET /', None, None)
    ours = logging.LogRecord('site_audit.crawler', logging.INFO, __file__, 1, 'ok', None, None)

    log_filter = PerformanceFilter()

    assert not log_filter.filter(noisy)
    assert log_filter.filter(ours)


def test_monitor_tracks_crawl_counters():
    monitor = CrawlerMonitor(MetricsCollector(enable_prometheus=False))

    monitor.record_page(200, response_time_ms=120, size=2048)
    monitor.record_page(200, response_time_ms=80, size=1024)
    monitor.record_bad_request('TIMEOUT')
    monitor.record_external_check(404)
    monitor.record_external_check(301)
    monitor.update_queue_size(7)

    values = monitor.get_summary()['metrics']
    assert values['pages_processed_total'] == 2
    assert values['bytes_downloaded_total'] == 3072
    assert values['bad_requests_total{status=TIMEOUT}'] == 1
    assert values['external_checks_total{outcome=broken}'] == 1
    assert values['external_checks_total{outcome=ok}'] == 1
    assert values['frontier_size'] == 7
