# data/collector.py

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from data.fetch_live_metrics import MetricsSource
from data.metric_store import MetricSample, MetricSeriesStore
from scaling.registry import ServiceRegistry


class MetricsCollector:
    """
    Samples every managed service once per tick.

    Services are fetched in parallel so one slow metrics backend only delays
    that service's sample. A failed fetch is logged and skipped; nothing is
    appended for that service this tick.
    """

    def __init__(self, registry: ServiceRegistry, store: MetricSeriesStore, source: MetricsSource,
                 clock=time.time, max_workers=8):
        self.registry = registry
        self.store = store
        self.source = source
        self.clock = clock
        self.max_workers = max_workers

    def collect_service_metrics(self, service_id):
        service = self.registry.get(service_id)
        if service is None:
            return False

        try:
            snapshot = self.source.fetch(service)
        except Exception as e:
            logging.error(f"Failed to collect metrics for {service.name} ({service_id}): {e}")
            return False

        now = self.clock()
        for kind, value in snapshot.as_dict().items():
            self.store.append(service_id, kind, MetricSample(value=value, timestamp=now))

        with self.registry.lock(service_id):
            service.latest_metrics = snapshot
        return True

    def run_cycle(self):
        """Collect one sample set per service; returns how many services were sampled."""
        service_ids = self.registry.ids()
        if not service_ids:
            return 0

        workers = max(1, min(self.max_workers, len(service_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="metrics") as pool:
            results = list(pool.map(self.collect_service_metrics, service_ids))

        collected = sum(1 for ok in results if ok)
        logging.info(f"Collected metrics for {collected}/{len(service_ids)} services")
        return collected
