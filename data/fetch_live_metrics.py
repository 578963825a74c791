# data/fetch_live_metrics.py

import datetime
import logging
import random
import time
from abc import ABC, abstractmethod

import pandas as pd
import requests

from backend.config import METRICS_STEP, METRICS_WINDOW_SECONDS, PROMETHEUS_URL
from scaling.exceptions import MetricsUnavailableError
from scaling.models import MetricSnapshot, ServiceDescriptor, ServiceType

# "$service" is replaced by the provider's service name
PROMETHEUS_QUERIES = {
    "cpu": 'avg(rate(container_cpu_usage_seconds_total{service="$service"}[1m])) * 100',
    "memory": 'avg(container_memory_usage_bytes{service="$service"}) '
              '/ avg(container_spec_memory_limit_bytes{service="$service"}) * 100',
    "response_time": 'histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket'
                     '{service="$service"}[5m])) by (le)) * 1000',
    "error_rate": 'sum(rate(http_requests_total{service="$service",status=~"5.."}[5m])) '
                  '/ sum(rate(http_requests_total{service="$service"}[5m])) * 100',
    "request_rate": 'sum(rate(http_requests_total{service="$service"}[5m]))',
    "queue_size": 'sum(queue_messages{service="$service"})',
}

# Kinds the policy engine cannot do without
REQUIRED_KINDS = ("cpu", "memory", "response_time", "error_rate")


class MetricsSource(ABC):
    """Returns the current reading of every metric kind for one service."""

    @abstractmethod
    def fetch(self, service: ServiceDescriptor) -> MetricSnapshot:
        ...


class SyntheticMetricsSource(MetricsSource):
    """
    Simulated load driven by time of day and service type.

    Business hours run at 1.5x the base load, everything else at 0.5x, with
    +/-20% jitter on top. Useful in dry-run deployments with no APM wired in.
    """

    def __init__(self, clock=time.time, rng=None):
        self.clock = clock
        self.rng = rng or random.Random()

    def fetch(self, service: ServiceDescriptor) -> MetricSnapshot:
        hour = datetime.datetime.fromtimestamp(self.clock()).hour
        load_multiplier = 1.5 if 9 <= hour <= 17 else 0.5

        base_load = 40.0
        if service.type == ServiceType.BACKEND:
            base_load = 50.0
        elif service.type == ServiceType.WORKER:
            base_load = 35.0

        random_factor = 0.8 + self.rng.random() * 0.4
        return MetricSnapshot(
            cpu=min(100.0, base_load * load_multiplier * random_factor),
            memory=min(100.0, base_load * 0.8 * load_multiplier * random_factor),
            response_time=max(100.0, 500 + self.rng.random() * 1000 * load_multiplier),
            error_rate=max(0.0, self.rng.random() * 3 * (load_multiplier - 0.5)),
            request_rate=max(1.0, 50 * load_multiplier * random_factor),
            queue_size=max(0.0, self.rng.random() * 100 * load_multiplier),
        )


class PrometheusMetricsSource(MetricsSource):
    """Latest value of each metric from a Prometheus ``query_range`` window."""

    def __init__(self, base_url=PROMETHEUS_URL, queries=None, window_seconds=METRICS_WINDOW_SECONDS,
                 step=METRICS_STEP, timeout=10, session=None, clock=time.time):
        self.base_url = base_url.rstrip("/")
        self.queries = queries or PROMETHEUS_QUERIES
        self.window_seconds = window_seconds
        self.step = step
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock

    def fetch_metric(self, query, name, start, end):
        """Fetch a single metric series as a DataFrame with columns ['timestamp', name]."""
        params = {"query": query, "start": start, "end": end, "step": self.step}
        r = self.session.get(f"{self.base_url}/api/v1/query_range", params=params, timeout=self.timeout)
        r.raise_for_status()

        data = r.json().get("data", {}).get("result", [])
        if not data:
            logging.warning(f"No data returned for metric {name}")
            return pd.DataFrame(columns=["timestamp", name])

        df = pd.DataFrame(data[0]["values"], columns=["timestamp", name])
        df["timestamp"] = pd.to_datetime(df["timestamp"].astype(float), unit="s")
        df[name] = pd.to_numeric(df[name], errors="coerce")
        return df

    def fetch(self, service: ServiceDescriptor) -> MetricSnapshot:
        end = int(self.clock())
        start = end - self.window_seconds

        values = {}
        for name, template in self.queries.items():
            query = template.replace("$service", service.name)
            try:
                df = self.fetch_metric(query, name, start, end)
            except (requests.RequestException, ValueError, KeyError) as e:
                logging.error(f"Failed to fetch metric {name} for {service.name}: {e}")
                df = pd.DataFrame(columns=["timestamp", name])

            if df.empty:
                continue
            series = df.sort_values("timestamp")[name].dropna()
            if len(series):
                values[name] = float(series.iloc[-1])

        missing = [k for k in REQUIRED_KINDS if k not in values]
        if missing:
            raise MetricsUnavailableError(f"No data for {missing} on service {service.name}")

        return MetricSnapshot(
            cpu=values["cpu"],
            memory=values["memory"],
            response_time=values["response_time"],
            error_rate=values["error_rate"],
            request_rate=values.get("request_rate", 0.0),
            queue_size=values.get("queue_size", 0.0),
        )


def build_metrics_source(kind, **kwargs):
    if kind == "prometheus":
        return PrometheusMetricsSource(**kwargs)
    return SyntheticMetricsSource(**kwargs)
