# data/metric_store.py

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from backend.config import MAX_SERIES_LENGTH


@dataclass(frozen=True)
class MetricSample:
    value: float
    timestamp: float


class MetricSeriesStore:
    """
    Bounded time series per (service, metric kind).

    Each series keeps at most ``max_length`` samples; appending past that
    evicts the oldest. Unknown keys read as empty.
    """

    def __init__(self, max_length=MAX_SERIES_LENGTH, clock=time.time):
        self.max_length = max_length
        self.clock = clock
        self._series: Dict[Tuple[str, str], deque] = {}
        self._lock = threading.Lock()

    def append(self, service_id: str, kind: str, sample: MetricSample) -> None:
        key = (service_id, kind)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = deque(maxlen=self.max_length)
            series.append(sample)

    def series(self, service_id: str, kind: str) -> List[MetricSample]:
        with self._lock:
            return list(self._series.get((service_id, kind), ()))

    def recent(self, service_id: str, kind: str, window: float, now: Optional[float] = None) -> List[MetricSample]:
        """Samples newer than ``now - window`` (window in seconds)."""
        cutoff = (self.clock() if now is None else now) - window
        return [s for s in self.series(service_id, kind) if s.timestamp > cutoff]

    def latest(self, service_id: str, kind: str) -> Optional[MetricSample]:
        with self._lock:
            series = self._series.get((service_id, kind))
            return series[-1] if series else None

    def values(self, service_id: str, kind: str, last: Optional[int] = None) -> List[float]:
        samples = self.series(service_id, kind)
        if last is not None:
            samples = samples[-last:]
        return [s.value for s in samples]

    def count(self, service_id: str, kind: str) -> int:
        with self._lock:
            return len(self._series.get((service_id, kind), ()))
