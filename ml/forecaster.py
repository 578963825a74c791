# ml/forecaster.py

import datetime
import logging
import threading
import time

import numpy as np

from backend.config import (
    MIN_POINTS_FOR_PREDICTION,
    PREDICTION_HORIZONS,
    PREDICTION_WINDOW,
    PREDICTIVE_CONFIDENCE_THRESHOLD,
)
from scaling.models import Prediction, ScalingAction, ScalingIntent

TREND_EPSILON = 1e-9


def calculate_trend(values):
    """Least-squares slope of ``values`` against their index 0..n-1."""
    n = len(values)
    if n < 2:
        return 0.0
    y = np.asarray(values, dtype=float)
    x = np.arange(n, dtype=float)
    sum_x = x.sum()
    sum_xx = (x * x).sum()
    denominator = n * sum_xx - sum_x * sum_x
    return float((n * (x * y).sum() - sum_x * y.sum()) / denominator)


def trend_label(slope):
    if slope > TREND_EPSILON:
        return "increasing"
    if slope < -TREND_EPSILON:
        return "decreasing"
    return "stable"


def calculate_seasonal_adjustment(target_time):
    """Load offset for the wall-clock hour at ``target_time`` (epoch seconds, local time)."""
    hour = datetime.datetime.fromtimestamp(target_time).hour
    if 9 <= hour <= 17:
        return 15.0  # business hours
    if 18 <= hour <= 22:
        return 5.0  # evening
    return -10.0  # night / early morning


def calculate_confidence(values):
    """Lower variance means higher confidence, kept within [0.3, 0.95]."""
    if len(values) < 3:
        return 0.5
    std_dev = float(np.std(np.asarray(values, dtype=float)))
    return float(np.clip(1 - std_dev / 50, 0.3, 0.95))


def predict_load(cpu_values, minutes_ahead, now):
    """
    Forecast CPU ``minutes_ahead`` from ``now`` using the last samples.

    Returns None when fewer than MIN_POINTS_FOR_PREDICTION values are available.
    """
    if len(cpu_values) < MIN_POINTS_FOR_PREDICTION:
        return None

    values = list(cpu_values)[-PREDICTION_WINDOW:]
    trend = calculate_trend(values)
    seasonal = calculate_seasonal_adjustment(now + minutes_ahead * 60)
    predicted = float(np.clip(values[-1] + trend * minutes_ahead + seasonal, 0, 100))

    return Prediction(
        value=predicted,
        confidence=calculate_confidence(values),
        trend=trend_label(trend),
        horizon_minutes=minutes_ahead,
    )


class PredictiveForecaster:
    """Keeps the latest horizon forecasts per service and scales up ahead of predicted load."""

    def __init__(self, registry, store, executor, clock=time.time, horizons=None,
                 confidence_threshold=PREDICTIVE_CONFIDENCE_THRESHOLD):
        self.registry = registry
        self.store = store
        self.executor = executor
        self.clock = clock
        self.horizons = horizons or PREDICTION_HORIZONS
        self.confidence_threshold = confidence_threshold
        self._predictions = {}
        self._lock = threading.Lock()

    def generate_predictions(self, service_id):
        cpu_values = self.store.values(service_id, "cpu", last=PREDICTION_WINDOW)
        if len(cpu_values) < MIN_POINTS_FOR_PREDICTION:
            return None

        now = self.clock()
        predictions = {name: predict_load(cpu_values, minutes, now) for name, minutes in self.horizons.items()}
        predictions["generated_at"] = now
        with self._lock:
            self._predictions[service_id] = predictions
        return predictions

    def check_predictive_scaling(self, service_id, predictions):
        next_hour = predictions.get("next_hour")
        if next_hour is None or next_hour.confidence < self.confidence_threshold:
            return None
        if next_hour.trend != "increasing":
            return None

        with self.registry.lock(service_id):
            service = self.registry.require(service_id)
            now = self.clock()
            if service.scaling_in_flight or service.in_cooldown(now):
                return None
            if next_hour.value <= service.scaling_rules.scale_up_thresholds.cpu:
                return None
            if service.current_instances >= service.max_instances:
                return None

            intent = ScalingIntent(
                service_id=service_id,
                action=ScalingAction.PREDICTIVE_SCALE_UP,
                from_instances=service.current_instances,
                to_instances=min(service.max_instances, service.current_instances + 1),
                reason=f"Predictive scaling: expected {next_hour.value:.1f}% CPU in next hour "
                       f"(confidence {next_hour.confidence:.2f})",
                metrics_snapshot={"predictive": next_hour.to_dict()},
                timestamp=now,
            )
        logging.info(f"Predictive scale-up queued for {service.name}: {intent.reason}")
        return self.executor.execute(intent)

    def run_cycle(self):
        events = []
        for service_id in self.registry.ids():
            try:
                predictions = self.generate_predictions(service_id)
                if predictions is None:
                    continue
                event = self.check_predictive_scaling(service_id, predictions)
            except Exception:
                logging.exception(f"Prediction generation failed for {service_id}")
                continue
            if event is not None:
                events.append(event)
        return events

    def get_predictions(self, service_id):
        with self._lock:
            return self._predictions.get(service_id)

    def predictions_as_dict(self):
        with self._lock:
            snapshot = dict(self._predictions)
        result = {}
        for service_id, predictions in snapshot.items():
            result[service_id] = {
                name: (value.to_dict() if isinstance(value, Prediction) else value)
                for name, value in predictions.items()
            }
        return result
