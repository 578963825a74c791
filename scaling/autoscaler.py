# scaling/autoscaler.py

import logging
import time

from backend.config import (
    ANALYSIS_INTERVAL_SECONDS,
    COST_OPTIMIZATION_INTERVAL_SECONDS,
    HISTORY_FILE,
    METRICS_INTERVAL_SECONDS,
    PERFORMANCE_TRACKING_INTERVAL_SECONDS,
    PREDICTION_INTERVAL_SECONDS,
    SCALING_LOG_DIR,
    SERVICE_NAME_FILTERS,
)
from data.collector import MetricsCollector
from data.metric_store import MetricSeriesStore
from decision.cost_optimizer import CostOptimizer
from decision.scaling_policy import ScalingPolicyEngine
from ml.forecaster import PredictiveForecaster
from orchestration.subsystem import PeriodicSubsystem, PeriodicTask
from scaling.events import EventBus
from scaling.executor import ScalingExecutor
from scaling.models import ScalingAction, build_service_descriptor
from scaling.persistence import ScalingHistory, SnapshotWriter
from scaling.registry import ServiceRegistry


class AutoScaler(PeriodicSubsystem):
    """
    The autoscaling control loop.

    Owns the service registry, metric store and history, and runs five
    independent loops: metrics collection, policy analysis, predictive
    scaling, cost optimization and scaling-performance tracking. Intents are
    executed synchronously by the ScalingExecutor on the loop that produced
    them.
    """

    name = "scaler"

    def __init__(self, client, metrics_source, bus=None, registry=None, store=None, history=None,
                 writer=None, clock=time.time, shutdown=None, name_filters=None, intervals=None):
        super().__init__(shutdown=shutdown)
        self.scaler_id = f"scaler-{int(time.time() * 1000)}"
        self.client = client
        self.clock = clock
        self.bus = bus if bus is not None else EventBus()
        self.registry = registry if registry is not None else ServiceRegistry()
        self.store = store if store is not None else MetricSeriesStore(clock=clock)
        self.history = history if history is not None else ScalingHistory(HISTORY_FILE)
        self.writer = writer if writer is not None else SnapshotWriter(SCALING_LOG_DIR, clock=clock)
        self.name_filters = SERVICE_NAME_FILTERS if name_filters is None else name_filters
        self.intervals = {
            "metrics": METRICS_INTERVAL_SECONDS,
            "analysis": ANALYSIS_INTERVAL_SECONDS,
            "prediction": PREDICTION_INTERVAL_SECONDS,
            "cost": COST_OPTIMIZATION_INTERVAL_SECONDS,
            "performance": PERFORMANCE_TRACKING_INTERVAL_SECONDS,
        }
        self.intervals.update(intervals or {})

        self.executor = ScalingExecutor(self.registry, client, self.history, self.bus, clock=clock)
        self.collector = MetricsCollector(self.registry, self.store, metrics_source, clock=clock)
        self.policy = ScalingPolicyEngine(self.registry, self.executor, clock=clock)
        self.forecaster = PredictiveForecaster(self.registry, self.store, self.executor, clock=clock)
        self.cost_optimizer = CostOptimizer(self.registry, self.store, writer=self.writer, clock=clock)
        self._initialized = False

    # -- lifecycle -----------------------------------------------------------

    def initialize(self):
        logging.info(f"Initializing auto-scaling system {self.scaler_id}")
        self.load_services()
        self.history.load()
        self._initialized = True

    def load_services(self):
        """Register every provider service whose name matches all filters."""
        services = self.client.list_services()
        loaded = 0
        for raw in services:
            name = raw.get("name") or ""
            if not raw.get("id") or not all(f in name for f in self.name_filters):
                continue
            if raw["id"] in self.registry:
                continue
            descriptor = build_service_descriptor(
                raw["id"], name, current_instances=raw.get("num_instances", 1), status=raw.get("state", "unknown")
            )
            self.registry.upsert(descriptor)
            loaded += 1
        logging.info(f"Loaded {loaded} services for auto-scaling ({len(self.registry)} managed)")
        return loaded

    def on_start(self):
        if not self._initialized:
            self.initialize()

    def build_tasks(self):
        return [
            PeriodicTask("metrics-collection", self.intervals["metrics"], self.collector.run_cycle, self.shutdown),
            PeriodicTask("scaling-analysis", self.intervals["analysis"], self.policy.run_cycle, self.shutdown),
            PeriodicTask("predictive-scaling", self.intervals["prediction"], self.forecaster.run_cycle, self.shutdown),
            PeriodicTask("cost-optimization", self.intervals["cost"], self.cost_optimizer.run_cycle, self.shutdown),
            PeriodicTask("performance-tracking", self.intervals["performance"], self.track_scaling_performance,
                         self.shutdown),
        ]

    def on_stop(self):
        self.history.save()

    # -- performance tracking ------------------------------------------------

    def track_scaling_performance(self):
        """Summarize the last 24h of successful scaling events into an audit record."""
        recent = [e for e in self.history.since(self.clock() - 24 * 60 * 60) if e.success]
        performance = {
            "timestamp": self.clock(),
            "total_scaling_events": len(recent),
            "scale_up_events": sum(1 for e in recent if e.action == ScalingAction.SCALE_UP.value),
            "scale_down_events": sum(1 for e in recent if e.action == ScalingAction.SCALE_DOWN.value),
            "predictive_events": sum(1 for e in recent if e.action == ScalingAction.PREDICTIVE_SCALE_UP.value),
            "manual_events": sum(1 for e in recent if e.action == ScalingAction.MANUAL_SCALE.value),
            "failed_events_24h": sum(
                1 for e in self.history.since(self.clock() - 24 * 60 * 60) if not e.success
            ),
        }
        self.writer.write("performance", performance)
        return performance

    # -- administrative operations -------------------------------------------

    def manual_scale(self, service_id, target_instances, reason="Manual scaling request", expected_instances=None):
        return self.executor.manual_scale(service_id, target_instances, reason=reason,
                                          expected_instances=expected_instances)

    def set_scaling_rules(self, service_id, overrides):
        """Apply a partial override to one service's scaling rules."""
        def apply(service):
            service.scaling_rules = service.scaling_rules.merged(overrides)
            logging.info(f"Updated scaling rules for {service.name}: {overrides}")
            return service.scaling_rules

        return self.registry.with_lock(service_id, apply)

    def status(self):
        status = super().status()
        try:
            latest_cost = self.cost_optimizer.latest
            status.update({
                "scaler_id": self.scaler_id,
                "services": len(self.registry),
                "total_instances": self.registry.total_instances(),
                "recent_scaling_events": [e.to_dict() for e in self.history.recent(10)],
                "predictions": self.forecaster.predictions_as_dict(),
                "latest_cost_analysis": latest_cost.to_dict() if latest_cost else None,
            })
        except Exception as e:
            status["error"] = str(e)
        return status
