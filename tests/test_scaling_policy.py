"""Tests for the threshold scaling policy."""

import threading
import time
from dataclasses import replace

from data.collector import MetricsCollector
from data.fetch_live_metrics import MetricsSource
from data.metric_store import MetricSeriesStore
from decision.scaling_policy import (
    ScalingPolicyEngine,
    check_scale_down_conditions,
    check_scale_up_conditions,
    decide_action,
)
from scaling.models import MetricSnapshot, ScalingAction, ServiceType, default_scaling_rules


RULES = default_scaling_rules(ServiceType.BACKEND)
HOT = MetricSnapshot(cpu=90, memory=85, response_time=2500, error_rate=6)
IDLE = MetricSnapshot(cpu=10, memory=20, response_time=200, error_rate=0.1)


class FixedSource(MetricsSource):
    def __init__(self, snapshot):
        self.snapshot = snapshot

    def fetch(self, service):
        return self.snapshot


class TestScaleUpConditions:
    def test_two_conditions_fire(self):
        metrics = MetricSnapshot(cpu=80, memory=85, response_time=100, error_rate=0)
        conditions = check_scale_up_conditions(metrics, RULES)
        assert conditions is not None
        assert len(conditions) == 2

    def test_single_condition_is_not_enough(self):
        metrics = MetricSnapshot(cpu=99, memory=10, response_time=100, error_rate=0)
        assert check_scale_up_conditions(metrics, RULES) is None

    def test_thresholds_are_strict(self):
        metrics = MetricSnapshot(cpu=75, memory=80, response_time=2000, error_rate=5)
        assert check_scale_up_conditions(metrics, RULES) is None

    def test_all_four_reported(self):
        assert len(check_scale_up_conditions(HOT, RULES)) == 4


class TestScaleDownConditions:
    def test_low_cpu_is_mandatory(self):
        metrics = MetricSnapshot(cpu=35, memory=10, response_time=100, error_rate=0)
        assert check_scale_down_conditions(metrics, RULES) is None

    def test_needs_three_conditions(self):
        metrics = MetricSnapshot(cpu=10, memory=50, response_time=100, error_rate=3)
        assert check_scale_down_conditions(metrics, RULES) is None

        metrics = MetricSnapshot(cpu=10, memory=30, response_time=100, error_rate=3)
        assert len(check_scale_down_conditions(metrics, RULES)) == 3


class TestDecideAction:
    def test_no_metrics_no_intent(self, make_service, clock):
        assert decide_action(make_service(), clock()) is None

    def test_scale_up_by_one_step(self, make_service, clock):
        service = make_service(latest_metrics=HOT)
        intent = decide_action(service, clock())
        assert intent.action == ScalingAction.SCALE_UP
        assert (intent.from_instances, intent.to_instances) == (3, 4)
        assert "CPU usage" in intent.reason
        assert intent.metrics_snapshot["cpu"] == 90

    def test_scale_up_capped_at_max(self, make_service, clock):
        rules = replace(RULES, scale_step_size=5)
        service = make_service(current=8, latest_metrics=HOT, scaling_rules=rules)
        intent = decide_action(service, clock())
        # step is limited by max_scale_up_steps (3), then by max_instances (10)
        assert intent.to_instances == 10

    def test_hot_at_max_does_nothing(self, make_service, clock):
        service = make_service(current=10, latest_metrics=HOT)
        assert decide_action(service, clock()) is None

    def test_scale_down_by_one(self, make_service, clock):
        service = make_service(current=5, latest_metrics=IDLE)
        intent = decide_action(service, clock())
        assert intent.action == ScalingAction.SCALE_DOWN
        assert intent.to_instances == 4

    def test_scale_down_never_below_min(self, make_service, clock):
        service = make_service(current=2, latest_metrics=IDLE)
        assert decide_action(service, clock()) is None

    def test_cooldown_blocks_any_intent(self, make_service, clock):
        service = make_service(latest_metrics=HOT, cooldown_until=clock() + 10)
        assert decide_action(service, clock()) is None
        clock.advance(10)
        assert decide_action(service, clock()) is not None

    def test_scale_in_flight_blocks_any_intent(self, make_service, clock):
        service = make_service(latest_metrics=HOT, scaling_in_flight=True)
        assert decide_action(service, clock()) is None


class TestPolicyEngine:
    def test_hot_service_scales_once_per_cooldown(self, registry, executor, client, clock, make_service):
        registry.upsert(make_service())
        store = MetricSeriesStore(clock=clock)
        collector = MetricsCollector(registry, store, FixedSource(HOT), clock=clock)
        engine = ScalingPolicyEngine(registry, executor, clock=clock)

        events = []
        for _ in range(5):
            collector.run_cycle()
            events.extend(engine.run_cycle())
            clock.advance(60)

        assert len(events) == 1
        assert events[0].from_instances == 3
        assert events[0].to_instances == 4
        client.scale_service.assert_called_once_with("srv-api", 4)
        service = registry.get("srv-api")
        assert service.current_instances == 4
        assert service.cooldown_until == service.last_scaling_at + 300

        # clock is now 300s past the scale-up: cooldown has elapsed
        collector.run_cycle()
        events = engine.run_cycle()
        assert [e.to_instances for e in events] == [5]

    def test_failing_service_does_not_stop_others(self, registry, executor, clock, make_service):
        registry.upsert(make_service("a", latest_metrics=HOT))
        registry.upsert(make_service("b", latest_metrics=HOT))
        engine = ScalingPolicyEngine(registry, executor, clock=clock)
        registry.get("a").scaling_rules = None  # breaks decide_action for "a"

        events = engine.run_cycle()
        assert [e.service_id for e in events] == ["b"]


class TestSlowProvider:
    def test_scale_in_progress_does_not_block_collection(self, registry, executor, client, clock, make_service):
        registry.upsert(make_service("a", latest_metrics=HOT))
        registry.upsert(make_service("b"))
        started = threading.Event()
        release = threading.Event()

        def slow_scale(service_id, n):
            started.set()
            release.wait(5)
            return {"id": service_id, "numInstances": n}

        client.scale_service.side_effect = slow_scale
        engine = ScalingPolicyEngine(registry, executor, clock=clock)
        collector = MetricsCollector(registry, MetricSeriesStore(clock=clock), FixedSource(HOT), clock=clock)
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.analyze_service("a")))
        worker.start()
        try:
            assert started.wait(2)
            assert registry.get("a").scaling_in_flight

            began = time.monotonic()
            assert collector.run_cycle() == 2
            assert time.monotonic() - began < 1.0

            # no second decision for "a" while its scale is still running
            assert engine.analyze_service("a") is None
        finally:
            release.set()
            worker.join(5)

        assert results[0].success
        service = registry.get("a")
        assert not service.scaling_in_flight
        assert service.current_instances == 4
        assert client.scale_service.call_count == 1
