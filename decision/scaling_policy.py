# decision/scaling_policy.py

import logging
import time

from scaling.models import MetricSnapshot, ScalingAction, ScalingIntent, ScalingRules, ServiceDescriptor

SCALE_UP_MIN_CONDITIONS = 2
SCALE_DOWN_MIN_CONDITIONS = 3


def check_scale_up_conditions(metrics: MetricSnapshot, rules: ScalingRules):
    """
    Evaluate the four scale-up conditions independently.

    Returns the list of conditions that fired when at least two of them hold,
    otherwise None.
    """
    up = rules.scale_up_thresholds
    conditions = []

    if metrics.cpu > up.cpu:
        conditions.append(f"CPU usage {metrics.cpu:.1f}% > {up.cpu:g}%")
    if metrics.memory > up.memory:
        conditions.append(f"Memory usage {metrics.memory:.1f}% > {up.memory:g}%")
    if metrics.response_time > up.response_time:
        conditions.append(f"Response time {metrics.response_time:.0f}ms > {up.response_time:g}ms")
    if metrics.error_rate > up.error_rate:
        conditions.append(f"Error rate {metrics.error_rate:.2f}% > {up.error_rate:g}%")

    if len(conditions) >= SCALE_UP_MIN_CONDITIONS:
        return conditions
    return None


def check_scale_down_conditions(metrics: MetricSnapshot, rules: ScalingRules):
    """
    Scale-down is deliberately stricter than scale-up.

    Low CPU is mandatory; without it nothing else is looked at. With it, at
    least two of memory / response time / error rate must also be low
    (three of four overall).
    """
    down = rules.scale_down_thresholds
    if not metrics.cpu < down.cpu:
        return None

    conditions = [f"CPU usage {metrics.cpu:.1f}% < {down.cpu:g}%"]
    if metrics.memory < down.memory:
        conditions.append(f"Memory usage {metrics.memory:.1f}% < {down.memory:g}%")
    if metrics.response_time < down.response_time:
        conditions.append(f"Response time {metrics.response_time:.0f}ms < {down.response_time:g}ms")
    if metrics.error_rate < down.error_rate:
        conditions.append(f"Error rate {metrics.error_rate:.2f}% < {down.error_rate:g}%")

    if len(conditions) >= SCALE_DOWN_MIN_CONDITIONS:
        return conditions
    return None


def decide_action(service: ServiceDescriptor, now: float):
    """
    Decide the scaling intent for one service, or None.

    Scale-up is checked first; when it fires, scale-down is not evaluated.
    """
    metrics = service.latest_metrics
    if metrics is None:
        return None

    if service.scaling_in_flight:
        return None
    if service.in_cooldown(now):
        logging.debug(f"{service.name}: cooldown active, {int(service.cooldown_until - now)}s remaining")
        return None

    rules = service.scaling_rules
    snapshot = metrics.as_dict()

    scale_up = check_scale_up_conditions(metrics, rules)
    if scale_up and service.current_instances < service.max_instances:
        step = min(rules.scale_step_size, rules.max_scale_up_steps)
        return ScalingIntent(
            service_id=service.id,
            action=ScalingAction.SCALE_UP,
            from_instances=service.current_instances,
            to_instances=min(service.max_instances, service.current_instances + step),
            reason=", ".join(scale_up),
            metrics_snapshot=snapshot,
            timestamp=now,
        )
    if scale_up:
        # Hot, but already at max: scale-down is not considered this tick
        logging.warning(f"{service.name}: scale-up conditions met but already at max ({service.max_instances})")
        return None

    scale_down = check_scale_down_conditions(metrics, rules)
    if scale_down and service.current_instances > service.min_instances:
        step = min(rules.scale_step_size, rules.max_scale_down_steps)
        return ScalingIntent(
            service_id=service.id,
            action=ScalingAction.SCALE_DOWN,
            from_instances=service.current_instances,
            to_instances=max(service.min_instances, service.current_instances - step),
            reason=", ".join(scale_down),
            metrics_snapshot=snapshot,
            timestamp=now,
        )
    return None


class ScalingPolicyEngine:
    """Runs ``decide_action`` over every managed service and hands intents to the executor."""

    def __init__(self, registry, executor, clock=time.time):
        self.registry = registry
        self.executor = executor
        self.clock = clock

    def analyze_service(self, service_id):
        # The executor re-checks cooldown and from_instances under the lock
        with self.registry.lock(service_id):
            service = self.registry.require(service_id)
            intent = decide_action(service, self.clock())
        if intent is None:
            return None
        logging.info(
            f"Scaling action queued: {intent.action.value} for {service.name} "
            f"({intent.from_instances} -> {intent.to_instances}); reason: {intent.reason}"
        )
        return self.executor.execute(intent)

    def run_cycle(self):
        results = []
        for service_id in self.registry.ids():
            try:
                event = self.analyze_service(service_id)
            except Exception:
                logging.exception(f"Scaling analysis failed for {service_id}")
                continue
            if event is not None:
                results.append(event)
        return results
