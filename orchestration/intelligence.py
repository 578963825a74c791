# orchestration/intelligence.py

import logging
import os
import threading
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from typing import Any, Dict

from backend.config import INTELLIGENCE_DIR, MAX_DECISION_HISTORY
from orchestration.subsystem import PeriodicSubsystem
from scaling import events
from scaling.persistence import write_json_atomic

CRITICAL_DECISION_TYPES = ("system_failure", "recovery_exhausted", "scaling_retries_exhausted")
SCALE_UP_ALERTS = ("slow_response", "high_error_rate")


@dataclass
class Decision:
    id: str
    type: str
    context: Dict[str, Any]
    priority: str
    recommendation: str
    confidence: float
    requested_at: float = field(default_factory=time.time)

    def to_dict(self):
        return asdict(self)


def generate_scaling_recommendation(context):
    cpu = context.get("cpu_usage", 0)
    memory = context.get("memory_usage", 0)
    if cpu > 80 or memory > 85:
        return "scale_up"
    if cpu < 30 and memory < 40:
        return "scale_down"
    return "maintain_current"


def generate_deployment_recommendation(context):
    if context.get("risk_level") == "high" or context.get("complexity") == "high":
        return "blue_green_deployment"
    if context.get("service_type") == "frontend":
        return "rolling_deployment"
    return "canary_deployment"


class DecisionEngine(PeriodicSubsystem):
    """
    Rule-based decision component the orchestrator reports to.

    Every request produces a recommendation that is kept in a bounded history
    and published on the event bus. Alert responses recommending ``scale_up``
    carry ``service_id`` and ``target_instances`` and are executed by the
    orchestrator; ``scaling`` decisions only record a ``suggested_instances``.
    """

    name = "intelligence"

    def __init__(self, bus, clock=time.time, memory_dir=INTELLIGENCE_DIR,
                 max_history=MAX_DECISION_HISTORY, shutdown=None):
        super().__init__(shutdown=shutdown)
        self.intelligence_id = f"intelligence-{int(time.time() * 1000)}"
        self.bus = bus
        self.clock = clock
        self.memory_dir = memory_dir
        self.max_history = max_history
        self.decision_history = deque(maxlen=max_history)
        self.critical_events = deque(maxlen=max_history)
        self.collective_memory = OrderedDict()
        self._lock = threading.RLock()

    def make_decision(self, decision_type, context=None, priority="normal"):
        context = dict(context or {})
        recommendation, confidence = self._recommend(decision_type, context)
        if decision_type in CRITICAL_DECISION_TYPES:
            priority = "critical"

        decision = Decision(
            id=f"decision-{int(self.clock() * 1000)}-{uuid.uuid4().hex[:6]}",
            type=decision_type,
            context=context,
            priority=priority,
            recommendation=recommendation,
            confidence=confidence,
            requested_at=self.clock(),
        )
        with self._lock:
            self.decision_history.append(decision)
            if priority == "critical":
                self.critical_events.append(decision)
            self.remember(f"decisions_{decision_type}", decision.recommendation, append=True)

        log = logging.critical if priority == "critical" else logging.info
        log(f"Decision [{decision_type}/{priority}]: {recommendation} (confidence {confidence:.2f})")
        self.bus.publish(events.DECISION, decision)
        return decision

    def _recommend(self, decision_type, context):
        if decision_type == "scaling":
            return self._recommend_scaling(context)
        if decision_type == "deployment_strategy":
            return generate_deployment_recommendation(context), 0.8
        if decision_type == "alert_response":
            return self._recommend_for_alert(context)
        if decision_type == "performance_optimization":
            inactive = context.get("inactive_systems") or []
            if inactive:
                return "recover_subsystems", 0.9
            return "maintain_current", 0.6
        if decision_type in CRITICAL_DECISION_TYPES:
            return "escalate_to_operator", 1.0
        return "no_consensus", 0.0

    def _recommend_scaling(self, context):
        recommendation = generate_scaling_recommendation(context)
        current = context.get("current_instances")
        if current is not None:
            step = {"scale_up": 1, "scale_down": -1}.get(recommendation, 0)
            suggested = current + step
            suggested = min(suggested, context.get("max_instances", suggested))
            suggested = max(suggested, context.get("min_instances", suggested))
            context["suggested_instances"] = suggested
        return recommendation, 0.8

    def _recommend_for_alert(self, alert):
        alert_type = alert.get("type")
        if alert_type in SCALE_UP_ALERTS:
            current = alert.get("current_instances")
            maximum = alert.get("max_instances")
            if alert.get("in_cooldown"):
                return "wait_for_cooldown", 0.7
            if current is not None and maximum is not None and current < maximum:
                alert["target_instances"] = current + 1
                return "scale_up", 0.75
            return "capacity_exhausted", 0.9
        if alert_type in ("service_unhealthy", "health_check_failed"):
            return "investigate_service", 0.8
        return "acknowledge", 0.5

    def remember(self, key, value, append=False):
        with self._lock:
            if append:
                entries = self.collective_memory.setdefault(key, [])
                entries.append({"value": value, "timestamp": self.clock()})
                if len(entries) > self.max_history:
                    del entries[: len(entries) - self.max_history]
            else:
                self.collective_memory[key] = value
            self.collective_memory.move_to_end(key)
            while len(self.collective_memory) > self.max_history:
                self.collective_memory.popitem(last=False)

    def record_scaling_outcome(self, event):
        outcome = dict(event.to_dict(), outcome="completed" if event.success else "failed")
        self.remember(f"scaling_event_{event.id}", outcome)

    def on_stop(self):
        self.save_state()

    def save_state(self):
        with self._lock:
            state = {
                "intelligence_id": self.intelligence_id,
                "saved_at": self.clock(),
                "collective_memory": dict(self.collective_memory),
                "recent_decisions": [d.to_dict() for d in list(self.decision_history)[-100:]],
            }
        try:
            write_json_atomic(os.path.join(self.memory_dir, "collective-memory.json"), state)
        except OSError as e:
            logging.error(f"Failed to save intelligence state: {e}")

    def status(self):
        status = super().status()
        with self._lock:
            status.update({
                "intelligence_id": self.intelligence_id,
                "decisions": len(self.decision_history),
                "recent_decisions": [d.to_dict() for d in list(self.decision_history)[-10:]],
                "critical_events": len(self.critical_events),
                "collective_memory_size": len(self.collective_memory),
            })
        return status
