# scaling/models.py

"""Data model shared by the collector, policy engine, forecaster and executor."""

import time
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from scaling.exceptions import InvalidScalingRequest

METRIC_KINDS = ("cpu", "memory", "response_time", "error_rate", "request_rate", "queue_size")


class ServiceType(str, Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"
    PORTAL = "portal"
    WORKER = "worker"
    UNKNOWN = "unknown"


class ScalingAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    PREDICTIVE_SCALE_UP = "predictive_scale_up"
    MANUAL_SCALE = "manual_scale"


@dataclass(frozen=True)
class ScalingThresholds:
    cpu: float
    memory: float
    response_time: float  # ms
    error_rate: float  # percent


@dataclass(frozen=True)
class ScalingRules:
    scale_up_thresholds: ScalingThresholds
    scale_down_thresholds: ScalingThresholds
    cooldown_period: float = 300.0  # seconds
    scale_step_size: int = 1
    max_scale_up_steps: int = 3
    max_scale_down_steps: int = 1

    def merged(self, overrides: Dict[str, Any]) -> "ScalingRules":
        """
        Return a copy with ``overrides`` applied.

        Threshold overrides may be partial, e.g.
        ``{"scale_up_thresholds": {"cpu": 90}}`` only changes the cpu threshold.
        """
        known = {f.name for f in fields(self)}
        changes = {}
        for key, value in overrides.items():
            if key not in known:
                raise InvalidScalingRequest(f"Unknown scaling rule: {key}")
            if key in ("scale_up_thresholds", "scale_down_thresholds"):
                current = getattr(self, key)
                if isinstance(value, ScalingThresholds):
                    changes[key] = value
                    continue
                if not isinstance(value, dict):
                    raise InvalidScalingRequest(f"{key} must be a mapping")
                bad = set(value) - {f.name for f in fields(ScalingThresholds)}
                if bad:
                    raise InvalidScalingRequest(f"Unknown threshold(s) in {key}: {sorted(bad)}")
                changes[key] = replace(current, **{k: float(v) for k, v in value.items()})
            else:
                changes[key] = value

        rules = replace(self, **changes)
        if rules.cooldown_period < 0:
            raise InvalidScalingRequest("cooldown_period must be >= 0")
        for name in ("scale_step_size", "max_scale_up_steps", "max_scale_down_steps"):
            if int(getattr(rules, name)) < 1:
                raise InvalidScalingRequest(f"{name} must be >= 1")
        return rules

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MetricSnapshot:
    """One reading of every metric kind for a service."""

    cpu: float
    memory: float
    response_time: float
    error_rate: float
    request_rate: float = 0.0
    queue_size: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {kind: float(getattr(self, kind)) for kind in METRIC_KINDS}


@dataclass
class ServiceDescriptor:
    id: str
    name: str
    type: ServiceType
    current_instances: int
    min_instances: int
    max_instances: int
    target_utilization: float
    scaling_rules: ScalingRules
    last_scaling_at: Optional[float] = None
    cooldown_until: float = 0.0
    status: str = "unknown"
    latest_metrics: Optional[MetricSnapshot] = None
    scaling_in_flight: bool = False

    def in_cooldown(self, now: float) -> bool:
        return now < self.cooldown_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "current_instances": self.current_instances,
            "min_instances": self.min_instances,
            "max_instances": self.max_instances,
            "target_utilization": self.target_utilization,
            "scaling_rules": self.scaling_rules.to_dict(),
            "last_scaling_at": self.last_scaling_at,
            "cooldown_until": self.cooldown_until,
            "status": self.status,
            "latest_metrics": self.latest_metrics.as_dict() if self.latest_metrics else None,
            "scaling_in_flight": self.scaling_in_flight,
        }


@dataclass
class ScalingIntent:
    service_id: str
    action: ScalingAction
    from_instances: int
    to_instances: int
    reason: str
    metrics_snapshot: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class ScalingEvent:
    id: str
    service_id: str
    service_name: str
    action: str
    from_instances: int
    to_instances: int
    reason: str
    executed_at: float
    success: bool
    provider_response: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @classmethod
    def from_intent(cls, intent: ScalingIntent, service_name: str, executed_at: float,
                    success: bool, provider_response=None, error_message=None) -> "ScalingEvent":
        prefix = "scaling" if success else "scaling-failed"
        return cls(
            id=f"{prefix}-{int(executed_at * 1000)}-{uuid.uuid4().hex[:9]}",
            service_id=intent.service_id,
            service_name=service_name,
            action=ScalingAction(intent.action).value,
            from_instances=intent.from_instances,
            to_instances=intent.to_instances,
            reason=intent.reason,
            executed_at=executed_at,
            success=success,
            provider_response=provider_response,
            error_message=error_message,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScalingEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Prediction:
    value: float
    confidence: float
    trend: str  # "increasing" | "decreasing" | "stable"
    horizon_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CostOpportunity:
    service_id: str
    service_name: str
    reason: str
    potential_savings: float
    opportunity: str = "scale_down"


@dataclass
class CostAnalysisSnapshot:
    timestamp: float
    total_instances: int = 0
    estimated_monthly_cost: float = 0.0
    opportunities: List[CostOpportunity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Per-type defaults, keyed off the service name the provider reports

_TYPE_LIMITS = {
    # type: (min_instances, max_instances, target_utilization)
    ServiceType.BACKEND: (2, 10, 70.0),
    ServiceType.FRONTEND: (1, 5, 60.0),
    ServiceType.PORTAL: (2, 8, 65.0),
    ServiceType.WORKER: (1, 6, 75.0),
    ServiceType.UNKNOWN: (1, 3, 70.0),
}


def service_type_for(service_name: str) -> ServiceType:
    for service_type in (ServiceType.BACKEND, ServiceType.FRONTEND, ServiceType.PORTAL, ServiceType.WORKER):
        if service_type.value in service_name:
            return service_type
    return ServiceType.UNKNOWN


def default_limits(service_type: ServiceType):
    return _TYPE_LIMITS[service_type]


def default_scaling_rules(service_type: ServiceType) -> ScalingRules:
    rules = ScalingRules(
        scale_up_thresholds=ScalingThresholds(cpu=75.0, memory=80.0, response_time=2000.0, error_rate=5.0),
        scale_down_thresholds=ScalingThresholds(cpu=30.0, memory=40.0, response_time=500.0, error_rate=1.0),
        cooldown_period=300.0,
        scale_step_size=1,
        max_scale_up_steps=3,
        max_scale_down_steps=1,
    )
    if service_type == ServiceType.WORKER:
        # Workers tolerate hotter CPU and recover faster
        rules = replace(
            rules,
            scale_up_thresholds=replace(rules.scale_up_thresholds, cpu=85.0),
            scale_down_thresholds=replace(rules.scale_down_thresholds, cpu=20.0),
            cooldown_period=180.0,
        )
    return rules


def build_service_descriptor(service_id: str, name: str, current_instances: int,
                             status: str = "unknown") -> ServiceDescriptor:
    service_type = service_type_for(name)
    min_instances, max_instances, target = default_limits(service_type)
    return ServiceDescriptor(
        id=service_id,
        name=name,
        type=service_type,
        current_instances=current_instances,
        min_instances=min_instances,
        max_instances=max_instances,
        target_utilization=target,
        scaling_rules=default_scaling_rules(service_type),
        status=status,
    )
