"""Tests for service defaults and scaling rule overrides."""

import pytest

from scaling.exceptions import InvalidScalingRequest, ServiceNotFoundError
from scaling.models import (
    ServiceType,
    build_service_descriptor,
    default_scaling_rules,
    service_type_for,
)
from scaling.registry import ServiceRegistry


class TestServiceDefaults:
    @pytest.mark.parametrize("name,expected", [
        ("hive-ace-crm-backend", ServiceType.BACKEND),
        ("hive-ace-crm-frontend", ServiceType.FRONTEND),
        ("hive-ace-crm-portal", ServiceType.PORTAL),
        ("hive-ace-crm-worker", ServiceType.WORKER),
        ("hive-ace-crm", ServiceType.UNKNOWN),
    ])
    def test_type_from_name(self, name, expected):
        assert service_type_for(name) == expected

    def test_backend_limits(self):
        service = build_service_descriptor("srv", "hive-ace-crm-backend", current_instances=3)
        assert (service.min_instances, service.max_instances, service.target_utilization) == (2, 10, 70.0)

    def test_worker_rules(self):
        rules = default_scaling_rules(ServiceType.WORKER)
        assert rules.scale_up_thresholds.cpu == 85
        assert rules.scale_down_thresholds.cpu == 20
        assert rules.cooldown_period == 180
        assert rules.scale_up_thresholds.memory == 80


class TestRulesMerge:
    def test_partial_threshold_override(self):
        rules = default_scaling_rules(ServiceType.BACKEND)
        merged = rules.merged({"scale_up_thresholds": {"cpu": 90}, "cooldown_period": 60})
        assert merged.scale_up_thresholds.cpu == 90
        assert merged.scale_up_thresholds.memory == 80
        assert merged.cooldown_period == 60
        assert rules.scale_up_thresholds.cpu == 75

    def test_unknown_rule(self):
        rules = default_scaling_rules(ServiceType.BACKEND)
        with pytest.raises(InvalidScalingRequest, match="Unknown scaling rule"):
            rules.merged({"turbo": True})

    def test_unknown_threshold(self):
        rules = default_scaling_rules(ServiceType.BACKEND)
        with pytest.raises(InvalidScalingRequest, match="Unknown threshold"):
            rules.merged({"scale_down_thresholds": {"disk": 1}})

    @pytest.mark.parametrize("overrides", [{"cooldown_period": -1}, {"scale_step_size": 0}])
    def test_invalid_values(self, overrides):
        with pytest.raises(InvalidScalingRequest):
            default_scaling_rules(ServiceType.BACKEND).merged(overrides)


class TestRegistry:
    def test_lock_unknown_service(self):
        registry = ServiceRegistry()
        with pytest.raises(ServiceNotFoundError):
            with registry.lock("missing"):
                pass

    def test_total_instances(self, make_service):
        registry = ServiceRegistry()
        registry.upsert(make_service("a", current=3))
        registry.upsert(make_service("b", current=2))
        assert registry.total_instances() == 5
        assert registry.ids() == ["a", "b"]
