"""Shared fixtures: a controllable clock, service builders and a fake provisioning client."""

from unittest import mock

import pytest

from scaling.events import EventBus
from scaling.executor import ScalingExecutor
from scaling.models import build_service_descriptor
from scaling.persistence import ScalingHistory
from scaling.registry import ServiceRegistry


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_service():
    def _make(service_id="srv-api", name="hive-ace-crm-backend-api", current=3, **overrides):
        service = build_service_descriptor(service_id, name, current_instances=current, status="live")
        for key, value in overrides.items():
            setattr(service, key, value)
        return service
    return _make


@pytest.fixture
def client():
    fake = mock.Mock()
    fake.scale_service.side_effect = lambda service_id, n: {"id": service_id, "numInstances": n}
    fake.trigger_deploy.side_effect = lambda service_id: {"id": service_id, "status": "created"}
    fake.get_service.side_effect = lambda service_id: {
        "id": service_id, "name": service_id, "num_instances": 1, "state": "live",
    }
    fake.list_services.return_value = [
        {"id": "srv-api", "name": "hive-ace-crm-backend-api", "num_instances": 3, "state": "live"},
        {"id": "srv-web", "name": "hive-ace-crm-frontend", "num_instances": 1, "state": "live"},
        {"id": "srv-other", "name": "unrelated-service", "num_instances": 1, "state": "live"},
    ]
    return fake


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry():
    return ServiceRegistry()


@pytest.fixture
def history(tmp_path):
    return ScalingHistory(str(tmp_path / "scaling-history.json"))


@pytest.fixture
def executor(registry, client, history, bus, clock):
    return ScalingExecutor(registry, client, history, bus, clock=clock)
