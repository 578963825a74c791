"""Tests for the admin HTTP API."""

import pytest
from fastapi.testclient import TestClient

from backend.main import create_app
from data.fetch_live_metrics import SyntheticMetricsSource
from scaling.autoscaler import AutoScaler
from scaling.exceptions import ProvisioningError
from scaling.persistence import ScalingHistory


class StubOrchestrator:
    """Just enough of the orchestrator surface for the API: one scaler, never started."""

    def __init__(self, scaler):
        self.systems = {"scaler": scaler}
        self.is_active = True
        self.recovery_calls = 0

    def get_status(self):
        return {"is_active": self.is_active, "systems": {"scaler": "active"}}

    def manual_scale(self, service_id, target_instances):
        return self.systems["scaler"].manual_scale(service_id, target_instances)

    def set_scaling_rules(self, service_id, overrides):
        return self.systems["scaler"].set_scaling_rules(service_id, overrides)

    def system_recovery(self):
        self.recovery_calls += 1
        return {"scaler": True}


@pytest.fixture
def scaler(client, clock, tmp_path):
    scaler = AutoScaler(client, SyntheticMetricsSource(clock=clock), clock=clock,
                        history=ScalingHistory(str(tmp_path / "history.json")))
    scaler.load_services()
    return scaler


@pytest.fixture
def api(scaler):
    return TestClient(create_app(StubOrchestrator(scaler)))


class TestReadEndpoints:
    def test_health(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status(self, api):
        assert api.get("/status").json()["systems"] == {"scaler": "active"}

    def test_predictions_empty(self, api):
        assert api.get("/predictions").json() == {}

    def test_history(self, api):
        api.post("/services/srv-api/scale", json={"target_instances": 5})
        history = api.get("/history", params={"limit": 5}).json()
        assert len(history) == 1
        assert history[0]["action"] == "manual_scale"

    def test_history_bad_limit(self, api):
        assert api.get("/history", params={"limit": 0}).status_code == 400


class TestRecovery:
    def test_triggers_system_recovery(self, scaler):
        orchestrator = StubOrchestrator(scaler)
        api = TestClient(create_app(orchestrator))
        response = api.post("/recovery")
        assert response.status_code == 200
        assert response.json() == {"recovered": {"scaler": True}, "systems": {"scaler": "active"}}
        assert orchestrator.recovery_calls == 1


class TestManualScaling:
    def test_scale(self, api, scaler, client):
        response = api.post("/services/srv-api/scale", json={"target_instances": 6})
        assert response.status_code == 200
        assert response.json()["to_instances"] == 6
        assert scaler.registry.get("srv-api").current_instances == 6
        client.scale_service.assert_called_once_with("srv-api", 6)

    def test_out_of_range(self, api, client):
        response = api.post("/services/srv-api/scale", json={"target_instances": 50})
        assert response.status_code == 400
        assert "must be between 2 and 10" in response.json()["detail"]
        client.scale_service.assert_not_called()

    def test_unknown_service(self, api):
        response = api.post("/services/missing/scale", json={"target_instances": 2})
        assert response.status_code == 404

    def test_provider_failure(self, api, client):
        client.scale_service.side_effect = ProvisioningError("503")
        response = api.post("/services/srv-api/scale", json={"target_instances": 4})
        assert response.status_code == 502

    def test_scale_already_in_progress(self, api, scaler, client):
        scaler.registry.get("srv-api").scaling_in_flight = True
        response = api.post("/services/srv-api/scale", json={"target_instances": 4})
        assert response.status_code == 400
        assert "already in progress" in response.json()["detail"]
        client.scale_service.assert_not_called()

    def test_body_validated(self, api):
        assert api.post("/services/srv-api/scale", json={}).status_code == 422


class TestRulesUpdate:
    def test_partial_override(self, api, scaler):
        response = api.patch("/services/srv-api/rules", json={
            "scale_up_thresholds": {"cpu": 90}, "cooldown_period": 120,
        })
        assert response.status_code == 200
        assert response.json()["scale_up_thresholds"]["cpu"] == 90
        rules = scaler.registry.get("srv-api").scaling_rules
        assert rules.cooldown_period == 120
        assert rules.scale_up_thresholds.memory == 80

    def test_invalid_override(self, api):
        response = api.patch("/services/srv-api/rules", json={"scale_step_size": 0})
        assert response.status_code == 400

    def test_unknown_service(self, api):
        assert api.patch("/services/missing/rules", json={"cooldown_period": 10}).status_code == 404
