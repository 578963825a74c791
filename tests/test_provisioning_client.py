"""Tests for the provisioning API client."""

from unittest import mock

import pytest
import requests

from cloud.provisioning_client import ProvisioningClient, normalize_service
from scaling.exceptions import ProvisioningError


def response(status=200, payload=None):
    r = mock.Mock()
    r.status_code = status
    r.content = b"{}" if payload is not None else b""
    r.json.return_value = payload
    r.text = str(payload)
    return r


def make_client(dry_run=False, **responses):
    session = mock.Mock()
    session.headers = {}
    session.request.return_value = response(**responses) if responses else response(payload={})
    return ProvisioningClient(base_url="https://api.example.com/v1/", api_key="secret", dry_run=dry_run,
                              session=session), session


class TestNormalizeService:
    def test_wrapped_listing_record(self):
        raw = {"cursor": "abc", "service": {
            "id": "srv-1", "name": "hive-ace-crm-backend", "suspended": "not_suspended",
            "serviceDetails": {"numInstances": 3},
        }}
        assert normalize_service(raw) == {
            "id": "srv-1", "name": "hive-ace-crm-backend", "num_instances": 3, "state": "not_suspended",
        }

    def test_defaults(self):
        assert normalize_service({"id": "srv-2"}) == {
            "id": "srv-2", "name": "", "num_instances": 1, "state": "unknown",
        }


class TestProvisioningClient:
    def test_bearer_header(self):
        _, session = make_client()
        assert session.headers["Authorization"] == "Bearer secret"

    def test_list_services(self):
        client, session = make_client(payload=[{"service": {"id": "srv-1", "name": "a", "numInstances": 2}}])
        services = client.list_services()
        assert services[0]["num_instances"] == 2
        method, url = session.request.call_args[0]
        assert (method, url) == ("GET", "https://api.example.com/v1/services")

    def test_list_services_rejects_non_list(self):
        client, _ = make_client(payload={"error": "nope"})
        with pytest.raises(ProvisioningError, match="expected a list"):
            client.list_services()

    def test_scale_sends_patch(self):
        client, session = make_client(payload={"id": "srv-1", "numInstances": 4})
        assert client.scale_service("srv-1", 4) == {"id": "srv-1", "numInstances": 4}
        assert session.request.call_args[0] == ("PATCH", "https://api.example.com/v1/services/srv-1")
        assert session.request.call_args[1]["json"] == {"numInstances": 4}

    def test_dry_run_never_calls_provider(self):
        client, session = make_client(dry_run=True)
        assert client.scale_service("srv-1", 4) == {"dry_run": True, "id": "srv-1", "numInstances": 4}
        assert client.trigger_deploy("srv-1")["dry_run"] is True
        session.request.assert_not_called()

    def test_http_error_raises(self):
        client, _ = make_client(status=503, payload={"message": "unavailable"})
        with pytest.raises(ProvisioningError) as exc_info:
            client.get_service("srv-1")
        assert exc_info.value.status_code == 503

    def test_transport_error_raises(self):
        client, session = make_client()
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ProvisioningError, match="refused"):
            client.scale_service("srv-1", 2)
