# cloud/provisioning_client.py

import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from backend.config import (
    DRY_RUN,
    PROVISIONING_API_KEY,
    PROVISIONING_API_URL,
    PROVISIONING_BACKOFF_FACTOR,
    PROVISIONING_MAX_RETRIES,
    PROVISIONING_TIMEOUT_SECONDS,
)
from scaling.exceptions import ProvisioningError


def normalize_service(raw):
    """
    Flatten a provider service record to ``{id, name, num_instances, state}``.

    Listing endpoints wrap each record as ``{"cursor": ..., "service": {...}}``;
    single-service endpoints return the record itself.
    """
    service = raw.get("service", raw) if isinstance(raw, dict) else {}
    details = service.get("serviceDetails") or {}
    num_instances = details.get("numInstances", service.get("numInstances"))
    state = details.get("state") or service.get("state") or service.get("suspended") or "unknown"
    return {
        "id": service.get("id"),
        "name": service.get("name", ""),
        "num_instances": int(num_instances) if num_instances is not None else 1,
        "state": state,
    }


class ProvisioningClient:
    """Bearer-authenticated client for the platform API that owns instance counts."""

    def __init__(self, base_url=PROVISIONING_API_URL, api_key=PROVISIONING_API_KEY,
                 timeout=PROVISIONING_TIMEOUT_SECONDS, dry_run=DRY_RUN,
                 max_retries=PROVISIONING_MAX_RETRIES, backoff_factor=PROVISIONING_BACKOFF_FACTOR,
                 session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.dry_run = dry_run
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        })

        # Bounded retries with exponential backoff for transient failures
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset({"GET", "PATCH"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProvisioningError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise ProvisioningError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProvisioningError(f"{method} {path} returned invalid JSON") from e

    def list_services(self):
        data = self._request("GET", "/services", params={"limit": 100})
        if not isinstance(data, list):
            raise ProvisioningError("Unexpected response from GET /services: expected a list")
        return [normalize_service(item) for item in data]

    def get_service(self, service_id):
        return normalize_service(self._request("GET", f"/services/{service_id}"))

    def scale_service(self, service_id, num_instances):
        """Set the desired instance count for ``service_id``."""
        if self.dry_run:
            logging.info(f"[DRY RUN] Would scale service {service_id} to {num_instances} instances")
            return {"dry_run": True, "id": service_id, "numInstances": num_instances}

        logging.info(f"Scaling service {service_id} to {num_instances} instances")
        return self._request("PATCH", f"/services/{service_id}", json={"numInstances": num_instances})

    def trigger_deploy(self, service_id):
        if self.dry_run:
            logging.info(f"[DRY RUN] Would trigger deploy for service {service_id}")
            return {"dry_run": True, "id": service_id}

        logging.info(f"Triggering deploy for service {service_id}")
        return self._request("POST", f"/services/{service_id}/deploys", json={})
