# orchestration/deployer.py

import logging
import time

from orchestration.subsystem import ManagedSubsystem
from scaling.exceptions import ProvisioningError


class Deployer(ManagedSubsystem):
    """
    Triggers deploys of the managed services.

    Starting the deployer only prepares it; nothing is deployed until
    ``deploy()`` is called explicitly.
    """

    name = "deployer"

    def __init__(self, registry, client, clock=time.time):
        self.registry = registry
        self.client = client
        self.clock = clock
        self.state = "inactive"
        self.last_deployment = None

    def start(self):
        self.state = "ready"
        logging.info("Deployment system ready")

    def stop(self):
        self.state = "stopped"

    def deploy(self, strategy=None):
        """Trigger a deploy of every managed service; raises ProvisioningError if any fails."""
        if self.state not in ("ready", "active", "failed"):
            raise ProvisioningError(f"Deployer is not ready (state: {self.state})")

        results, failures = {}, {}
        for service in self.registry.all():
            try:
                results[service.id] = self.client.trigger_deploy(service.id)
            except ProvisioningError as e:
                logging.error(f"Deploy failed for {service.name}: {e}")
                failures[service.id] = str(e)

        self.last_deployment = {
            "strategy": strategy,
            "started_at": self.clock(),
            "deployed": sorted(results),
            "failed": failures,
        }
        if failures:
            self.state = "failed"
            raise ProvisioningError(f"Deploy failed for {len(failures)} service(s): {sorted(failures)}")

        self.state = "active"
        logging.info(f"Deployment triggered for {len(results)} services (strategy: {strategy})")
        return self.last_deployment

    def status(self):
        return {
            # Prepared counts as healthy; the deployer has no background work
            "is_active": self.state in ("ready", "active"),
            "state": self.state,
            "last_deployment": self.last_deployment,
        }
