# orchestration/monitor.py

import logging
import threading
import time
import uuid

from backend.config import (
    ALERT_RETENTION_SECONDS,
    ERROR_RATE_ALERT_PERCENT,
    HEALTHY_PROVIDER_STATES,
    MONITOR_INTERVAL_SECONDS,
    RESPONSE_TIME_ALERT_MS,
)
from orchestration.subsystem import PeriodicSubsystem, PeriodicTask
from scaling import events


class ServiceMonitor(PeriodicSubsystem):
    """
    Health watcher for managed services.

    Each pass refreshes the provider state of every service and compares the
    latest metrics against alert thresholds. Alerts are kept for 24h and
    published on the bus as plain dicts.
    """

    name = "monitor"

    def __init__(self, registry, client, bus, clock=time.time, interval=MONITOR_INTERVAL_SECONDS, shutdown=None):
        super().__init__(shutdown=shutdown)
        self.registry = registry
        self.client = client
        self.bus = bus
        self.clock = clock
        self.interval = interval
        self.alerts = []
        self.health = {}
        self._lock = threading.Lock()

    def build_tasks(self):
        return [PeriodicTask("health-monitoring", self.interval, self.run_cycle, self.shutdown)]

    def create_alert(self, alert_type, service, **details):
        alert = {
            "id": f"alert-{int(self.clock() * 1000)}-{uuid.uuid4().hex[:9]}",
            "type": alert_type,
            "service_id": service.id,
            "service_name": service.name,
            "current_instances": service.current_instances,
            "max_instances": service.max_instances,
            "in_cooldown": service.in_cooldown(self.clock()),
            "timestamp": self.clock(),
        }
        alert.update(details)
        with self._lock:
            self.alerts.append(alert)
        logging.warning(f"Alert created [{alert_type}]: {service.name}")
        self.bus.publish(events.ALERT, alert)
        return alert

    def check_service_health(self, service_id):
        service = self.registry.get(service_id)
        if service is None:
            return []
        raised = []

        try:
            info = self.client.get_service(service_id)
        except Exception as e:
            self.health[service_id] = "error"
            raised.append(self.create_alert("health_check_failed", service, error=str(e)))
        else:
            state = info.get("state", "unknown")
            with self.registry.lock(service_id):
                service.status = state
            healthy = state in HEALTHY_PROVIDER_STATES
            self.health[service_id] = "healthy" if healthy else "unhealthy"
            if not healthy:
                raised.append(self.create_alert("service_unhealthy", service, state=state))

        metrics = service.latest_metrics
        if metrics is not None:
            if metrics.response_time > RESPONSE_TIME_ALERT_MS:
                raised.append(self.create_alert(
                    "slow_response", service,
                    response_time=metrics.response_time, threshold=RESPONSE_TIME_ALERT_MS,
                    cpu_usage=metrics.cpu, memory_usage=metrics.memory,
                ))
            if metrics.error_rate > ERROR_RATE_ALERT_PERCENT:
                raised.append(self.create_alert(
                    "high_error_rate", service,
                    error_rate=metrics.error_rate, threshold=ERROR_RATE_ALERT_PERCENT,
                    cpu_usage=metrics.cpu, memory_usage=metrics.memory,
                ))
        return raised

    def cleanup_old_alerts(self):
        cutoff = self.clock() - ALERT_RETENTION_SECONDS
        with self._lock:
            self.alerts = [a for a in self.alerts if a["timestamp"] > cutoff]

    def run_cycle(self):
        raised = []
        for service_id in self.registry.ids():
            raised.extend(self.check_service_health(service_id))
        self.cleanup_old_alerts()
        return raised

    def status(self):
        status = super().status()
        with self._lock:
            status.update({
                "alerts": len(self.alerts),
                "recent_alerts": self.alerts[-10:],
                "service_health": dict(self.health),
            })
        return status
