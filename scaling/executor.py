# scaling/executor.py

import logging
import time
from collections import defaultdict

from backend.config import MAX_CONSECUTIVE_FAILURES
from scaling import events
from scaling.events import EventBus
from scaling.exceptions import InvalidScalingRequest
from scaling.models import ScalingAction, ScalingEvent, ScalingIntent
from scaling.persistence import ScalingHistory
from scaling.registry import ServiceRegistry


class ScalingExecutor:
    """
    Applies scaling intents through the provisioning API.

    The service lock guards the checks and the bookkeeping, not the provider
    call: a service is marked ``scaling_in_flight`` under the lock before the
    call and cleared under it afterwards, so at most one scaling action per
    service is ever in flight while collectors and monitors keep running.
    """

    def __init__(self, registry: ServiceRegistry, client, history: ScalingHistory, bus: EventBus,
                 clock=time.time, max_consecutive_failures=MAX_CONSECUTIVE_FAILURES):
        self.registry = registry
        self.client = client
        self.history = history
        self.bus = bus
        self.clock = clock
        self.max_consecutive_failures = max_consecutive_failures
        self._consecutive_failures = defaultdict(int)

    def execute(self, intent: ScalingIntent, guarded=None):
        """
        Run one intent. Returns the recorded ScalingEvent, or None if the intent was dropped.

        Guarded intents (every automatic action by default) are dropped when
        the service is cooling down or has moved away from ``from_instances``.
        """
        if guarded is None:
            guarded = intent.action != ScalingAction.MANUAL_SCALE

        with self.registry.lock(intent.service_id):
            service = self.registry.require(intent.service_id)
            now = self.clock()

            if service.scaling_in_flight:
                if not guarded:
                    raise InvalidScalingRequest(f"Scaling already in progress for {service.name}")
                logging.info(f"Dropping {intent.action.value} for {service.name}: scaling already in progress")
                return None
            if guarded and service.in_cooldown(now):
                remaining = int(service.cooldown_until - now)
                logging.info(f"Dropping {intent.action.value} for {service.name}: cooldown active, {remaining}s remaining")
                return None
            if guarded and intent.from_instances != service.current_instances:
                logging.warning(
                    f"Dropping stale {intent.action.value} for {service.name}: "
                    f"intent from {intent.from_instances}, service now at {service.current_instances}"
                )
                return None

            service.scaling_in_flight = True

        logging.info(
            f"Executing {intent.action.value} for {service.name}: "
            f"{intent.from_instances} -> {intent.to_instances} instances ({intent.reason})"
        )
        try:
            response = self.client.scale_service(service.id, intent.to_instances)
        except Exception as e:
            return self._record_failure(intent, service, now, e)

        with self.registry.lock(intent.service_id):
            service.current_instances = intent.to_instances
            service.last_scaling_at = now
            service.cooldown_until = now + service.scaling_rules.cooldown_period
            service.scaling_in_flight = False
            self._consecutive_failures[service.id] = 0

        event = ScalingEvent.from_intent(intent, service.name, now, success=True, provider_response=response)
        self.history.append(event)
        logging.info(
            f"service={service.name} | action={event.action} | from={event.from_instances} | "
            f"to={event.to_instances} | success=True | reason={event.reason}"
        )
        self.bus.publish(events.SCALING_COMPLETED, event)
        return event

    def _record_failure(self, intent, service, now, error):
        # No cooldown on failure: the next policy cycle may retry
        with self.registry.lock(service.id):
            service.scaling_in_flight = False
            self._consecutive_failures[service.id] += 1
            failures = self._consecutive_failures[service.id]

        event = ScalingEvent.from_intent(intent, service.name, now, success=False, error_message=str(error))
        self.history.append(event)
        logging.error(
            f"service={service.name} | action={event.action} | from={event.from_instances} | "
            f"to={event.to_instances} | success=False | error={error}"
        )
        self.bus.publish(events.SCALING_FAILED, event)
        if failures == self.max_consecutive_failures:
            logging.critical(f"Scaling {service.name} failed {failures} times in a row")
            self.bus.publish(events.SCALING_RETRIES_EXHAUSTED, {
                "service_id": service.id,
                "service_name": service.name,
                "consecutive_failures": failures,
                "last_error": str(error),
            })
        return event

    def consecutive_failures(self, service_id):
        return self._consecutive_failures.get(service_id, 0)

    def manual_scale(self, service_id, target_instances, reason="Manual scaling request", expected_instances=None):
        """
        Scale to an explicit instance count; must lie within the service's [min, max].

        With ``expected_instances`` the request is treated like an automatic
        action: it is dropped (None) if the service is cooling down or no
        longer runs that many instances.
        """
        with self.registry.lock(service_id):
            service = self.registry.require(service_id)
            try:
                target = int(target_instances)
            except (TypeError, ValueError):
                raise InvalidScalingRequest(f"Invalid instance count: {target_instances!r}")
            if target < service.min_instances or target > service.max_instances:
                raise InvalidScalingRequest(
                    f"Invalid instance count {target}: must be between "
                    f"{service.min_instances} and {service.max_instances}"
                )

            guarded = expected_instances is not None
            intent = ScalingIntent(
                service_id=service_id,
                action=ScalingAction.MANUAL_SCALE,
                from_instances=int(expected_instances) if guarded else service.current_instances,
                to_instances=target,
                reason=reason,
                timestamp=self.clock(),
            )
        return self.execute(intent, guarded=guarded)
