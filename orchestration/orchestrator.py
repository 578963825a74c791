# orchestration/orchestrator.py

import json
import logging
import os
import threading
import time
from collections import OrderedDict

import psutil

from backend.config import (
    DRY_RUN,
    HEALTH_CHECK_INTERVAL_SECONDS,
    HIVE_CONFIG_FILE,
    INTELLIGENCE_DIR,
    INTELLIGENCE_REVIEW_INTERVAL_SECONDS,
    MAX_RECOVERY_ATTEMPTS,
    METRICS_SOURCE,
    ORCHESTRATOR_LOG_DIR,
    PERFORMANCE_INTERVAL_SECONDS,
    PROVISIONING_API_KEY,
    RECOVERY_BACKOFF_SECONDS,
    RESOURCE_INTERVAL_SECONDS,
    SHUTDOWN_TIMEOUT_SECONDS,
    validate_configuration,
)
from cloud.provisioning_client import ProvisioningClient
from data.fetch_live_metrics import build_metrics_source
from orchestration.deployer import Deployer
from orchestration.intelligence import DecisionEngine
from orchestration.monitor import ServiceMonitor
from orchestration.subsystem import PeriodicTask, SubsystemState
from scaling import events
from scaling.autoscaler import AutoScaler
from scaling.events import EventBus
from scaling.exceptions import AutoscalerError, ConfigurationError
from scaling.persistence import SnapshotWriter

# Only alert responses are acted on; "scaling" decisions are advisory
ACTIONABLE_DECISIONS = {"alert_response": "scale_up"}


def process_usage():
    """Resource usage of this process."""
    process = psutil.Process()
    memory = process.memory_info()
    cpu_times = process.cpu_times()
    return {
        "memory_rss_mb": memory.rss / 1024 ** 2,
        "memory_vms_mb": memory.vms / 1024 ** 2,
        "cpu_percent": process.cpu_percent(interval=None),
        "cpu_user_seconds": cpu_times.user,
        "cpu_system_seconds": cpu_times.system,
        "threads": process.num_threads(),
    }


class Orchestrator:
    """
    Owns and supervises the intelligence, monitor, scaler and deployer subsystems.

    Lifecycle per subsystem: uninitialized -> initializing -> active, and on a
    failed health check failed -> recovering -> active. Recovery is bounded: a
    subsystem gets at most ``max_recovery_attempts`` restarts with exponential
    backoff between them; every failed attempt and the final exhaustion are
    escalated to the intelligence component as critical decisions.
    """

    def __init__(self, client=None, metrics_source=None, api_key=None, bus=None, clock=time.time,
                 config_path=HIVE_CONFIG_FILE, log_dir=ORCHESTRATOR_LOG_DIR, intelligence_dir=INTELLIGENCE_DIR,
                 scaler_options=None, intervals=None, max_recovery_attempts=MAX_RECOVERY_ATTEMPTS,
                 recovery_backoff=RECOVERY_BACKOFF_SECONDS, shutdown_timeout=SHUTDOWN_TIMEOUT_SECONDS):
        self.orchestrator_id = f"hive-queen-{int(time.time() * 1000)}"
        self.client = client
        self.metrics_source = metrics_source
        self.api_key = api_key if api_key is not None else PROVISIONING_API_KEY
        self.bus = bus if bus is not None else EventBus()
        self.clock = clock
        self.config_path = config_path
        self.log_dir = log_dir
        self.intelligence_dir = intelligence_dir
        self.scaler_options = scaler_options or {}
        self.intervals = {
            "health": HEALTH_CHECK_INTERVAL_SECONDS,
            "performance": PERFORMANCE_INTERVAL_SECONDS,
            "resources": RESOURCE_INTERVAL_SECONDS,
            "intelligence": INTELLIGENCE_REVIEW_INTERVAL_SECONDS,
        }
        self.intervals.update(intervals or {})
        self.max_recovery_attempts = max_recovery_attempts
        self.recovery_backoff = recovery_backoff
        self.shutdown_timeout = shutdown_timeout

        self.config = {}
        self.systems = OrderedDict()
        self.states = {}
        self.recovery = {}
        self.shutdown = threading.Event()
        self.start_time = time.time()
        self._active = False
        self._tasks = []
        self._writer = SnapshotWriter(log_dir, clock=clock)
        self._perf_writer = SnapshotWriter(os.path.join(log_dir, "performance"), clock=clock)
        self._resource_writer = SnapshotWriter(os.path.join(log_dir, "resources"), clock=clock)

    @property
    def is_active(self):
        return self._active and not self.shutdown.is_set()

    # -- initialization ------------------------------------------------------

    def initialize(self):
        """Bring every subsystem up. On any failure nothing is left running and the error propagates."""
        logging.info(f"Hive orchestrator {self.orchestrator_id} initializing")
        self.start_time = time.time()
        try:
            self.load_configuration()
            self.build_subsystems()
            self.start_systems_with_coordination()
            self.start_management_loops()
        except Exception as e:
            logging.error(f"Hive initialization failed: {e}")
            self._abort_initialization()
            raise

        self._active = True
        logging.info(
            f"Hive orchestrator fully active: {len(self.systems)} systems, "
            f"initialization took {time.time() - self.start_time:.2f}s"
        )
        return self.get_status()

    def load_configuration(self):
        validate_configuration(self.api_key)

        if self.config_path and os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r") as f:
                    self.config = json.load(f)
            except ValueError as e:
                raise ConfigurationError(f"Hive configuration {self.config_path} is not valid JSON: {e}") from e
            hive = self.config.get("hive", {})
            logging.info(f"Loaded hive configuration: {hive.get('name', 'unnamed')} v{hive.get('version', '?')}")
        else:
            logging.info("No hive configuration file found, using defaults")

    def build_subsystems(self):
        if self.client is None:
            self.client = ProvisioningClient(api_key=self.api_key, dry_run=DRY_RUN)
        if self.metrics_source is None:
            self.metrics_source = build_metrics_source(METRICS_SOURCE)

        intelligence = DecisionEngine(self.bus, clock=self.clock, memory_dir=self.intelligence_dir,
                                      shutdown=self.shutdown)
        scaler = AutoScaler(self.client, self.metrics_source, bus=self.bus, clock=self.clock,
                            shutdown=self.shutdown, **self.scaler_options)
        monitor = ServiceMonitor(scaler.registry, self.client, self.bus, clock=self.clock, shutdown=self.shutdown)
        deployer = Deployer(scaler.registry, self.client, clock=self.clock)

        # Start order: the decision component first so it hears everyone else
        self.systems = OrderedDict([
            ("intelligence", intelligence),
            ("monitor", monitor),
            ("scaler", scaler),
            ("deployer", deployer),
        ])
        self.states = {name: SubsystemState.UNINITIALIZED for name in self.systems}
        self.recovery = {}

    def _start_system(self, name):
        self.states[name] = SubsystemState.INITIALIZING
        logging.info(f"Starting {name}...")
        try:
            self.systems[name].start()
        except Exception:
            self.states[name] = SubsystemState.FAILED
            raise
        self.states[name] = self._running_state(name)
        logging.info(f"{name} is {self.states[name].value}")

    def _running_state(self, name):
        return SubsystemState.READY if name == "deployer" else SubsystemState.ACTIVE

    def start_systems_with_coordination(self):
        self._start_system("intelligence")
        self.setup_system_coordination()
        for name in ("monitor", "scaler", "deployer"):
            self._start_system(name)

    def setup_system_coordination(self):
        for topic, handler in self._subscriptions():
            self.bus.subscribe(topic, handler)
        logging.info("Inter-system coordination established")

    def _subscriptions(self):
        return [
            (events.ALERT, self._on_alert),
            (events.DECISION, self._on_decision),
            (events.SCALING_COMPLETED, self._on_scaling_outcome),
            (events.SCALING_FAILED, self._on_scaling_outcome),
            (events.SCALING_RETRIES_EXHAUSTED, self._on_retries_exhausted),
        ]

    def teardown_system_coordination(self):
        for topic, handler in self._subscriptions():
            self.bus.unsubscribe(topic, handler)

    def start_management_loops(self):
        self._tasks = [
            PeriodicTask("health-management", self.intervals["health"], self.check_systems_health, self.shutdown),
            PeriodicTask("performance-management", self.intervals["performance"], self.manage_performance,
                         self.shutdown),
            PeriodicTask("resource-management", self.intervals["resources"], self.monitor_resource_usage,
                         self.shutdown),
            PeriodicTask("intelligence-management", self.intervals["intelligence"], self.review_intelligence,
                         self.shutdown),
        ]
        for task in self._tasks:
            task.start()

    def _abort_initialization(self):
        self._active = False
        self.shutdown.set()
        self.teardown_system_coordination()
        for task in self._tasks:
            task.stop(timeout=0)
        for name, system in self.systems.items():
            if self.states.get(name) in (SubsystemState.ACTIVE, SubsystemState.READY):
                try:
                    system.stop()
                except Exception:
                    logging.exception(f"Failed to stop {name} after aborted initialization")
            self.states[name] = SubsystemState.STOPPED

    # -- event handlers ------------------------------------------------------

    def _on_alert(self, alert):
        self.systems["intelligence"].make_decision("alert_response", alert, priority="high")

    def _on_decision(self, decision):
        if ACTIONABLE_DECISIONS.get(decision.type) == decision.recommendation:
            self.execute_scaling_decision(decision)

    def _on_scaling_outcome(self, event):
        self.systems["intelligence"].record_scaling_outcome(event)
        if event.success:
            logging.info(f"Scaling event tracked: {event.service_name} -> {event.to_instances} instances")

    def _on_retries_exhausted(self, payload):
        self.systems["intelligence"].make_decision("scaling_retries_exhausted", payload, priority="critical")

    def execute_scaling_decision(self, decision):
        service_id = decision.context.get("service_id")
        target = decision.context.get("target_instances")
        if not service_id or target is None:
            return None
        logging.info(f"Executing scaling decision {decision.recommendation} for {service_id} -> {target}")
        # Guarded: dropped if the service scaled or entered cooldown since the alert
        try:
            return self.systems["scaler"].manual_scale(
                service_id, target,
                reason=f"Decision {decision.id}: {decision.recommendation} ({decision.context.get('type')})",
                expected_instances=decision.context.get("current_instances"),
            )
        except AutoscalerError as e:
            logging.error(f"Scaling decision execution failed: {e}")
            return None

    # -- health management ---------------------------------------------------

    def check_systems_health(self):
        for name, system in self.systems.items():
            state = self.states.get(name)
            if state not in (SubsystemState.ACTIVE, SubsystemState.READY, SubsystemState.FAILED):
                continue
            try:
                active = system.is_active
            except Exception as e:
                logging.error(f"Health check failed for {name}: {e}")
                active = False

            if active:
                if state == SubsystemState.FAILED:
                    self.states[name] = self._running_state(name)
                    self.recovery.pop(name, None)
                continue

            if state != SubsystemState.FAILED:
                logging.warning(f"System {name} appears inactive")
                self.states[name] = SubsystemState.FAILED
            self.attempt_system_recovery(name)

    def attempt_system_recovery(self, name, force=False):
        """Restart one subsystem, honouring the attempt budget and backoff unless ``force``."""
        record = self.recovery.setdefault(name, {"attempts": 0, "next_attempt_at": 0.0, "exhausted": False})
        now = self.clock()
        if not force and (record["exhausted"] or now < record["next_attempt_at"]):
            return False
        if force:
            record.update(attempts=0, exhausted=False)

        system = self.systems[name]
        self.states[name] = SubsystemState.RECOVERING
        logging.info(f"Attempting recovery for {name} (attempt {record['attempts'] + 1})")
        try:
            system.start()
            if not system.is_active:
                raise AutoscalerError(f"{name} did not report active after restart")
        except Exception as e:
            record["attempts"] += 1
            self.states[name] = SubsystemState.FAILED
            logging.error(f"Failed to recover {name}: {e}")
            self._escalate("system_failure", {
                "failed_system": name,
                "error": str(e),
                "attempt": record["attempts"],
            })
            if record["attempts"] >= self.max_recovery_attempts:
                record["exhausted"] = True
                self._escalate("recovery_exhausted", {"failed_system": name, "attempts": record["attempts"]})
            else:
                record["next_attempt_at"] = now + self.recovery_backoff * 2 ** (record["attempts"] - 1)
            return False

        self.states[name] = self._running_state(name)
        self.recovery.pop(name, None)
        logging.info(f"Successfully recovered {name}")
        return True

    def _escalate(self, decision_type, context):
        intelligence = self.systems.get("intelligence")
        if intelligence is None:
            return None
        try:
            return intelligence.make_decision(decision_type, context, priority="critical")
        except Exception:
            logging.exception(f"Could not escalate {decision_type} to intelligence")
            return None

    def system_recovery(self):
        """Operator-triggered: retry every failed subsystem, ignoring backoff and exhaustion."""
        recovered = {}
        for name, state in list(self.states.items()):
            if state == SubsystemState.FAILED:
                recovered[name] = self.attempt_system_recovery(name, force=True)
        return recovered

    # -- performance / resource management -----------------------------------

    def _system_statuses(self):
        statuses = {}
        for name, system in self.systems.items():
            try:
                statuses[name] = system.status()
            except Exception as e:
                statuses[name] = {"error": str(e)}
        return statuses

    def monitor_performance(self):
        statuses = self._system_statuses()
        performance = {
            "timestamp": self.clock(),
            "systems": statuses,
            "overall": {
                "uptime": time.time() - self.start_time,
                "active_systems_count": sum(1 for s in statuses.values() if s.get("is_active")),
                "process": process_usage(),
            },
        }
        self._perf_writer.write("perf", performance)
        return performance

    def manage_performance(self):
        performance = self.monitor_performance()
        inactive = [name for name, s in performance["systems"].items() if not s.get("is_active")]
        self.review_service_scaling()
        # Advisory: the decision is recorded, nothing is acted on here
        return self.systems["intelligence"].make_decision("performance_optimization", {
            "current_performance": performance["overall"],
            "inactive_systems": inactive,
        })

    def review_service_scaling(self):
        """Ask for an advisory scaling opinion on every service with a fresh sample."""
        scaler = self.systems.get("scaler")
        registry = getattr(scaler, "registry", None)
        if registry is None:
            return []
        decisions = []
        for service in registry.all():
            metrics = service.latest_metrics
            if metrics is None:
                continue
            decisions.append(self.systems["intelligence"].make_decision("scaling", {
                "service_id": service.id,
                "cpu_usage": metrics.cpu,
                "memory_usage": metrics.memory,
                "current_instances": service.current_instances,
                "max_instances": service.max_instances,
                "min_instances": service.min_instances,
            }))
        return decisions

    def monitor_resource_usage(self):
        usage = {
            "timestamp": self.clock(),
            "process": process_usage(),
            "system_resources": {},
        }
        scaler = self.systems.get("scaler")
        if scaler is not None:
            usage["system_resources"]["scaler"] = {
                "services": len(scaler.registry),
                "total_instances": scaler.registry.total_instances(),
                "history_events": len(scaler.history),
            }
        self._resource_writer.write("resources", usage)
        return usage

    def review_intelligence(self):
        intelligence = self.systems["intelligence"]
        window_start = self.clock() - self.intervals["intelligence"]
        recent = [d for d in list(intelligence.decision_history) if d.requested_at > window_start]
        if len(recent) > 100:
            logging.warning(f"High intelligence activity: {len(recent)} decisions in the last review window")
        return len(recent)

    # -- external API --------------------------------------------------------

    def deploy(self):
        deployer = self.systems["deployer"]
        decision = self.systems["intelligence"].make_decision("deployment_strategy", {
            "environment": "production",
            "risk_level": "medium",
            "complexity": "high",
        }, priority="high")
        logging.info(f"Intelligence recommended: {decision.recommendation}")

        try:
            result = deployer.deploy(strategy=decision.recommendation)
        except Exception:
            self.states["deployer"] = SubsystemState.FAILED
            raise
        self.states["deployer"] = SubsystemState.ACTIVE
        logging.info("Hive deployment completed")
        return result

    def manual_scale(self, service_id, target_instances):
        return self.systems["scaler"].manual_scale(service_id, target_instances)

    def set_scaling_rules(self, service_id, overrides):
        return self.systems["scaler"].set_scaling_rules(service_id, overrides)

    def get_status(self):
        """Best-effort snapshot; a broken subsystem shows up as an error entry, never as an exception."""
        return {
            "orchestrator_id": self.orchestrator_id,
            "is_active": self.is_active,
            "uptime": time.time() - self.start_time,
            "configuration": self.config.get("hive", {}).get("name", "unknown"),
            "systems": {name: state.value for name, state in self.states.items()},
            "system_details": self._system_statuses(),
            "recovery": {name: dict(record) for name, record in self.recovery.items()},
        }

    # -- shutdown ------------------------------------------------------------

    def _stop_systems(self, wait_timeout):
        """Stop every subsystem on its own thread; returns names that had not finished within the timeout."""
        threads = {}
        errors = {}

        def stop(name, system):
            try:
                system.stop()
            except Exception as e:
                errors[name] = e

        for name, system in self.systems.items():
            logging.info(f"Stopping {name}...")
            thread = threading.Thread(target=stop, args=(name, system), name=f"stop-{name}", daemon=True)
            thread.start()
            threads[name] = thread

        if wait_timeout is None:
            return list(threads)

        deadline = time.time() + wait_timeout
        for thread in threads.values():
            thread.join(max(0.0, deadline - time.time()))

        pending = [name for name, thread in threads.items() if thread.is_alive()]
        for name, error in errors.items():
            logging.error(f"{name} failed to stop gracefully: {error}")
        for name in self.systems:
            if name not in pending:
                self.states[name] = SubsystemState.STOPPED
        return pending

    def stop(self):
        logging.info("Stopping hive orchestrator")
        self._active = False
        self.shutdown.set()
        self.teardown_system_coordination()
        for task in self._tasks:
            task.stop(timeout=1.0)

        pending = self._stop_systems(self.shutdown_timeout)
        if pending:
            logging.warning(f"Systems still stopping after {self.shutdown_timeout}s: {pending}")
        else:
            logging.info("All systems stopped gracefully")

        self.save_final_state()
        logging.info("Hive orchestrator stopped")
        return pending

    def emergency_shutdown(self):
        logging.critical("Emergency shutdown initiated")
        self._active = False
        self.shutdown.set()
        self.teardown_system_coordination()
        for task in self._tasks:
            task.stop(timeout=0)
        self._stop_systems(wait_timeout=None)
        for name in self.systems:
            self.states[name] = SubsystemState.STOPPED
        logging.critical("Emergency shutdown completed")

    def save_final_state(self):
        final_state = {
            "orchestrator_id": self.orchestrator_id,
            "shutdown_at": self.clock(),
            "total_uptime": time.time() - self.start_time,
            "final_status": self.get_status(),
        }
        path = self._writer.write("hive-final-state", final_state)
        if path:
            logging.info(f"Final state saved: {path}")
        return path
