# orchestration/subsystem.py

import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum


class SubsystemState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"  # prepared, waiting for an explicit command (deployer)
    ACTIVE = "active"
    FAILED = "failed"
    RECOVERING = "recovering"
    STOPPED = "stopped"


class ManagedSubsystem(ABC):
    """Lifecycle contract every subsystem the orchestrator owns implements."""

    name = "subsystem"

    @abstractmethod
    def start(self):
        """Bring the subsystem up; also used to restart it after a failure."""

    @abstractmethod
    def stop(self):
        """Stop all background work and persist state."""

    @abstractmethod
    def status(self) -> dict:
        """Best-effort status snapshot; always contains ``is_active``."""

    @property
    def is_active(self) -> bool:
        return bool(self.status().get("is_active"))


class PeriodicTask:
    """
    Runs ``target`` every ``interval`` seconds on a daemon thread.

    The loop checks its own stop event and the shared ``shutdown`` event at the
    top of every cycle and exits by not scheduling another one; in-flight work
    is never interrupted. Exceptions from ``target`` are logged and the loop
    carries on.
    """

    def __init__(self, name, interval, target, shutdown=None):
        self.name = name
        self.interval = interval
        self.target = target
        self.shutdown = shutdown
        self.cycles = 0
        self.last_run_at = None
        self._stop = threading.Event()
        self._thread = None

    def _should_run(self):
        if self._stop.is_set():
            return False
        return self.shutdown is None or not self.shutdown.is_set()

    def _run(self):
        while self._should_run():
            try:
                self.target()
            except Exception:
                logging.exception(f"Unexpected error in {self.name} cycle")
            self.cycles += 1
            self.last_run_at = time.time()
            if self._stop.wait(self.interval):
                break
        logging.info(f"{self.name} loop stopped after {self.cycles} cycles")

    def start(self):
        if self.is_alive():
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def is_alive(self):
        return self._thread is not None and self._thread.is_alive()


class PeriodicSubsystem(ManagedSubsystem):
    """A subsystem whose work is a fixed set of PeriodicTasks."""

    def __init__(self, shutdown=None):
        self.shutdown = shutdown
        self._active = False
        self._tasks = []
        self.start_time = time.time()

    def build_tasks(self):
        """Return the PeriodicTasks this subsystem runs; called on every (re)start."""
        return []

    def on_start(self):
        pass

    def on_stop(self):
        pass

    def start(self):
        self.on_start()
        for task in self._tasks:
            task.stop(timeout=0)
        self._tasks = self.build_tasks()
        self._active = True
        for task in self._tasks:
            task.start()
        logging.info(f"{self.name} started with {len(self._tasks)} periodic tasks")

    def stop(self, timeout=5.0):
        self._active = False
        for task in self._tasks:
            task.stop(timeout=timeout)
        self.on_stop()
        logging.info(f"{self.name} stopped")

    def tasks_alive(self):
        return all(task.is_alive() for task in self._tasks)

    def status(self):
        return {
            "is_active": self._active and self.tasks_alive(),
            "uptime": time.time() - self.start_time,
            "tasks": {task.name: {"alive": task.is_alive(), "cycles": task.cycles} for task in self._tasks},
        }
