# scaling/persistence.py

import json
import logging
import os
import threading
import time

from backend.config import MAX_HISTORY_EVENTS
from scaling.models import ScalingEvent


def write_json_atomic(path, data):
    """Write to a temporary file first, then rename (atomic on most filesystems)."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    temp_path = path + ".tmp"
    with open(temp_path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    os.replace(temp_path, path)


class ScalingHistory:
    """Append-only record of executed scaling intents, capped and mirrored to disk."""

    def __init__(self, path=None, max_events=MAX_HISTORY_EVENTS):
        self.path = path
        self.max_events = max_events
        self._events = []
        self._lock = threading.Lock()

    def load(self):
        if not self.path or not os.path.exists(self.path):
            logging.info("Starting fresh scaling history")
            return 0
        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logging.warning(f"Could not read scaling history {self.path}: {e}; starting fresh")
            return 0

        with self._lock:
            self._events = [ScalingEvent.from_dict(item) for item in raw][-self.max_events:]
            count = len(self._events)
        logging.info(f"Loaded {count} historical scaling events")
        return count

    def append(self, event: ScalingEvent):
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]
            self._save_locked()

    def save(self):
        with self._lock:
            self._save_locked()

    def _save_locked(self):
        if not self.path:
            return
        try:
            write_json_atomic(self.path, [e.to_dict() for e in self._events])
        except OSError as e:
            logging.error(f"Failed to save scaling history: {e}")

    def events(self):
        with self._lock:
            return list(self._events)

    def recent(self, count=10):
        with self._lock:
            return list(self._events[-count:])

    def since(self, timestamp):
        with self._lock:
            return [e for e in self._events if e.executed_at > timestamp]

    def __len__(self):
        with self._lock:
            return len(self._events)


class SnapshotWriter:
    """One timestamped JSON file per audit record, e.g. ``cost-analysis-<ms>.json``."""

    def __init__(self, directory, clock=time.time):
        self.directory = directory
        self.clock = clock
        self._lock = threading.Lock()

    def write(self, prefix, data):
        with self._lock:
            path = os.path.join(self.directory, f"{prefix}-{int(self.clock() * 1000)}.json")
            try:
                write_json_atomic(path, data)
            except OSError as e:
                logging.error(f"Failed to store {prefix} snapshot: {e}")
                return None
        return path
