# scaling/events.py

import logging
import threading
from collections import defaultdict

# Topics published inside the process
SCALING_COMPLETED = "scaling_completed"
SCALING_FAILED = "scaling_failed"
SCALING_RETRIES_EXHAUSTED = "scaling_retries_exhausted"
ALERT = "alert"
DECISION = "decision"


class EventBus:
    """
    Explicit in-process publish/subscribe channel.

    Handlers run synchronously on the publisher's thread, in subscription
    order. A failing handler is logged and does not stop delivery to the rest.
    """

    def __init__(self):
        self._handlers = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic, handler):
        with self._lock:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic, handler):
        with self._lock:
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

    def publish(self, topic, payload):
        with self._lock:
            handlers = list(self._handlers[topic])
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logging.exception(f"Handler {getattr(handler, '__name__', handler)} failed for topic '{topic}'")
        return delivered

    def subscriber_count(self, topic):
        with self._lock:
            return len(self._handlers[topic])
