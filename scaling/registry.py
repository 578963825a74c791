# scaling/registry.py

import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, TypeVar

from scaling.exceptions import ServiceNotFoundError
from scaling.models import ServiceDescriptor

T = TypeVar("T")


class ServiceRegistry:
    """
    Owned map of managed services.

    Every service has its own re-entrant lock. It is held only for short
    reads and writes of a descriptor; the executor's ``scaling_in_flight``
    marker, set and cleared under it, keeps two scaling attempts on the same
    service from interleaving while the provider call runs unlocked.
    """

    def __init__(self):
        self._services: Dict[str, ServiceDescriptor] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def upsert(self, service: ServiceDescriptor) -> None:
        with self._guard:
            self._locks.setdefault(service.id, threading.RLock())
        with self.lock(service.id):
            self._services[service.id] = service

    def get(self, service_id: str) -> Optional[ServiceDescriptor]:
        return self._services.get(service_id)

    def require(self, service_id: str) -> ServiceDescriptor:
        service = self._services.get(service_id)
        if service is None:
            raise ServiceNotFoundError(service_id)
        return service

    def ids(self) -> List[str]:
        with self._guard:
            return list(self._locks)

    def all(self) -> List[ServiceDescriptor]:
        return [self._services[sid] for sid in self.ids() if sid in self._services]

    def __len__(self):
        return len(self._services)

    def __contains__(self, service_id):
        return service_id in self._services

    @contextmanager
    def lock(self, service_id: str):
        with self._guard:
            lock = self._locks.get(service_id)
        if lock is None:
            raise ServiceNotFoundError(service_id)
        with lock:
            yield

    def with_lock(self, service_id: str, fn: Callable[[ServiceDescriptor], T]) -> T:
        """Run ``fn(service)`` while holding the service's lock."""
        with self.lock(service_id):
            return fn(self.require(service_id))

    def total_instances(self) -> int:
        return sum(s.current_instances for s in self.all())
