"""Simulated cloud used by the test suite and ``tierstack apply --simulate``."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey
from tierstack.utils.logging import get_logger

from .base import BaseProvisioner

logger = get_logger(__name__)

ID_PREFIXES = {
    ResourceKind.NETWORK: 'vpc',
    ResourceKind.SUBNET: 'subnet',
    ResourceKind.GATEWAY: 'igw',
    ResourceKind.ROUTE_TABLE: 'rtb',
    ResourceKind.SECURITY_GROUP: 'sg',
    ResourceKind.TARGET_GROUP: 'tg',
    ResourceKind.LOAD_BALANCER: 'lb',
    ResourceKind.LISTENER: 'listener',
    ResourceKind.LAUNCH_TEMPLATE: 'lt',
    ResourceKind.SCALING_GROUP: 'asg',
    ResourceKind.SCALING_POLICY: 'policy',
    ResourceKind.DATABASE_SUBNET_GROUP: 'dbsubnet',
    ResourceKind.DATABASE_INSTANCE: 'db',
}

# Seconds a gated create waits before giving up
GATE_TIMEOUT = 10.0


class SimulatedFailure(Exception):
    """Failure injected into the simulated cloud."""
    pass


@dataclass
class CloudResource:
    """A resource living in the simulated cloud."""
    identifier: str
    kind: ResourceKind
    key: NaturalKey
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CloudCall:
    """One call made against the simulated cloud."""
    operation: str  # find, create or delete
    kind: ResourceKind
    name: str
    identifier: Optional[str] = None


class InMemoryCloud:
    """Thread-safe simulated cloud with call logging and failure injection.

    Tests use ``fail`` to make a call raise, ``delay`` to slow a create down,
    and ``gate`` to hold a create until the test releases it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.resources: Dict[str, CloudResource] = {}
        self.calls: List[CloudCall] = []
        # ('start' | 'end', logical name) around every create
        self.events: List[Tuple[str, str]] = []
        self._names: Dict[str, str] = {}
        self._failures: Dict[Tuple[str, str], Tuple[Exception, Optional[int]]] = {}
        self._delays: Dict[str, float] = {}
        self._gates: Dict[str, threading.Event] = {}
        self._counter = 0
        self._active = 0
        self.max_active = 0

    def fail(
        self,
        operation: str,
        name: str,
        error: Optional[Exception] = None,
        times: Optional[int] = None,
    ) -> None:
        """Make ``operation`` (find, create, delete) raise for a logical name.

        Args:
            operation: Operation to fail
            name: Logical name the failure applies to
            error: Exception to raise, a SimulatedFailure by default
            times: Number of calls to fail, or None for every call
        """
        error = error or SimulatedFailure(f"simulated {operation} failure for '{name}'")
        with self._lock:
            self._failures[(operation, name)] = (error, times)

    def delay(self, name: str, seconds: float) -> None:
        """Slow down create for a logical name."""
        with self._lock:
            self._delays[name] = seconds

    def gate(self, name: str) -> threading.Event:
        """Hold create for a logical name until the returned event is set."""
        with self._lock:
            event = self._gates.setdefault(name, threading.Event())
        return event

    def seed(self, key: NaturalKey, parameters: Optional[Dict[str, Any]] = None) -> str:
        """Place a pre-existing resource in the cloud, as if made by an earlier run."""
        with self._lock:
            identifier = self._next_identifier(key.kind, parameters or {})
            self.resources[identifier] = CloudResource(identifier, key.kind, key, dict(parameters or {}))
            self._names[identifier] = key.name
        return identifier

    def find(self, kind: ResourceKind, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        self._record(CloudCall('find', kind, key.name))
        self._maybe_fail('find', key.name)
        with self._lock:
            for resource in self.resources.values():
                if resource.key == key:
                    return resource.identifier
        return None

    def create(self, kind: ResourceKind, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        self._record(CloudCall('create', kind, key.name))
        with self._lock:
            self.events.append(('start', key.name))
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            gate = self._gates.get(key.name)
            delay = self._delays.get(key.name, 0.0)

        try:
            if gate is not None and not gate.wait(GATE_TIMEOUT):
                raise SimulatedFailure(f"gate for '{key.name}' was never released")
            if delay:
                time.sleep(delay)
            self._maybe_fail('create', key.name)

            with self._lock:
                identifier = self._next_identifier(kind, parameters)
                self.resources[identifier] = CloudResource(identifier, kind, key, dict(parameters))
                self._names[identifier] = key.name
            logger.debug(f"Simulated create of {identifier}", extra={'logical_name': key.name})
            return identifier
        finally:
            with self._lock:
                self._active -= 1
                self.events.append(('end', key.name))

    def delete(self, kind: ResourceKind, identifier: str) -> None:
        with self._lock:
            name = self._names.get(identifier, identifier)
        self._record(CloudCall('delete', kind, name, identifier))
        self._maybe_fail('delete', name)
        with self._lock:
            self.resources.pop(identifier, None)

    def exists(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self.resources

    def names(self, operation: Optional[str] = None) -> List[str]:
        """Logical names of recorded calls, optionally for one operation."""
        with self._lock:
            return [call.name for call in self.calls if operation is None or call.operation == operation]

    def resource_for(self, name: str) -> Optional[CloudResource]:
        """Live resource for a logical name."""
        with self._lock:
            for resource in self.resources.values():
                if resource.key.name == name:
                    return resource
        return None

    def _record(self, call: CloudCall) -> None:
        with self._lock:
            self.calls.append(call)

    def _maybe_fail(self, operation: str, name: str) -> None:
        with self._lock:
            failure = self._failures.get((operation, name))
            if failure is None:
                return
            error, times = failure
            if times is not None:
                if times <= 0:
                    return
                self._failures[(operation, name)] = (error, times - 1)
        raise error

    def _next_identifier(self, kind: ResourceKind, parameters: Dict[str, Any]) -> str:
        self._counter += 1
        prefix = ID_PREFIXES[kind]
        if kind == ResourceKind.GATEWAY and parameters.get('type') == 'nat':
            prefix = 'nat'
        return f"{prefix}-{self._counter:08x}"


class InMemoryProvisioner(BaseProvisioner):
    """Provisioner for one kind backed by an InMemoryCloud."""

    def __init__(self, cloud: InMemoryCloud, kind: ResourceKind):
        self.cloud = cloud
        self.kind = kind

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        return self.cloud.find(self.kind, key, parameters)

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        return self.cloud.create(self.kind, key, parameters)

    def delete(self, identifier: str) -> None:
        self.cloud.delete(self.kind, identifier)


def build_memory_provisioners(cloud: InMemoryCloud) -> Dict[ResourceKind, BaseProvisioner]:
    """One in-memory provisioner per resource kind, sharing ``cloud``."""
    return {kind: InMemoryProvisioner(cloud, kind) for kind in ResourceKind}
