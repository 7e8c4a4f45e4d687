"""In-memory state store shared by the reconciler and rollback controller."""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from tierstack.plan.models import Plan
from tierstack.state.models import ExecutionRecord, ResourceState, ResourceStatus
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)

_UNSET = object()


class StateStore:
    """Mapping of logical name to resource state for one run.

    Every read and write takes the store lock. ``writer(name)`` additionally
    serializes the workers acting on a single logical name, so at most one
    writer per resource is active at a time.
    """

    def __init__(self, order: Optional[List[str]] = None):
        """Initialize an empty store.

        Args:
            order: Logical names in plan authoring order, used by ``all()``
        """
        self._states: Dict[str, ResourceState] = {}
        self._order: List[str] = list(order or [])
        self._lock = threading.RLock()
        self._writers: Dict[str, threading.Lock] = {}
        self.record = ExecutionRecord()

    @classmethod
    def from_plan(cls, plan: Plan) -> "StateStore":
        """Create a store holding a ``Pending`` state for every descriptor."""
        store = cls(order=plan.names())
        for descriptor in plan.descriptors:
            store.put(ResourceState(name=descriptor.name, kind=descriptor.kind))
        return store

    def get(self, name: str) -> Optional[ResourceState]:
        """Current state for a logical name, or None."""
        with self._lock:
            return self._states.get(name)

    def put(self, state: ResourceState) -> None:
        """Store a state, replacing any previous one."""
        with self._lock:
            if state.name not in self._states and state.name not in self._order:
                self._order.append(state.name)
            self._states[state.name] = state

    def all(self) -> List[ResourceState]:
        """All states in plan authoring order."""
        with self._lock:
            return [self._states[name] for name in self._order if name in self._states]

    def status_of(self, name: str) -> Optional[ResourceStatus]:
        """Status for a logical name, or None when unknown."""
        state = self.get(name)
        return state.status if state else None

    def with_status(self, status: ResourceStatus) -> List[str]:
        """Names currently in the given status, in authoring order."""
        return [state.name for state in self.all() if state.status == status]

    def transition(
        self,
        name: str,
        status: ResourceStatus,
        identifier=_UNSET,
        error=_UNSET,
    ) -> ResourceState:
        """Move a resource to a new status.

        Args:
            name: Logical name
            status: New status
            identifier: New identifier, left unchanged when omitted
            error: New ``last_error``, left unchanged when omitted

        Returns:
            The stored state after the transition

        Raises:
            KeyError: If the name is not in the store
        """
        with self._lock:
            current = self._states[name]
            update = {'status': status, 'updated_at': datetime.utcnow()}
            if identifier is not _UNSET:
                update['identifier'] = identifier
            if error is not _UNSET:
                update['last_error'] = error
            state = current.model_copy(update=update)
            self._states[name] = state

        logger.debug(
            f"{current.status.value} -> {status.value}",
            extra={'logical_name': name, 'kind': current.kind.value},
        )
        return state

    @contextmanager
    def writer(self, name: str) -> Iterator[ResourceState]:
        """Hold exclusive write access to one logical name.

        Yields:
            The state at the time access was granted
        """
        with self._lock:
            lock = self._writers.setdefault(name, threading.Lock())
        with lock:
            yield self.get(name)

    def identifiers(self) -> Dict[str, str]:
        """Known identifiers keyed by logical name."""
        with self._lock:
            return {
                name: state.identifier
                for name, state in self._states.items()
                if state.identifier is not None
            }

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
