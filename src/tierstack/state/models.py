"""Resource state and execution record models."""

import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field

from tierstack.plan.models import ResourceKind


class ResourceStatus(str, Enum):
    """Lifecycle of one resource within a run."""

    PENDING = "Pending"
    CREATING = "Creating"
    CREATED = "Created"
    FAILED = "Failed"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"


class EntryOutcome(str, Enum):
    """Outcome recorded for a resource in the execution record."""

    CREATED = "Created"
    ADOPTED = "Adopted"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"
    ROLLBACK_FAILED = "RollbackFailed"


class RunStatus(str, Enum):
    """Terminal status of a reconciliation run."""

    COMPLETED = "completed"
    ABORTED_CLEAN = "aborted_clean"
    ABORTED_DIRTY = "aborted_dirty"


class ResourceState(BaseModel):
    """Current state of one logical resource."""

    name: str = Field(..., description="Logical name")
    kind: ResourceKind = Field(..., description="Resource kind")
    identifier: Optional[str] = Field(None, description="Provider-assigned identifier")
    status: ResourceStatus = Field(ResourceStatus.PENDING, description="Lifecycle status")
    last_error: Optional[str] = Field(None, description="Most recent error message")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Last transition time")


class ExecutionEntry(BaseModel):
    """One line of the execution record."""

    name: str
    kind: ResourceKind
    outcome: EntryOutcome
    identifier: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None


class ExecutionRecord:
    """Append-only, ordered log of what a run did.

    Appends are serialized so concurrent workers record in the order their
    calls completed.
    """

    def __init__(self, entries: Optional[List[ExecutionEntry]] = None):
        self._entries: List[ExecutionEntry] = list(entries or [])
        self._lock = threading.Lock()

    def append(self, entry: ExecutionEntry) -> None:
        """Append an entry."""
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[ExecutionEntry]:
        """Snapshot of all entries in append order."""
        with self._lock:
            return list(self._entries)

    def created(self) -> List[ExecutionEntry]:
        """Entries for resources this run created, in creation order."""
        return [entry for entry in self.entries() if entry.outcome == EntryOutcome.CREATED]

    def owned(self) -> List[ExecutionEntry]:
        """Entries for resources this run left in the provider, in record order.

        These are the Created entries plus failed creates that carry the
        identifier of a partial resource they could not remove.
        """
        return [
            entry for entry in self.entries()
            if entry.outcome == EntryOutcome.CREATED
            or (entry.outcome == EntryOutcome.FAILED and entry.identifier)
        ]

    def names(self, outcome: Optional[EntryOutcome] = None) -> List[str]:
        """Logical names of entries, optionally filtered by outcome."""
        return [
            entry.name for entry in self.entries()
            if outcome is None or entry.outcome == outcome
        ]

    def find(self, name: str, outcome: Optional[EntryOutcome] = None) -> Optional[ExecutionEntry]:
        """Latest entry for a name, optionally with a given outcome."""
        for entry in reversed(self.entries()):
            if entry.name == name and (outcome is None or entry.outcome == outcome):
                return entry
        return None

    def to_list(self) -> List[Dict[str, Any]]:
        """JSON-ready representation."""
        return [entry.model_dump(mode='json') for entry in self.entries()]

    @classmethod
    def from_list(cls, data: List[Dict[str, Any]]) -> "ExecutionRecord":
        """Rebuild a record from ``to_list`` output."""
        return cls([ExecutionEntry.model_validate(item) for item in data])

    def __iter__(self) -> Iterator[ExecutionEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class StateSnapshot(BaseModel):
    """Persisted view of a run, as written by ``StateManager``."""

    version: str = Field("1.0", description="State file format version")
    plan_name: str = Field(..., description="Plan the run reconciled")
    operation: str = Field("apply", description="apply or destroy")
    project: Optional[str] = Field(None, description="Project name")
    environment: Optional[str] = Field(None, description="Environment name")
    status: Optional[RunStatus] = Field(None, description="Run status, unset while running")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Snapshot time")
    resources: List[ResourceState] = Field(default_factory=list, description="States in plan order")
    record: List[ExecutionEntry] = Field(default_factory=list, description="Execution record")

    def get(self, name: str) -> Optional[ResourceState]:
        """State for a logical name."""
        for state in self.resources:
            if state.name == name:
                return state
        return None

    def identifiers(self) -> Dict[str, str]:
        """Known identifiers keyed by logical name."""
        return {state.name: state.identifier for state in self.resources if state.identifier}
