"""State module for tracking resource lifecycles within a run."""

from .manager import StateError, StateLockError, StateManager, StateNotFoundError
from .models import (
    EntryOutcome,
    ExecutionEntry,
    ExecutionRecord,
    ResourceState,
    ResourceStatus,
    RunStatus,
    StateSnapshot,
)
from .store import StateStore

__all__ = [
    "ResourceStatus",
    "ResourceState",
    "EntryOutcome",
    "ExecutionEntry",
    "ExecutionRecord",
    "RunStatus",
    "StateSnapshot",
    "StateStore",
    "StateManager",
    "StateError",
    "StateLockError",
    "StateNotFoundError",
]
