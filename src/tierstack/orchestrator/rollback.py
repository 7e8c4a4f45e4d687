"""Rollback of resources created by a failed or cancelled run."""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tierstack.plan.models import ResourceKind
from tierstack.provisioners.base import BaseProvisioner
from tierstack.state.models import EntryOutcome, ExecutionEntry, ResourceStatus
from tierstack.state.store import StateStore
from tierstack.utils.errors import RollbackIncomplete, error_handler
from tierstack.utils.logging import get_logger

from .reconciler import ProgressCallback, notify_progress

logger = get_logger(__name__)


@dataclass
class RollbackResult:
    """Result of a rollback or destroy sweep."""

    torn_down: List[str] = field(default_factory=list)  # in teardown order
    leftovers: Dict[str, str] = field(default_factory=dict)  # name -> error
    kept: List[str] = field(default_factory=list)  # adopted, left in place
    absent: List[str] = field(default_factory=list)  # destroy only: nothing to delete
    duration: float = 0.0  # seconds

    def is_clean(self) -> bool:
        """Every teardown succeeded."""
        return not self.leftovers

    def raise_if_incomplete(self) -> None:
        """Raise RollbackIncomplete when any teardown failed."""
        if self.leftovers:
            raise RollbackIncomplete(self.leftovers)


@dataclass(frozen=True)
class TeardownItem:
    """One resource to delete."""
    name: str
    kind: ResourceKind
    identifier: str


class RollbackController:
    """Tears down what a run created, newest first.

    Entries recorded as Created are torn down, along with failed creates
    that left a partial resource behind. Adopted resources existed before
    the run and are left alone. A failed delete never stops
    the sweep. The controller runs at most once.
    """

    def __init__(
        self,
        provisioners: Dict[ResourceKind, BaseProvisioner],
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """Initialize rollback controller.

        Args:
            provisioners: Provisioner per resource kind
            progress_callback: Optional callback for status changes
        """
        self.provisioners = provisioners
        self.progress_callback = progress_callback
        self._triggered = False
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    @property
    def triggered(self) -> bool:
        return self._triggered

    def rollback(self, store: StateStore) -> RollbackResult:
        """Tear down every resource the run created, in reverse creation order.

        Args:
            store: Store of the run, holding its execution record

        Returns:
            RollbackResult listing torn-down resources and leftovers

        Raises:
            RuntimeError: If rollback was already triggered for this run
        """
        with self._lock:
            if self._triggered:
                raise RuntimeError("Rollback was already triggered for this run")
            self._triggered = True

        owned = store.record.owned()
        adopted = store.record.names(EntryOutcome.ADOPTED)
        self.logger.warning(
            f"Rolling back {len(owned)} created resource(s)"
            + (f"; keeping {len(adopted)} adopted" if adopted else "")
        )

        items = [
            TeardownItem(name=entry.name, kind=entry.kind, identifier=entry.identifier)
            for entry in reversed(owned)
        ]
        result = self.teardown(items, store)
        result.kept = adopted
        return result

    def teardown(self, items: List[TeardownItem], store: StateStore) -> RollbackResult:
        """Delete resources in the given order, best effort.

        Args:
            items: Resources to delete, in deletion order
            store: Store to record transitions and entries in

        Returns:
            RollbackResult with torn-down names and leftovers
        """
        start = time.monotonic()
        result = RollbackResult()

        for item in items:
            error = self._teardown_one(item, store)
            if error is None:
                result.torn_down.append(item.name)
            else:
                result.leftovers[item.name] = error

        result.duration = time.monotonic() - start
        if result.leftovers:
            self.logger.error(
                f"Teardown incomplete; {len(result.leftovers)} resource(s) left behind: "
                f"{', '.join(result.leftovers)}"
            )
        else:
            self.logger.info(f"Tore down {len(result.torn_down)} resource(s) in {result.duration:.1f}s")
        return result

    def _teardown_one(self, item: TeardownItem, store: StateStore) -> Optional[str]:
        with store.writer(item.name):
            store.transition(item.name, ResourceStatus.ROLLING_BACK)
            self._notify(item.name, ResourceStatus.ROLLING_BACK, None)

            try:
                self.provisioners[item.kind].delete(item.identifier)
            except Exception as e:
                error = error_handler.to_provider_error(e, item.name, 'delete', kind=item.kind.value)
                store.transition(item.name, ResourceStatus.ROLLING_BACK, error=error.message)
                store.record.append(ExecutionEntry(
                    name=item.name,
                    kind=item.kind,
                    outcome=EntryOutcome.ROLLBACK_FAILED,
                    identifier=item.identifier,
                    error=error.message,
                ))
                self.logger.error(
                    error.message,
                    extra={'logical_name': item.name, 'kind': item.kind.value, 'operation': 'delete'},
                )
                self._notify(item.name, ResourceStatus.ROLLING_BACK, error.message)
                return error.message

            store.transition(item.name, ResourceStatus.ROLLED_BACK)
            store.record.append(ExecutionEntry(
                name=item.name,
                kind=item.kind,
                outcome=EntryOutcome.ROLLED_BACK,
                identifier=item.identifier,
            ))

        self.logger.info(
            f"Deleted {item.kind.value} {item.identifier}",
            extra={
                'logical_name': item.name,
                'kind': item.kind.value,
                'operation': 'delete',
                'identifier': item.identifier,
            },
        )
        self._notify(item.name, ResourceStatus.ROLLED_BACK, f"deleted {item.identifier}")
        return None

    def _notify(self, name: str, status: ResourceStatus, message: Optional[str]) -> None:
        notify_progress(self.progress_callback, name, status, message)
