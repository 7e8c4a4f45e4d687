"""Provisioning engine that coordinates plan loading, reconciliation and rollback."""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from tierstack.plan.loader import DescriptorLike, load_plan
from tierstack.plan.models import Plan, ResourceDescriptor, ResourceKind, iter_refs
from tierstack.provisioners.base import BaseProvisioner
from tierstack.state.manager import StateManager
from tierstack.state.models import ExecutionRecord, ResourceState, ResourceStatus, RunStatus
from tierstack.state.store import StateStore
from tierstack.tagging.manager import TagManager
from tierstack.utils.errors import (
    InvalidPlan,
    PlanViolation,
    ProviderError,
    RollbackIncomplete,
    RunCancelled,
    error_handler,
)
from tierstack.utils.logging import get_logger

from .reconciler import ExecutionMode, ProgressCallback, ReconcileResult, Reconciler, substitute
from .rollback import RollbackController, RollbackResult, TeardownItem

logger = get_logger(__name__)


@dataclass
class RunResult:
    """Complete result of one run."""

    plan_name: str
    status: RunStatus
    record: ExecutionRecord
    states: List[ResourceState] = field(default_factory=list)
    error: Optional[ProviderError] = None
    rollback: Optional[RollbackResult] = None
    cancelled: bool = False
    duration: float = 0.0  # seconds

    @property
    def leftovers(self) -> Dict[str, str]:
        """Resources rollback could not remove, with their errors."""
        return dict(self.rollback.leftovers) if self.rollback else {}

    def is_success(self) -> bool:
        """Check if every resource was created or adopted."""
        return self.status == RunStatus.COMPLETED

    def identifiers(self) -> Dict[str, str]:
        """Identifiers of resources that ended the run Created."""
        return {
            state.name: state.identifier
            for state in self.states
            if state.status == ResourceStatus.CREATED and state.identifier
        }

    def raise_for_status(self) -> None:
        """Raise the terminal error of an aborted run.

        Raises:
            RollbackIncomplete: If rollback left resources behind
            ProviderError: If the run failed and rollback was clean
            RunCancelled: If the run was cancelled and rollback was clean
        """
        if self.status == RunStatus.COMPLETED:
            return
        if self.status == RunStatus.ABORTED_DIRTY:
            raise RollbackIncomplete(self.leftovers, cause=self.error)
        if self.error is not None:
            raise self.error
        raise RunCancelled()


class ProvisioningEngine:
    """Loads plans, reconciles them and rolls back on failure or cancellation."""

    def __init__(
        self,
        provisioners: Dict[ResourceKind, BaseProvisioner],
        tag_manager: TagManager,
        mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
        max_workers: int = 4,
        progress_callback: Optional[ProgressCallback] = None,
        state_manager: Optional[StateManager] = None,
    ):
        """Initialize provisioning engine.

        Args:
            provisioners: Provisioner per resource kind
            tag_manager: Tag manager of the project environment
            mode: Sequential or concurrent reconciliation
            max_workers: Upper bound on concurrent provider calls
            progress_callback: Optional callback for status changes
            state_manager: Optional durable store for run snapshots
        """
        self.provisioners = provisioners
        self.tag_manager = tag_manager
        self.mode = mode
        self.max_workers = max_workers
        self.progress_callback = progress_callback
        self.state_manager = state_manager
        self._reconciler: Optional[Reconciler] = None
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def load_plan(self, descriptors: Iterable[DescriptorLike], name: str = 'plan') -> Plan:
        """Validate descriptors into a plan this engine can run.

        Adds a ``missing_provisioner`` violation for any kind without a
        provisioner. No provider is contacted.

        Raises:
            InvalidPlan: Listing every violation
        """
        descriptors = list(descriptors)
        missing = self._missing_provisioners(descriptors)

        try:
            plan = load_plan(descriptors, name=name)
        except InvalidPlan as e:
            if missing:
                raise InvalidPlan(e.violations + missing) from e
            raise

        if missing:
            raise InvalidPlan(missing)
        return plan

    def run(self, plan: Plan) -> RunResult:
        """Reconcile a plan, rolling back everything created on failure.

        Args:
            plan: Plan returned by ``load_plan``

        Returns:
            RunResult; call ``raise_for_status()`` to turn aborts into exceptions

        Raises:
            InvalidPlan: If a kind in the plan has no provisioner
        """
        self._check_provisioners(plan)
        start = time.monotonic()
        store = StateStore.from_plan(plan)
        reconciler = Reconciler(
            provisioners=self.provisioners,
            tag_manager=self.tag_manager,
            mode=self.mode,
            max_workers=self.max_workers,
            progress_callback=self.progress_callback,
        )
        with self._lock:
            self._reconciler = reconciler

        self.logger.info(f"Starting run of plan '{plan.name}'")
        try:
            forward = reconciler.reconcile(plan, store)
        except Exception as e:
            forward = self._interrupted(plan, store, e)
        finally:
            with self._lock:
                self._reconciler = None

        rollback_result = None
        if forward.is_success():
            status = RunStatus.COMPLETED
        else:
            controller = RollbackController(self.provisioners, self.progress_callback)
            rollback_result = controller.rollback(store)
            status = RunStatus.ABORTED_CLEAN if rollback_result.is_clean() else RunStatus.ABORTED_DIRTY

        result = RunResult(
            plan_name=plan.name,
            status=status,
            record=store.record,
            states=store.all(),
            error=forward.error,
            rollback=rollback_result,
            cancelled=forward.cancelled,
            duration=time.monotonic() - start,
        )
        self._persist(store, plan, status)

        if status == RunStatus.COMPLETED:
            self.logger.info(f"Run of '{plan.name}' completed in {result.duration:.1f}s")
        elif status == RunStatus.ABORTED_CLEAN:
            self.logger.warning(f"Run of '{plan.name}' aborted; rollback was clean")
        else:
            self.logger.error(
                f"Run of '{plan.name}' aborted; manual cleanup required for: "
                f"{', '.join(result.leftovers)}"
            )
        return result

    def cancel(self) -> None:
        """Cancel the run in progress, if any."""
        with self._lock:
            reconciler = self._reconciler
        if reconciler is None:
            self.logger.debug("Cancel requested with no run in progress")
            return
        reconciler.cancel()

    def destroy(self, plan: Plan) -> RollbackResult:
        """Find and delete every resource of a plan, dependents first.

        Resources are looked up in topological order so references resolve,
        then deleted in reverse order. A resource whose referenced parent is
        absent is treated as absent. Failed lookups and deletes are reported
        as leftovers without stopping the sweep.

        Args:
            plan: Plan whose resources should be removed

        Returns:
            RollbackResult with deleted, absent and leftover resources

        Raises:
            InvalidPlan: If a kind in the plan has no provisioner
        """
        self._check_provisioners(plan)
        self.logger.info(f"Destroying resources of plan '{plan.name}'")
        store = StateStore.from_plan(plan)
        identifiers: Dict[str, str] = {}
        unknown: Set[str] = set()
        lookup_failures: Dict[str, str] = {}
        absent: List[str] = []
        items: List[TeardownItem] = []

        for name in plan.order:
            descriptor = plan[name]
            referenced = {target for _, target in iter_refs(descriptor.parameters)}
            if referenced & unknown:
                unknown.add(name)
                lookup_failures[name] = "not checked: a referenced resource could not be looked up"
                continue
            if not referenced.issubset(identifiers):
                absent.append(name)
                continue

            try:
                key = self.tag_manager.key_for(descriptor)
                parameters = substitute(descriptor.parameters, identifiers)
                identifier = self.provisioners[descriptor.kind].find(key, parameters)
            except Exception as e:
                error = error_handler.to_provider_error(e, name, 'find', kind=descriptor.kind.value)
                unknown.add(name)
                lookup_failures[name] = error.message
                store.transition(name, ResourceStatus.FAILED, error=error.message)
                self.logger.error(error.message, extra={'logical_name': name, 'operation': 'find'})
                continue

            if identifier is None:
                absent.append(name)
                continue
            identifiers[name] = identifier
            store.transition(name, ResourceStatus.CREATED, identifier=identifier)
            items.append(TeardownItem(name=name, kind=descriptor.kind, identifier=identifier))

        controller = RollbackController(self.provisioners, self.progress_callback)
        result = controller.teardown(list(reversed(items)), store)
        result.absent = absent
        result.leftovers = {**lookup_failures, **result.leftovers}

        self._persist(
            store, plan,
            RunStatus.COMPLETED if result.is_clean() else RunStatus.ABORTED_DIRTY,
            operation='destroy',
        )
        self.logger.info(
            f"Destroy of '{plan.name}': {len(result.torn_down)} deleted, "
            f"{len(result.absent)} absent, {len(result.leftovers)} left behind"
        )
        return result

    def _check_provisioners(self, plan: Plan) -> None:
        missing = self._missing_provisioners(list(plan.descriptors))
        if missing:
            raise InvalidPlan(missing)

    def _interrupted(self, plan: Plan, store: StateStore, cause: Exception) -> ReconcileResult:
        """Close out a forward pass that raised instead of returning a result.

        Resources caught mid-create are marked Failed so that rollback and
        the persisted snapshot see a settled state.
        """
        self.logger.error(f"Reconciliation of '{plan.name}' raised: {cause}", exc_info=True)
        interrupted = store.with_status(ResourceStatus.CREATING)
        name = interrupted[0] if interrupted else plan.name
        error = error_handler.to_provider_error(cause, name, 'reconcile')
        for interrupted_name in interrupted:
            store.transition(interrupted_name, ResourceStatus.FAILED, error=error.message)

        return ReconcileResult(
            error=error,
            errors=[error],
            not_started=store.with_status(ResourceStatus.PENDING),
        )

    def _missing_provisioners(self, descriptors: List[DescriptorLike]) -> List[PlanViolation]:
        missing: Dict[ResourceKind, List[str]] = {}
        for item in descriptors:
            if isinstance(item, ResourceDescriptor):
                kind, name = item.kind, item.name
            else:
                try:
                    kind, name = ResourceKind(item.get('kind')), str(item.get('name'))
                except (AttributeError, ValueError):
                    # Malformed descriptors are reported by plan validation
                    continue
            if kind not in self.provisioners:
                missing.setdefault(kind, []).append(name)

        return [
            PlanViolation(
                code='missing_provisioner',
                message=f"No provisioner registered for kind {kind.value}",
                names=tuple(names),
            )
            for kind, names in missing.items()
        ]

    def _persist(
        self,
        store: StateStore,
        plan: Plan,
        status: RunStatus,
        operation: str = 'apply',
    ) -> None:
        if self.state_manager is None:
            return
        with self.state_manager:
            self.state_manager.save_store(
                store,
                plan.name,
                project=self.tag_manager.project,
                environment=self.tag_manager.environment,
                status=status,
                operation=operation,
            )
