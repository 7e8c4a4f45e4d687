"""Reconciler that finds or creates each resource of a plan in dependency order."""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from tierstack.plan.models import Plan, ResourceKind, parse_ref
from tierstack.provisioners.base import BaseProvisioner
from tierstack.state.models import EntryOutcome, ExecutionEntry, ResourceStatus
from tierstack.state.store import StateStore
from tierstack.tagging.manager import TagManager
from tierstack.utils.errors import OrphanedResource, ProviderError, error_handler
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)


class ExecutionMode(Enum):
    """How independent resources are reconciled."""
    SEQUENTIAL = "sequential"
    CONCURRENT = "concurrent"


# Called with (logical name, new status, message); runs on worker threads in
# concurrent mode
ProgressCallback = Callable[[str, ResourceStatus, Optional[str]], None]


@dataclass
class ReconcileResult:
    """Outcome of the forward pass of a run."""

    error: Optional[ProviderError] = None
    errors: List[ProviderError] = field(default_factory=list)
    cancelled: bool = False
    not_started: List[str] = field(default_factory=list)
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Every resource reached Created."""
        return self.error is None and not self.cancelled


def substitute(value: Any, identifiers: Mapping[str, str]) -> Any:
    """Replace every ``ref(name)`` in a parameter value with the identifier of ``name``.

    Args:
        value: Parameter value, possibly nested
        identifiers: Resolved identifiers keyed by logical name

    Returns:
        Copy of ``value`` with references replaced

    Raises:
        KeyError: If a referenced name has no identifier yet
    """
    name = parse_ref(value)
    if name is not None:
        if name not in identifiers:
            raise KeyError(f"reference to '{name}' has no identifier")
        return identifiers[name]
    if isinstance(value, dict):
        return {key: substitute(item, identifiers) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(item, identifiers) for item in value]
    return value


def notify_progress(
    callback: Optional[ProgressCallback],
    name: str,
    status: ResourceStatus,
    message: Optional[str],
) -> None:
    """Report a status change to a progress callback.

    Callbacks only display progress; an exception raised by one is logged
    and never changes the outcome of a run.
    """
    if callback is None:
        return
    try:
        callback(name, status, message)
    except Exception:
        logger.warning(
            f"Progress callback failed on {status.value}",
            extra={'logical_name': name},
            exc_info=True,
        )


class Reconciler:
    """Walks a plan in topological order and finds or creates each resource.

    The first provider error stops new work from starting. In concurrent mode
    calls already in flight are allowed to finish and are recorded.
    """

    def __init__(
        self,
        provisioners: Dict[ResourceKind, BaseProvisioner],
        tag_manager: TagManager,
        mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
        max_workers: int = 4,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """Initialize reconciler.

        Args:
            provisioners: Provisioner per resource kind
            tag_manager: Builds natural keys for descriptors
            mode: Sequential or concurrent execution
            max_workers: Upper bound on concurrent provider calls
            progress_callback: Optional callback for status changes
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provisioners = provisioners
        self.tag_manager = tag_manager
        self.mode = mode
        self.max_workers = max_workers
        self.progress_callback = progress_callback
        self._cancel_event = threading.Event()
        self.logger = get_logger(__name__)

    def cancel(self) -> None:
        """Stop starting new resources; in-flight calls still complete."""
        if not self._cancel_event.is_set():
            self.logger.warning("Cancellation requested; no new resources will start")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def reconcile(self, plan: Plan, store: StateStore) -> ReconcileResult:
        """Bring every resource of the plan to Created.

        Args:
            plan: Validated plan
            store: Store initialised from the plan

        Returns:
            ReconcileResult describing where the pass stopped
        """
        start = time.monotonic()
        self.logger.info(
            f"Reconciling {len(plan)} resource(s) ({self.mode.value}"
            f"{f', max_workers={self.max_workers}' if self.mode == ExecutionMode.CONCURRENT else ''})"
        )

        if self.mode == ExecutionMode.CONCURRENT:
            errors = self._reconcile_concurrent(plan, store)
        else:
            errors = self._reconcile_sequential(plan, store)

        not_started = store.with_status(ResourceStatus.PENDING)
        result = ReconcileResult(
            error=errors[0] if errors else None,
            errors=errors,
            # A cancel that arrives after the last resource is created has no effect
            cancelled=self.cancelled and bool(not_started),
            not_started=not_started,
            duration=time.monotonic() - start,
        )

        if result.is_success():
            self.logger.info(f"All {len(plan)} resource(s) reconciled in {result.duration:.1f}s")
        elif result.error is not None:
            self.logger.error(
                f"Reconciliation stopped by failure of '{result.error.logical_name}'; "
                f"{len(result.not_started)} resource(s) not started"
            )
        else:
            self.logger.warning(
                f"Reconciliation cancelled; {len(result.not_started)} resource(s) not started"
            )
        return result

    def _reconcile_sequential(self, plan: Plan, store: StateStore) -> List[ProviderError]:
        for name in plan.order:
            if self.cancelled:
                return []
            error = self._reconcile_one(plan, store, name)
            if error is not None:
                return [error]
        return []

    def _reconcile_concurrent(self, plan: Plan, store: StateStore) -> List[ProviderError]:
        errors: List[ProviderError] = []
        submitted = set()
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='reconcile') as pool:

            def submit_ready() -> None:
                for name in plan.order:
                    if len(in_flight) >= self.max_workers:
                        return
                    if name in submitted:
                        continue
                    dependencies = plan[name].depends_on
                    if all(store.status_of(dep) == ResourceStatus.CREATED for dep in dependencies):
                        submitted.add(name)
                        in_flight[pool.submit(self._reconcile_one, plan, store, name)] = name

            if not self.cancelled:
                submit_ready()
            while in_flight:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    try:
                        error = future.result()
                    except Exception as e:
                        error = self._fail(plan, store, name, e, 'create')
                    if error is not None:
                        errors.append(error)

                if not errors and not self.cancelled:
                    submit_ready()

        return errors

    def _reconcile_one(self, plan: Plan, store: StateStore, name: str) -> Optional[ProviderError]:
        """Find or create one resource. Returns the error if it failed."""
        descriptor = plan[name]

        with store.writer(name):
            unmet = [
                dep for dep in descriptor.depends_on
                if store.status_of(dep) != ResourceStatus.CREATED
            ]
            if unmet:
                return self._fail(
                    plan, store, name,
                    RuntimeError(f"dependencies not created: {', '.join(unmet)}"),
                    'create',
                )

            store.transition(name, ResourceStatus.CREATING)
            self._notify(name, ResourceStatus.CREATING, None)

            operation = 'find'
            start = time.monotonic()
            try:
                provisioner = self._provisioner_for(descriptor.kind)
                key = self.tag_manager.key_for(descriptor)
                parameters = substitute(descriptor.parameters, store.identifiers())
                identifier = provisioner.find(key, parameters)
                outcome = EntryOutcome.ADOPTED
                if identifier is None:
                    operation = 'create'
                    identifier = provisioner.create(key, parameters)
                    outcome = EntryOutcome.CREATED
                    if not identifier:
                        raise RuntimeError("provider returned no identifier")
            except Exception as e:
                return self._fail(plan, store, name, e, operation)

            duration = time.monotonic() - start
            store.transition(name, ResourceStatus.CREATED, identifier=identifier, error=None)
            store.record.append(ExecutionEntry(
                name=name,
                kind=descriptor.kind,
                outcome=outcome,
                identifier=identifier,
            ))

        verb = 'Adopted existing' if outcome == EntryOutcome.ADOPTED else 'Created'
        self.logger.info(
            f"{verb} {descriptor.kind.value} {identifier} in {duration:.1f}s",
            extra={
                'logical_name': name,
                'kind': descriptor.kind.value,
                'operation': operation,
                'identifier': identifier,
                'duration': duration,
            },
        )
        self._notify(name, ResourceStatus.CREATED, f"{outcome.value.lower()} {identifier}")
        return None

    def _fail(
        self,
        plan: Plan,
        store: StateStore,
        name: str,
        cause: Exception,
        operation: str,
    ) -> ProviderError:
        kind = plan[name].kind
        error = error_handler.to_provider_error(cause, name, operation, kind=kind.value)
        # A partial resource the provisioner could not remove is still ours to tear down
        orphan = cause.identifier if isinstance(cause, OrphanedResource) else None
        if orphan is not None:
            store.transition(name, ResourceStatus.FAILED, identifier=orphan, error=error.message)
        else:
            store.transition(name, ResourceStatus.FAILED, error=error.message)
        store.record.append(ExecutionEntry(
            name=name,
            kind=kind,
            outcome=EntryOutcome.FAILED,
            identifier=orphan,
            error=error.message,
        ))
        self.logger.error(
            error.message,
            extra={'logical_name': name, 'kind': kind.value, 'operation': operation},
        )
        self._notify(name, ResourceStatus.FAILED, error.message)
        return error

    def _provisioner_for(self, kind: ResourceKind) -> BaseProvisioner:
        provisioner = self.provisioners.get(kind)
        if provisioner is None:
            raise RuntimeError(f"no provisioner registered for kind {kind.value}")
        return provisioner

    def _notify(self, name: str, status: ResourceStatus, message: Optional[str]) -> None:
        notify_progress(self.progress_callback, name, status, message)
