"""Orchestrator module for reconciliation, rollback and the provisioning engine."""

from tierstack.plan.dependency_graph import DependencyGraph, DependencyNode
from tierstack.orchestrator.reconciler import (
    ExecutionMode,
    ProgressCallback,
    Reconciler,
    ReconcileResult,
    substitute,
)
from tierstack.orchestrator.rollback import (
    RollbackController,
    RollbackResult,
    TeardownItem,
)
from tierstack.orchestrator.engine import ProvisioningEngine, RunResult

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Reconciliation
    'ExecutionMode',
    'ProgressCallback',
    'Reconciler',
    'ReconcileResult',
    'substitute',

    # Rollback
    'RollbackController',
    'RollbackResult',
    'TeardownItem',

    # Engine
    'ProvisioningEngine',
    'RunResult',
]
