"""Dependency graph builder for resource creation ordering."""

import heapq
from typing import Dict, Iterable, List, Set, Optional, Tuple
from dataclasses import dataclass, field
from collections import defaultdict, deque

from tierstack.plan.models import ResourceDescriptor
from tierstack.utils.errors import CycleDetected, UnknownDependency


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    name: str
    descriptor: ResourceDescriptor
    position: int  # Authoring position, used to break ties
    dependencies: List[str] = field(default_factory=list)  # Names this node depends on
    dependents: Set[str] = field(default_factory=set)  # Names that depend on this node


class DependencyGraph:
    """Directed acyclic graph (DAG) of resource dependencies.

    Edges point from a dependency to its dependents. Ordering is stable: when
    several nodes are ready at once, the one authored first comes first.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[ResourceDescriptor]) -> "DependencyGraph":
        """Build a graph from descriptors in authoring order.

        Args:
            descriptors: Descriptors as authored

        Returns:
            Graph with one node per descriptor (later duplicates replace earlier ones)
        """
        graph = cls()
        for descriptor in descriptors:
            graph.add_descriptor(descriptor)
        return graph

    def add_descriptor(self, descriptor: ResourceDescriptor) -> None:
        """Add a descriptor to the dependency graph.

        Dependencies on names not (yet) in the graph are kept on the node and
        wired up once the missing node is added.

        Args:
            descriptor: Descriptor to add to the graph
        """
        name = descriptor.name
        if name in self.nodes:
            self.remove_descriptor(name)

        node = DependencyNode(
            name=name,
            descriptor=descriptor,
            position=len(self.nodes),
            dependencies=list(descriptor.depends_on),
        )
        self.nodes[name] = node

        for dep_name in node.dependencies:
            if dep_name in self.nodes:
                self._link(dep_name, name)

        # Wire up nodes added earlier that were waiting on this one
        for other in self.nodes.values():
            if other.name != name and name in other.dependencies:
                self._link(name, other.name)

    def remove_descriptor(self, name: str) -> None:
        """Remove a node and all edges touching it.

        Args:
            name: Logical name to remove
        """
        if name not in self.nodes:
            return

        node = self.nodes.pop(name)
        for dep_name in node.dependencies:
            self._adjacency_list[dep_name].discard(name)
            if dep_name in self.nodes:
                self.nodes[dep_name].dependents.discard(name)
        self._adjacency_list.pop(name, None)

        # Keep positions dense and in authoring order
        for position, other in enumerate(sorted(self.nodes.values(), key=lambda n: n.position)):
            other.position = position

    def _link(self, dependency: str, dependent: str) -> None:
        self._adjacency_list[dependency].add(dependent)
        self.nodes[dependency].dependents.add(dependent)

    def get_dependencies(self, name: str) -> List[str]:
        """Get direct dependencies of a node, in declared order.

        Args:
            name: Logical name

        Returns:
            Names this node depends on
        """
        if name not in self.nodes:
            return []
        return list(self.nodes[name].dependencies)

    def get_dependents(self, name: str) -> Set[str]:
        """Get direct dependents of a node.

        Args:
            name: Logical name

        Returns:
            Set of names that depend on this node
        """
        return set(self._adjacency_list.get(name, set()))

    def get_all_dependencies(self, name: str) -> Set[str]:
        """Get all transitive dependencies of a node.

        Args:
            name: Logical name

        Returns:
            Set of all names in the dependency chain
        """
        visited = set()
        queue = deque([name])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            if current in self.nodes:
                for dep_name in self.nodes[current].dependencies:
                    if dep_name not in visited:
                        queue.append(dep_name)

        visited.discard(name)
        return visited

    def get_all_dependents(self, name: str) -> Set[str]:
        """Get all transitive dependents of a node.

        Args:
            name: Logical name

        Returns:
            Set of all names that depend on this node
        """
        visited = set()
        queue = deque([name])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            for dependent in self._adjacency_list.get(current, set()):
                if dependent not in visited:
                    queue.append(dependent)

        visited.discard(name)
        return visited

    def are_independent(self, first: str, second: str) -> bool:
        """Check that neither node is an ancestor of the other."""
        return (
            first != second
            and first not in self.get_all_dependencies(second)
            and second not in self.get_all_dependencies(first)
        )

    def find_unknown_dependencies(self) -> List[Tuple[str, str]]:
        """List ``(dependent, missing dependency)`` pairs in authoring order."""
        missing = []
        for node in self._ordered_nodes():
            for dep_name in node.dependencies:
                if dep_name not in self.nodes:
                    missing.append((node.name, dep_name))
        return missing

    def detect_circular_dependencies(self) -> List[List[str]]:
        """Detect every cycle in the graph.

        Uses Tarjan's strongly connected components over known edges. Each
        cycle is reported as its member names in authoring order.

        Returns:
            List of cycles (empty when the graph is acyclic)
        """
        index_of: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        cycles: List[List[str]] = []
        counter = [0]

        def strongconnect(name: str) -> None:
            index_of[name] = lowlink[name] = counter[0]
            counter[0] += 1
            stack.append(name)
            on_stack.add(name)

            for dependent in sorted(self._adjacency_list.get(name, ()), key=self._position):
                if dependent not in index_of:
                    strongconnect(dependent)
                    lowlink[name] = min(lowlink[name], lowlink[dependent])
                elif dependent in on_stack:
                    lowlink[name] = min(lowlink[name], index_of[dependent])

            if lowlink[name] == index_of[name]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == name:
                        break
                self_loop = name in self._adjacency_list.get(name, ())
                if len(component) > 1 or self_loop:
                    cycles.append(sorted(component, key=self._position))

        for node in self._ordered_nodes():
            if node.name not in index_of:
                strongconnect(node.name)

        return sorted(cycles, key=lambda cycle: self._position(cycle[0]))

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            UnknownDependency: If any node depends on a name not in the graph
            CycleDetected: If the graph contains cycles
        """
        missing = self.find_unknown_dependencies()
        if missing:
            raise UnknownDependency(missing)

        cycles = self.detect_circular_dependencies()
        if cycles:
            raise CycleDetected(cycles)

    def topological_sort(self) -> List[str]:
        """Perform a stable topological sort on the dependency graph.

        Returns:
            Names in dependency order (dependencies before dependents), ties
            broken by authoring order

        Raises:
            UnknownDependency: If any node depends on a name not in the graph
            CycleDetected: If the graph contains cycles
        """
        self.validate()

        # Kahn's algorithm with a heap keyed on authoring position
        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        ready = [(node.position, name) for name, node in self.nodes.items() if in_degree[name] == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, name = heapq.heappop(ready)
            result.append(name)

            for dependent in self._adjacency_list.get(name, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self.nodes[dependent].position, dependent))

        return result

    def get_deployment_waves(self) -> List[List[str]]:
        """Group nodes into waves of mutually independent resources.

        Every node sits one wave after its deepest dependency.

        Returns:
            List of waves, each in authoring order
        """
        depth: Dict[str, int] = {}
        for name in self.topological_sort():
            deps = self.nodes[name].dependencies
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)

        waves: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for node in self._ordered_nodes():
            waves[depth[node.name]].append(node.name)
        return waves

    def get_destruction_order(self) -> List[str]:
        """Get destruction order (reverse of creation order).

        Returns:
            Names with dependents before their dependencies
        """
        return list(reversed(self.topological_sort()))

    def get_descriptor(self, name: str) -> Optional[ResourceDescriptor]:
        """Get a descriptor from the graph.

        Args:
            name: Logical name

        Returns:
            Descriptor or None if not found
        """
        node = self.nodes.get(name)
        return node.descriptor if node else None

    def has_node(self, name: str) -> bool:
        """Check if a node exists in the graph."""
        return name in self.nodes

    def size(self) -> int:
        """Get the number of nodes in the graph."""
        return len(self.nodes)

    def is_empty(self) -> bool:
        """Check if the graph is empty."""
        return len(self.nodes) == 0

    def _position(self, name: str) -> int:
        return self.nodes[name].position

    def _ordered_nodes(self) -> List[DependencyNode]:
        return sorted(self.nodes.values(), key=lambda node: node.position)
