"""Plan data models: resource kinds, descriptors and plans."""

import re
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResourceKind(str, Enum):
    """Kinds of resources a three-tier plan can declare."""

    NETWORK = "Network"
    SUBNET = "Subnet"
    GATEWAY = "Gateway"
    ROUTE_TABLE = "RouteTable"
    SECURITY_GROUP = "SecurityGroup"
    TARGET_GROUP = "TargetGroup"
    LOAD_BALANCER = "LoadBalancer"
    LISTENER = "Listener"
    LAUNCH_TEMPLATE = "LaunchTemplate"
    SCALING_GROUP = "ScalingGroup"
    SCALING_POLICY = "ScalingPolicy"
    DATABASE_SUBNET_GROUP = "DatabaseSubnetGroup"
    DATABASE_INSTANCE = "DatabaseInstance"


# "ref(web-subnet-a)" -> "web-subnet-a"
REF_PATTERN = re.compile(r"^ref\(\s*([A-Za-z0-9_.:\-]+)\s*\)$")


def parse_ref(value: Any) -> Optional[str]:
    """Return the referenced logical name if ``value`` is a ``ref(...)`` string."""
    if isinstance(value, str):
        match = REF_PATTERN.match(value.strip())
        if match:
            return match.group(1)
    return None


def iter_refs(value: Any, path: str = "") -> Iterator[Tuple[str, str]]:
    """Yield ``(path, name)`` for every reference nested in a parameter value.

    Paths use dotted keys and ``[i]`` list indexes, e.g. ``routes[0].target``.
    """
    name = parse_ref(value)
    if name is not None:
        yield path, name
    elif isinstance(value, dict):
        for key, item in value.items():
            child = f"{path}.{key}" if path else str(key)
            yield from iter_refs(item, child)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_refs(item, f"{path}[{index}]")


class ResourceDescriptor(BaseModel):
    """One desired cloud resource."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.:\-]+$")
    kind: ResourceKind
    parameters: Dict[str, Any] = Field(default_factory=dict)
    depends_on: Tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("depends_on", mode="before")
    @classmethod
    def dedupe_dependencies(cls, v):
        """Keep dependencies as an ordered set."""
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        seen = []
        for name in v:
            if name not in seen:
                seen.append(name)
        return tuple(seen)

    def references(self) -> List[Tuple[str, str]]:
        """All ``(parameter path, name)`` references in the parameters."""
        return list(iter_refs(self.parameters))


class Plan(BaseModel):
    """Ordered collection of descriptors plus the execution order computed at load time.

    Plans are produced by ``load_plan`` and never change afterwards.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "plan"
    descriptors: Tuple[ResourceDescriptor, ...]
    order: Tuple[str, ...]

    def get(self, name: str) -> Optional[ResourceDescriptor]:
        """Get a descriptor by logical name."""
        for descriptor in self.descriptors:
            if descriptor.name == name:
                return descriptor
        return None

    def __getitem__(self, name: str) -> ResourceDescriptor:
        descriptor = self.get(name)
        if descriptor is None:
            raise KeyError(name)
        return descriptor

    def __contains__(self, name: object) -> bool:
        return any(descriptor.name == name for descriptor in self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    def names(self) -> List[str]:
        """Logical names in authoring order."""
        return [descriptor.name for descriptor in self.descriptors]

    def index_of(self, name: str) -> int:
        """Authoring position of a logical name."""
        return self.names().index(name)

    def kinds(self) -> List[ResourceKind]:
        """Distinct kinds used by the plan, in first-use order."""
        kinds: List[ResourceKind] = []
        for descriptor in self.descriptors:
            if descriptor.kind not in kinds:
                kinds.append(descriptor.kind)
        return kinds
