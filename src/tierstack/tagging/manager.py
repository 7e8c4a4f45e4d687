"""Natural keys, tags and physical names for managed resources."""

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tierstack.plan.models import ResourceDescriptor, ResourceKind
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)

# Version of the provisioning engine
VERSION = "1.0.0"

TAG_PREFIX = "tierstack:"
LOGICAL_NAME_TAG = f"{TAG_PREFIX}logical-name"
KIND_TAG = f"{TAG_PREFIX}kind"
PROJECT_TAG = f"{TAG_PREFIX}project"
ENVIRONMENT_TAG = f"{TAG_PREFIX}environment"


@dataclass(frozen=True)
class NaturalKey:
    """Identity of a resource that survives between runs.

    Two runs of the same plan for the same project and environment produce
    equal keys, which is what ``find`` looks resources up by.
    """
    kind: ResourceKind
    name: str
    project: str
    environment: str

    def __str__(self) -> str:
        return f"{self.project}/{self.environment}/{self.kind.value}/{self.name}"


class TagManager:
    """Builds natural keys, tag sets and physical names for one project environment."""

    def __init__(self, project: str, environment: str, tags: Optional[Dict[str, str]] = None):
        """Initialize tag manager.

        Args:
            project: Project name
            environment: Environment name (dev, staging, prod)
            tags: Project-level tags applied to every resource
        """
        self.project = project
        self.environment = environment
        self.tags = dict(tags or {})
        logger.debug(f"Initialized TagManager for {project}/{environment}")

    def key_for(self, descriptor: ResourceDescriptor) -> NaturalKey:
        """Natural key for a descriptor."""
        return NaturalKey(
            kind=descriptor.kind,
            name=descriptor.name,
            project=self.project,
            environment=self.environment,
        )

    def identity_tags(self, key: NaturalKey) -> Dict[str, str]:
        """Tags that identify a resource by its natural key."""
        return {
            LOGICAL_NAME_TAG: key.name,
            KIND_TAG: key.kind.value,
            PROJECT_TAG: key.project,
            ENVIRONMENT_TAG: key.environment,
        }

    def generate_tags(
        self,
        key: NaturalKey,
        resource_tags: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """Generate the complete tag set for a resource.

        Tag inheritance order (later overrides earlier):
        1. System tags (tierstack:*)
        2. Project-level tags
        3. Resource-specific tags
        Identity tags are re-applied last so they cannot be overridden.

        Args:
            key: Natural key of the resource
            resource_tags: Optional ``tags`` parameter of the descriptor

        Returns:
            Complete dictionary of tags to apply to the resource
        """
        tags = {
            'Name': self.physical_name(key, lowercase=False),
            f"{TAG_PREFIX}managed-by": "tierstack",
            f"{TAG_PREFIX}version": VERSION,
        }
        tags.update(self.tags)
        if resource_tags:
            tags.update({str(k): str(v) for k, v in resource_tags.items()})
        tags.update(self.identity_tags(key))
        return tags

    def tag_filters(self, key: NaturalKey) -> List[Dict[str, Any]]:
        """EC2 ``Filters`` matching a resource's identity tags."""
        return [
            {'Name': f"tag:{tag}", 'Values': [value]}
            for tag, value in self.identity_tags(key).items()
        ]

    @staticmethod
    def to_aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
        """Convert a tag mapping to the ``[{'Key', 'Value'}]`` list AWS APIs take."""
        return [{'Key': key, 'Value': value} for key, value in tags.items()]

    @staticmethod
    def from_aws_tags(tag_list: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
        """Convert an AWS tag list back to a mapping."""
        return {tag['Key']: tag['Value'] for tag in tag_list or []}

    def matches(self, key: NaturalKey, tags: Dict[str, str]) -> bool:
        """Whether a tag mapping carries all identity tags of a key."""
        return all(tags.get(tag) == value for tag, value in self.identity_tags(key).items())

    def physical_name(
        self,
        key: NaturalKey,
        max_length: Optional[int] = None,
        lowercase: bool = True,
    ) -> str:
        """Deterministic cloud-side name ``<project>-<environment>-<name>``.

        Characters other than letters, digits and hyphens become hyphens and
        repeated hyphens collapse. Names longer than ``max_length`` are cut
        and suffixed with a short hash of the full name so they stay unique.

        Args:
            key: Natural key of the resource
            max_length: Service limit on name length
            lowercase: Lowercase the result (RDS identifiers require it)

        Returns:
            Physical name
        """
        raw = f"{key.project}-{key.environment}-{key.name}"
        name = re.sub(r'[^A-Za-z0-9-]+', '-', raw)
        name = re.sub(r'-{2,}', '-', name).strip('-')
        if lowercase:
            name = name.lower()
        if not name[:1].isalpha():
            name = f"t-{name}"

        if max_length and len(name) > max_length:
            digest = hashlib.sha1(raw.encode('utf-8')).hexdigest()[:8]
            name = f"{name[:max_length - 9].rstrip('-')}-{digest}"

        return name

    def validate_tags(self, tags: Dict[str, str]) -> List[str]:
        """Validate tags against AWS requirements.

        Args:
            tags: Dictionary of tags to validate

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        for key, value in tags.items():
            if not key:
                errors.append("Tag key cannot be empty")
            elif len(key) > 128:
                errors.append(f"Tag key exceeds 128 characters: {key}")
            elif key.startswith("aws:"):
                errors.append(f"Tag key cannot start with 'aws:' (reserved): {key}")

            if not isinstance(value, str):
                errors.append(f"Tag value must be a string for key '{key}': {value}")
            elif len(value) > 256:
                errors.append(f"Tag value exceeds 256 characters for key '{key}'")

        # AWS limit is 50 per resource
        if len(tags) > 50:
            errors.append(f"Too many tags: {len(tags)} (AWS limit is 50 per resource)")

        return errors
