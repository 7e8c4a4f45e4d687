"""YAML configuration parser for tierstack projects."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from tierstack.plan.loader import load_plan
from tierstack.plan.models import Plan
from tierstack.tagging.manager import TagManager
from tierstack.utils.errors import InvalidPlan
from tierstack.utils.logging import get_logger

from .models import ExecutionConfig, ProjectConfig

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "tierstack.yaml"


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  • {location}: {msg}")

        return "\n".join(error_lines)


def _schema_errors(prefix: List[Any], error: ValidationError) -> List[Dict]:
    return [
        {"loc": prefix + list(item["loc"]), "msg": item["msg"]}
        for item in error.errors()
    ]


class Config:
    """Configuration manager for a tierstack project."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to tierstack.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.execution: ExecutionConfig = ExecutionConfig()
        self.resources: List[Dict[str, Any]] = []
        self._plan: Optional[Plan] = None

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration file must contain a mapping")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        self.execution = ExecutionConfig(**(self.data.get("execution") or {}))
        self.resources = list(self.data["resources"])
        logger.debug(f"Loaded configuration from {self.config_path}")

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        The resource list is validated as a plan, so descriptor, reference
        and cycle problems are reported alongside schema errors.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        elif not isinstance(self.data["project"], dict):
            errors.append({"loc": ["project"], "msg": "Project must be a mapping"})
        else:
            try:
                ProjectConfig(**self.data["project"])
            except ValidationError as e:
                errors.extend(_schema_errors(["project"], e))

        execution = self.data.get("execution")
        if execution is not None:
            if not isinstance(execution, dict):
                errors.append({"loc": ["execution"], "msg": "Execution must be a mapping"})
            else:
                try:
                    ExecutionConfig(**execution)
                except ValidationError as e:
                    errors.extend(_schema_errors(["execution"], e))

        resources = self.data.get("resources")
        if resources is None:
            errors.append({"loc": ["resources"], "msg": "Required field 'resources' is missing"})
        elif not isinstance(resources, list) or len(resources) == 0:
            errors.append({"loc": ["resources"], "msg": "At least one resource must be defined"})
        else:
            try:
                self._plan = load_plan(resources, name=self._plan_name())
            except InvalidPlan as e:
                for violation in e.violations:
                    errors.append({
                        "loc": ["resources"] + list(violation.names[:1]),
                        "msg": str(violation),
                    })

        return errors

    def build_plan(self) -> Plan:
        """Get the validated plan of the configured resources.

        Raises:
            InvalidPlan: If the resources do not form a valid plan
        """
        if self._plan is None:
            self._plan = load_plan(self.resources, name=self._plan_name())
        return self._plan

    def tag_manager(self) -> TagManager:
        """Build the tag manager for the configured project environment."""
        if self.project is None:
            raise ConfigValidationError("Configuration has not been loaded")
        return TagManager(self.project.name, self.project.environment, self.project.tags)

    def state_file(self) -> str:
        """Path of the state snapshot for this project environment."""
        if self.project is None:
            raise ConfigValidationError("Configuration has not been loaded")
        return self.execution.resolve_state_file(self.project)

    def _plan_name(self) -> str:
        project = self.data.get("project")
        if isinstance(project, dict) and project.get("name"):
            return f"{project['name']}-{project.get('environment', 'dev')}"
        return self.config_path.stem

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "project": self.project.model_dump() if self.project else {},
            "execution": self.execution.model_dump(),
            "resources": self.resources,
        }
