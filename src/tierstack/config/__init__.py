"""Configuration management for tierstack projects."""

from .models import ExecutionConfig, ProjectConfig, VALID_REGIONS
from .parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE

__all__ = [
    "ExecutionConfig",
    "ProjectConfig",
    "VALID_REGIONS",
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
]
