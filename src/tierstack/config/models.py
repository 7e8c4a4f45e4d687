"""Pydantic models for configuration schema."""

from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator

VALID_REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "eu-west-1",
    "eu-west-2",
    "eu-west-3",
    "eu-central-1",
    "eu-north-1",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-northeast-3",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-south-1",
    "sa-east-1",
    "ca-central-1",
]


def _check_tags(v: Dict[str, str]) -> Dict[str, str]:
    for key, value in v.items():
        if not key or not isinstance(key, str):
            raise ValueError(f"Tag key must be a non-empty string: {key}")
        if not isinstance(value, str):
            raise ValueError(f"Tag value must be a string for key '{key}': {value}")
        if len(key) > 128:
            raise ValueError(f"Tag key exceeds 128 characters: {key}")
        if len(value) > 256:
            raise ValueError(f"Tag value exceeds 256 characters for key '{key}'")
        if key.lower().startswith("aws:"):
            raise ValueError(f"Tag key cannot use the reserved 'aws:' prefix: {key}")
    return v


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=32, pattern="^[a-z0-9-]+$")
    environment: str = Field("dev", min_length=1, max_length=16, pattern="^[a-z0-9-]+$")
    region: str = Field(..., min_length=1)
    profile: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Project names become part of physical resource names."""
        if not v[0].isalpha():
            raise ValueError("Project name must start with a letter")
        return v

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if v not in VALID_REGIONS:
            raise ValueError(
                f"Invalid AWS region: {v}. Must be one of: {', '.join(VALID_REGIONS)}"
            )
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate tag keys and values."""
        return _check_tags(v)


class ExecutionConfig(BaseModel):
    """How a plan is reconciled."""

    mode: str = Field("sequential", pattern="^(sequential|concurrent)$")
    max_workers: int = Field(4, ge=1, le=64)
    wait_timeout: int = Field(900, ge=30, le=7200, description="Seconds to wait on slow resources")
    state_file: Optional[str] = Field(None, description="Path of the JSON state snapshot")

    def resolve_state_file(self, project: ProjectConfig) -> str:
        """State file path, defaulting to one file per project environment."""
        return self.state_file or f".tierstack/state/{project.name}-{project.environment}.json"
