"""Utility modules for logging, AWS client management, and helpers."""

from tierstack.utils.aws_client import AWSClientManager, AWSCredentials
from tierstack.utils.retry import RetryStrategy, NO_RETRY
from tierstack.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    TierstackError,
    ConfigurationError,
    PlanViolation,
    InvalidPlan,
    CycleDetected,
    UnknownDependency,
    ProviderError,
    RollbackIncomplete,
    RunCancelled,
    ErrorHandler,
    error_handler
)
from tierstack.utils.logging import get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry
    'RetryStrategy',
    'NO_RETRY',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'TierstackError',
    'ConfigurationError',
    'PlanViolation',
    'InvalidPlan',
    'CycleDetected',
    'UnknownDependency',
    'ProviderError',
    'RollbackIncomplete',
    'RunCancelled',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
