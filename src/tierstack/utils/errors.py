"""Error handling framework for plan validation, provisioning and rollback."""

from typing import Optional, Dict, Any, List, Sequence
from enum import Enum
from dataclasses import dataclass, field
from botocore.exceptions import (
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
    WaiterError,
)
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur while provisioning."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    AWS = "aws"
    NETWORK = "network"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    RESOURCE_LIMIT = "resource_limit"
    PROVISIONING = "provisioning"
    ROLLBACK = "rollback"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    logical_name: Optional[str] = None
    kind: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class TierstackError(Exception):
    """Base exception for tierstack errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.logical_name:
            lines.append(f"   Resource: {self.context.logical_name}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'logical_name': self.context.logical_name,
                'kind': self.context.kind,
                'operation': self.context.operation,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(TierstackError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


@dataclass(frozen=True)
class PlanViolation:
    """One problem found while validating a plan."""
    code: str
    message: str
    names: Sequence[str] = field(default_factory=tuple)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidPlan(TierstackError):
    """Plan failed validation; no provider call was made."""

    def __init__(self, violations: Sequence[PlanViolation], message: Optional[str] = None, **kwargs):
        self.violations: List[PlanViolation] = list(violations)
        if message is None:
            message = f"Plan is invalid ({len(self.violations)} violation(s)):\n" + "\n".join(
                f"  - {violation}" for violation in self.violations
            )
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )

    def codes(self) -> List[str]:
        """Violation codes in the order they were found."""
        return [violation.code for violation in self.violations]

    def by_code(self, code: str) -> List[PlanViolation]:
        """Violations carrying the given code."""
        return [violation for violation in self.violations if violation.code == code]


class CycleDetected(InvalidPlan):
    """The dependency graph contains at least one cycle."""

    def __init__(self, cycles: Sequence[Sequence[str]]):
        self.cycles: List[List[str]] = [list(cycle) for cycle in cycles]
        violations = [
            PlanViolation(
                code='cycle',
                message=f"Circular dependency between: {', '.join(cycle)}",
                names=tuple(cycle),
            )
            for cycle in self.cycles
        ]
        super().__init__(violations)


class UnknownDependency(InvalidPlan):
    """A descriptor depends on a name that is not in the plan."""

    def __init__(self, missing: Sequence[tuple]):
        # (dependent, missing dependency) pairs
        self.missing: List[tuple] = list(missing)
        violations = [
            PlanViolation(
                code='unknown_dependency',
                message=f"Resource '{dependent}' depends on '{dependency}' which does not exist",
                names=(dependent, dependency),
            )
            for dependent, dependency in self.missing
        ]
        super().__init__(violations)


class ProviderError(TierstackError):
    """A find, create or delete call failed for a specific resource."""

    def __init__(self, message: str, logical_name: str, operation: str, **kwargs):
        context = kwargs.pop('context', None) or ErrorContext()
        context.logical_name = logical_name
        context.operation = operation
        kwargs.setdefault('category', ErrorCategory.PROVISIONING)
        super().__init__(message, context=context, **kwargs)
        self.logical_name = logical_name
        self.operation = operation


class OrphanedResource(TierstackError):
    """A create failed after the provider made the resource, and removing it failed too.

    ``identifier`` names the resource left behind so the caller can record
    it and retry the teardown.
    """

    def __init__(self, identifier: str, error: Exception, cleanup_error: Exception, **kwargs):
        self.identifier = identifier
        self.cleanup_error = cleanup_error
        kwargs.setdefault('category', ErrorCategory.ROLLBACK)
        kwargs.setdefault('suggestions', [f'Delete {identifier} manually or re-run destroy'])
        super().__init__(
            f"{error}; partially created {identifier} could not be removed: {cleanup_error}",
            cause=error,
            **kwargs
        )


class RunCancelled(TierstackError):
    """The run was cancelled before every resource was created."""

    def __init__(self, message: str = "Run was cancelled before completion", **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVISIONING)
        kwargs.setdefault('severity', ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class RollbackIncomplete(TierstackError):
    """One or more teardown calls failed during the rollback sweep."""

    def __init__(self, leftovers: Dict[str, str], **kwargs):
        # logical name -> teardown error, in teardown order
        self.leftovers: Dict[str, str] = dict(leftovers)
        names = ", ".join(self.leftovers)
        super().__init__(
            f"Rollback incomplete; manual cleanup required for: {names}",
            category=ErrorCategory.ROLLBACK,
            severity=ErrorSeverity.CRITICAL,
            suggestions=[
                'Delete the listed resources manually or re-run destroy',
                'Check for dependent resources created outside tierstack',
            ],
            **kwargs
        )

    @property
    def names(self) -> List[str]:
        return list(self.leftovers)


class ErrorHandler:
    """Handles and categorizes errors raised by provider calls."""

    # Mapping of AWS error codes to error categories and suggestions
    AWS_ERROR_MAPPING = {
        'AuthFailure': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS was not able to validate the provided credentials',
            'suggestions': [
                'Verify credentials using: aws sts get-caller-identity',
                'Update credentials if they have expired'
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-authenticate with your identity provider'
            ]
        },
        'UnauthorizedOperation': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation',
                'Verify you are operating in the correct AWS region'
            ]
        },
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Review service control policies (SCPs) if using AWS Organizations'
            ]
        },
        'VpcLimitExceeded': {
            'category': ErrorCategory.RESOURCE_LIMIT,
            'message': 'VPC limit exceeded for this region',
            'suggestions': [
                'Delete unused VPCs or request a limit increase'
            ]
        },
        'AddressLimitExceeded': {
            'category': ErrorCategory.RESOURCE_LIMIT,
            'message': 'Elastic IP address limit exceeded',
            'suggestions': [
                'Release unused Elastic IPs or request a limit increase',
                'Use a single shared NAT gateway instead of one per availability zone'
            ]
        },
        'DependencyViolation': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Resource still has dependent objects',
            'suggestions': [
                'Delete the dependent resources first',
                'Check for network interfaces left behind by load balancers or instances'
            ]
        },
        'InvalidParameterValue': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check parameter format and constraints',
                'Review AWS service documentation for valid values'
            ]
        },
        'InvalidSubnet.Conflict': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Subnet CIDR block conflicts with another subnet',
            'suggestions': [
                'Choose non-overlapping CIDR blocks for each subnet'
            ]
        },
        'ValidationError': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter or configuration',
            'suggestions': [
                'Review the error message for specific validation failures',
                'Verify all required parameters are provided'
            ]
        },
        'RequestLimitExceeded': {
            'category': ErrorCategory.RESOURCE_LIMIT,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Reduce concurrency (--max-workers) and retry'
            ]
        },
    }

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> TierstackError:
        """Handle an exception and convert to a TierstackError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            TierstackError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, TierstackError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return TierstackError(
                message=f'AWS credentials are missing or incomplete: {error}',
                category=ErrorCategory.CREDENTIAL,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile flag'
                ]
            )

        if isinstance(error, WaiterError):
            return TierstackError(
                message=f'Timed out waiting for resource to become ready: {error}',
                category=ErrorCategory.PROVISIONING,
                context=context,
                cause=error,
                suggestions=['Increase execution.wait_timeout in the configuration']
            )

        if isinstance(error, (ConnectionError, TimeoutError)):
            return TierstackError(
                message=f'Network error: {str(error)}',
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error,
                suggestions=[
                    'Check your internet connection',
                    'Retry the operation'
                ]
            )

        return TierstackError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            context=context,
            cause=error,
        )

    def to_provider_error(
        self,
        error: Exception,
        logical_name: str,
        operation: str,
        kind: Optional[str] = None
    ) -> ProviderError:
        """Wrap any exception raised by a provider call into a ProviderError.

        Args:
            error: The exception raised by the provisioner
            logical_name: Resource the call was made for
            operation: find, create or delete
            kind: Resource kind

        Returns:
            ProviderError attributed to ``logical_name``
        """
        if isinstance(error, ProviderError):
            return error

        handled = self.handle_exception(error, ErrorContext(kind=kind))
        return ProviderError(
            f"{operation} failed for '{logical_name}': {handled.message}",
            logical_name=logical_name,
            operation=operation,
            category=handled.category,
            context=handled.context,
            cause=error,
            suggestions=handled.suggestions,
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> TierstackError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized TierstackError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        context.request_id = request_id
        context.aws_operation = getattr(error, 'operation_name', None)

        error_info = self.AWS_ERROR_MAPPING.get(error_code)

        if error_info:
            return TierstackError(
                message=f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        logger.debug(f"No mapping for AWS error code {error_code} from {context.aws_operation}")
        return TierstackError(
            message=f"AWS Error ({error_code}): {error_message}",
            category=ErrorCategory.AWS,
            context=context,
            cause=error,
            suggestions=[
                'Check AWS documentation for this error code',
                f'AWS Request ID: {request_id}'
            ]
        )


# Global error handler instance
error_handler = ErrorHandler()
