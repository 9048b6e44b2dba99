"""Error handling framework for stack reconciliation."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during planning and apply."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    GRAPH = "graph"
    PLAN = "plan"
    PROVIDER = "provider"
    STATE = "state"
    CREDENTIAL = "credential"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Nothing was (or may be) applied
    ERROR = "error"  # Resource failed, rollback handles the rest
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    stack_name: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class EngineError(Exception):
    """Base exception for all engine errors."""

    exit_code = 1

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize engine error.

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

        if self.context.stack_name:
            lines.append(f"   Stack: {self.context.stack_name}")
        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
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
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'exit_code': self.exit_code,
            'context': {
                'stack_name': self.context.stack_name,
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(EngineError):
    """Error in the engine settings file or environment."""

    exit_code = 2

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ValidationError(EngineError):
    """Bad template or parameter, raised before any provider call."""

    exit_code = 2

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        self.path = path
        if path:
            message = f"{path}: {message}"
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )


class UnknownTypeError(ValidationError):
    """Resource type has no registered schema."""

    def __init__(self, type_name: str, **kwargs):
        self.type_name = type_name
        super().__init__(f"Unknown resource type: {type_name}", **kwargs)


class GraphError(EngineError):
    """Error while building the resource dependency graph."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.GRAPH,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(GraphError):
    """Resource references form a cycle."""

    exit_code = 3

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        cycle_str = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Circular dependency detected: {cycle_str}", **kwargs)


class DanglingReferenceError(GraphError):
    """A resource references a resource that is not in the graph."""

    exit_code = 4

    def __init__(self, source: str, target: str, excluded: bool = False, **kwargs):
        self.source = source
        self.target = target
        self.excluded = excluded
        reason = "which is excluded by its condition" if excluded else "which does not exist"
        super().__init__(
            f"Resource '{source}' references '{target}' {reason}",
            context=ErrorContext(resource_id=source),
            **kwargs
        )


class PlanError(EngineError):
    """Failure while computing the change set."""

    exit_code = 5

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PLAN,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProviderError(EngineError):
    """A provider call failed."""

    exit_code = 6

    def __init__(self, message: str, retryable: bool = False, **kwargs):
        self.retryable = retryable
        kwargs.setdefault('category', ErrorCategory.PROVIDER)
        kwargs.setdefault('severity', ErrorSeverity.ERROR)
        super().__init__(message, **kwargs)


class NotFoundError(ProviderError):
    """The physical resource does not exist upstream."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, retryable=False, **kwargs)


class OperationTimeoutError(ProviderError):
    """A provider operation exceeded its deadline."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, retryable=False, **kwargs)


class StoreIOError(EngineError):
    """State could not be persisted or read back."""

    exit_code = 7

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ErrorHandler:
    """Translates AWS and other low-level errors into provider errors."""

    # Error codes worth retrying with backoff
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'RequestThrottled',
        'PriorRequestNotComplete',
        'InternalError',
        'InternalFailure',
        'ServiceException',
        'ConcurrentModificationException',
        'OperationAborted',
    }

    NOT_FOUND_ERROR_CODES = {
        'NoSuchEntity',
        'NoSuchBucket',
        'NoSuchBucketPolicy',
        'NoSuchHostedZone',
        'NoSuchCloudFrontOriginAccessIdentity',
        'NoSuchDistribution',
        'ResourceNotFoundException',
        'NotFound',
        '404',
    }

    SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have the required permissions for this operation',
        ],
        'ValidationException': [
            'Review the error message for specific validation failures',
            'Check the resource properties in the template',
        ],
        'InvalidClientTokenId': [
            'Check that your AWS credentials are correctly configured',
            'Verify credentials using: aws sts get-caller-identity',
        ],
        'ExpiredToken': [
            'Refresh your AWS session credentials',
        ],
    }

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> EngineError:
        """Convert an arbitrary exception raised by a provider.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            EngineError (usually a ProviderError) with retry classification
        """
        context = context or ErrorContext()

        if isinstance(error, EngineError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ProviderError(
                'No usable AWS credentials found',
                category=ErrorCategory.CREDENTIAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile flag',
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError, EndpointConnectionError)):
            return ProviderError(
                f'Network error: {str(error)}',
                retryable=True,
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error
            )

        if isinstance(error, BotoCoreError):
            return ProviderError(str(error), context=context, cause=error)

        logger.debug(f"Unmapped provider exception {type(error).__name__}: {error}")
        return ProviderError(
            f'Unexpected provider error: {str(error)}',
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> ProviderError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            ProviderError or NotFoundError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = getattr(error, 'operation_name', None)

        if error_code in self.NOT_FOUND_ERROR_CODES:
            return NotFoundError(
                f"{error_code}: {error_message}",
                context=context,
                cause=error
            )

        retryable = error_code in self.RETRYABLE_ERROR_CODES or (
            status is not None and status >= 500
        )

        return ProviderError(
            f"AWS Error ({error_code}): {error_message}",
            retryable=retryable,
            context=context,
            cause=error,
            suggestions=self.SUGGESTIONS.get(error_code, [])
        )


# Global error handler instance
error_handler = ErrorHandler()
