"""Utility modules for logging, errors, retries and AWS sessions."""

from stackweaver.utils.aws_client import AccountIdentity, AWSClientManager
from stackweaver.utils.retry import RetryStrategy, with_retry
from stackweaver.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    EngineError,
    ConfigurationError,
    ValidationError,
    UnknownTypeError,
    GraphError,
    CycleError,
    DanglingReferenceError,
    PlanError,
    ProviderError,
    NotFoundError,
    OperationTimeoutError,
    StoreIOError,
    ErrorHandler,
    error_handler
)
from stackweaver.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AccountIdentity',

    # Retry
    'RetryStrategy',
    'with_retry',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'EngineError',
    'ConfigurationError',
    'ValidationError',
    'UnknownTypeError',
    'GraphError',
    'CycleError',
    'DanglingReferenceError',
    'PlanError',
    'ProviderError',
    'NotFoundError',
    'OperationTimeoutError',
    'StoreIOError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
