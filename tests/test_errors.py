"""Tests for error classification and rendering."""

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from stackweaver.utils.errors import (
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    ErrorContext,
    NotFoundError,
    PlanError,
    ProviderError,
    StoreIOError,
    ValidationError,
    error_handler,
)


def client_error(code, message="boom", status=400, operation="CreateRole"):
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status, "RequestId": "req-1"},
        },
        operation,
    )


class TestClientErrors:
    @pytest.mark.parametrize("code", ["NoSuchEntity", "NoSuchBucket", "404"])
    def test_not_found(self, code):
        error = error_handler.handle_exception(client_error(code, status=404))

        assert isinstance(error, NotFoundError)
        assert not error.retryable

    @pytest.mark.parametrize("code, status", [
        ("Throttling", 400),
        ("ConcurrentModificationException", 409),
        ("SomethingOdd", 503),
    ])
    def test_retryable(self, code, status):
        error = error_handler.handle_exception(client_error(code, status=status))

        assert type(error) is ProviderError
        assert error.retryable

    def test_permanent_error_keeps_context_and_suggestions(self):
        context = ErrorContext(stack_name="site", resource_id="myRole")
        error = error_handler.handle_exception(
            client_error("AccessDenied", "not allowed", status=403), context
        )

        assert not error.retryable
        assert error.message == "AWS Error (AccessDenied): not allowed"
        assert error.context.request_id == "req-1"
        assert error.context.aws_operation == "CreateRole"
        assert error.suggestions
        assert error.exit_code == 6


class TestOtherErrors:
    def test_engine_errors_pass_through(self):
        original = PlanError("nope")
        assert error_handler.handle_exception(original) is original

    def test_missing_credentials(self):
        error = error_handler.handle_exception(NoCredentialsError())
        assert error.message == "No usable AWS credentials found"
        assert not error.retryable

    @pytest.mark.parametrize("exc", [
        ConnectionError("reset by peer"),
        EndpointConnectionError(endpoint_url="https://iam.amazonaws.com"),
    ])
    def test_network_errors_are_retryable(self, exc):
        assert error_handler.handle_exception(exc).retryable

    def test_unexpected_error(self):
        error = error_handler.handle_exception(KeyError("Arn"))
        assert isinstance(error, ProviderError)
        assert error.message.startswith("Unexpected provider error")


@pytest.mark.parametrize("error, code", [
    (ConfigurationError("bad"), 2),
    (ValidationError("bad"), 2),
    (CycleError(["A", "B"]), 3),
    (DanglingReferenceError("A", "B"), 4),
    (PlanError("bad"), 5),
    (ProviderError("bad"), 6),
    (StoreIOError("bad"), 7),
])
def test_exit_codes(error, code):
    assert error.exit_code == code


def test_user_message():
    error = ValidationError(
        "Parameter value is required",
        path="Parameters.paramRootDomain",
        context=ErrorContext(stack_name="site"),
        suggestions=["Pass --param paramRootDomain=example.com"],
    )

    message = error.to_user_message()

    assert message.splitlines()[0] == (
        "CRITICAL: Parameters.paramRootDomain: Parameter value is required"
    )
    assert "   Stack: site" in message
    assert "   1. Pass --param paramRootDomain=example.com" in message
    assert error.to_dict()["exit_code"] == 2


def test_cycle_message_closes_the_loop():
    assert str(CycleError(["A", "B"])) == "Circular dependency detected: A -> B -> A"
