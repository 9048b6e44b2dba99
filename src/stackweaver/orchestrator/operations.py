"""Provider call plumbing shared by the executor and rollback."""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from stackweaver.orchestrator.models import Reference
from stackweaver.provisioners.base import ProviderRegistry
from stackweaver.state.models import StackState
from stackweaver.utils.errors import EngineError, ErrorContext, ProviderError, error_handler
from stackweaver.utils.logging import LogContext, get_logger
from stackweaver.utils.retry import RetryStrategy

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperationRecord:
    """One provider call, as it happened."""

    sequence: int
    logical_name: str
    type_name: str
    operation: str
    phase: str
    physical_id: Optional[str]
    succeeded: bool
    duration: float
    error: Optional[str] = None

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "logical_name": self.logical_name,
            "type": self.type_name,
            "operation": self.operation,
            "phase": self.phase,
            "physical_id": self.physical_id,
            "succeeded": self.succeeded,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


class OperationLog:
    """Append-only, thread-safe log of provider calls in execution order."""

    def __init__(self):
        self._records: List[OperationRecord] = []
        self._lock = threading.Lock()

    def append(self, **fields: Any) -> OperationRecord:
        with self._lock:
            record = OperationRecord(sequence=len(self._records) + 1, **fields)
            self._records.append(record)
            return record

    def records(self) -> List[OperationRecord]:
        with self._lock:
            return list(self._records)


class ProviderCaller:
    """Invokes provider operations with retries, error translation and logging."""

    def __init__(
        self,
        providers: ProviderRegistry,
        retry: RetryStrategy,
        log: OperationLog,
        stack_name: Optional[str] = None
    ):
        self.providers = providers
        self.retry = retry
        self.log = log
        self.stack_name = stack_name

    def invoke(
        self,
        type_name: str,
        logical_name: str,
        operation: str,
        phase: str,
        deadline: Optional[float],
        *args: Any
    ) -> Any:
        """Call ``provider.<operation>(*args)``.

        Args:
            type_name: Resource type selecting the provider
            logical_name: Resource the call is made for
            operation: create, update, delete or read
            phase: forward, cleanup or rollback
            deadline: time.monotonic() value after which no retry starts
            *args: Arguments for the provider method

        Returns:
            Whatever the provider returned

        Raises:
            ProviderError: After retries are exhausted or for non-retryable failures
        """
        provider = self.providers.get(type_name)
        method: Callable[..., Any] = getattr(provider, operation)
        physical_id = args[0] if args and isinstance(args[0], str) else None
        context = ErrorContext(
            stack_name=self.stack_name,
            resource_id=logical_name,
            resource_type=type_name,
            operation=operation,
        )

        def attempt():
            start_time = time.monotonic()
            try:
                result = method(*args)
            except EngineError as e:
                self._record(logical_name, type_name, operation, phase, physical_id,
                             start_time, error=e)
                raise
            except Exception as e:
                converted = error_handler.handle_exception(e, context)
                self._record(logical_name, type_name, operation, phase, physical_id,
                             start_time, error=converted)
                raise converted from e
            created_id = result[0] if operation == "create" else physical_id
            self._record(logical_name, type_name, operation, phase, created_id, start_time)
            return result

        with LogContext(resource_id=logical_name, resource_type=type_name,
                        operation=operation, phase=phase):
            return self.retry.call(attempt, deadline=deadline,
                                   description=f"{operation} {logical_name}")

    def _record(self, logical_name, type_name, operation, phase, physical_id, start_time,
                error: Optional[Exception] = None) -> None:
        duration = time.monotonic() - start_time
        self.log.append(
            logical_name=logical_name,
            type_name=type_name,
            operation=operation,
            phase=phase,
            physical_id=physical_id,
            succeeded=error is None,
            duration=duration,
            error=str(error) if error is not None else None,
        )
        outcome = "succeeded" if error is None else f"failed: {error}"
        logger.debug(f"{operation} {logical_name} {outcome}", extra={"duration": round(duration, 3)})


def record_resolver(state: StackState) -> Callable[[Reference], Any]:
    """Resolver turning references into values from the working records.

    Raises (from the returned function):
        ProviderError: If the referenced resource or attribute is unavailable
    """
    def resolve(reference: Reference) -> Any:
        record = state.get_record(reference.logical_name)
        if record is None or not record.physical_id:
            raise ProviderError(
                f"Cannot resolve {reference}: {reference.logical_name} has no physical resource",
                context=ErrorContext(stack_name=state.stack_name,
                                     resource_id=reference.logical_name)
            )
        if reference.attribute is None:
            return record.physical_id
        if reference.attribute not in record.attributes:
            raise ProviderError(
                f"Cannot resolve {reference}: attribute was not reported by the provider",
                context=ErrorContext(stack_name=state.stack_name,
                                     resource_id=reference.logical_name,
                                     resource_type=record.type_name)
            )
        return record.attributes[reference.attribute]

    return resolve
