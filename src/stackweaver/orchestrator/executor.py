"""Change set executor with per-edge readiness, rollback and cleanup."""

import contextvars
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from stackweaver.orchestrator.models import resolve_value
from stackweaver.orchestrator.operations import (
    OperationLog,
    OperationRecord,
    ProviderCaller,
    record_resolver,
)
from stackweaver.orchestrator.planner import ChangeAction, ChangeSet, ChangeSetEntry
from stackweaver.orchestrator.rollback import CompletedChange, RollbackManager
from stackweaver.provisioners.base import ProviderRegistry, ProviderSpec
from stackweaver.state.models import RecordStatus, StackState, StateRecord
from stackweaver.state.store import StateStore
from stackweaver.utils.errors import (
    EngineError,
    ErrorContext,
    NotFoundError,
    OperationTimeoutError,
    StoreIOError,
)
from stackweaver.utils.logging import get_logger
from stackweaver.utils.retry import RetryStrategy

logger = get_logger(__name__)

# Upper bound on how long the dispatcher sleeps before re-checking cancellation
CANCEL_POLL_INTERVAL = 0.25


class EntryStatus(Enum):
    """Execution status of a change set entry."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ResourceOutcome(Enum):
    """User-visible terminal outcome of a resource."""
    CREATED = "created"
    UPDATED = "updated"
    REPLACED = "replaced"
    DELETED = "deleted"
    RETAINED = "retained"
    ORPHANED = "orphaned"
    FAILED = "failed"
    SKIPPED_BY_CONDITION = "skipped-by-condition"
    UNCHANGED = "unchanged"
    ROLLED_BACK = "rolled-back"
    NOT_STARTED = "not-started"


_FORWARD_OUTCOMES = {
    ChangeAction.CREATE: ResourceOutcome.CREATED,
    ChangeAction.UPDATE: ResourceOutcome.UPDATED,
    ChangeAction.REPLACE: ResourceOutcome.REPLACED,
    ChangeAction.NOOP: ResourceOutcome.UNCHANGED,
}


@dataclass
class ResourceExecutionResult:
    """Result of executing a single change set entry."""

    logical_name: str
    action: Optional[ChangeAction]
    status: EntryStatus = EntryStatus.PENDING
    outcome: ResourceOutcome = ResourceOutcome.NOT_STARTED
    physical_id: Optional[str] = None
    error: Optional[EngineError] = None
    detail: Optional[str] = None
    duration: float = 0.0

    def is_success(self) -> bool:
        return self.status == EntryStatus.SUCCEEDED

    def is_failed(self) -> bool:
        return self.outcome == ResourceOutcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "action": self.action.value if self.action else None,
            "status": self.status.value,
            "outcome": self.outcome.value,
            "physical_id": self.physical_id,
            "error": str(self.error) if self.error else None,
            "detail": self.detail,
            "duration": round(self.duration, 3),
        }


@dataclass
class ApplyResult:
    """Complete result of applying a change set."""

    stack_name: str
    success: bool = False
    cancelled: bool = False
    rolled_back: bool = False
    results: Dict[str, ResourceExecutionResult] = field(default_factory=dict)
    operations: List[OperationRecord] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[EngineError] = None
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None

    @property
    def duration(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def outcome(self, logical_name: str) -> Optional[ResourceOutcome]:
        result = self.results.get(logical_name)
        return result.outcome if result else None

    def get_failed_resources(self) -> List[str]:
        return [name for name, result in self.results.items() if result.is_failed()]

    def get_summary(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for result in self.results.values():
            summary[result.outcome.value] = summary.get(result.outcome.value, 0) + 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack_name": self.stack_name,
            "success": self.success,
            "cancelled": self.cancelled,
            "rolled_back": self.rolled_back,
            "error": str(self.error) if self.error else None,
            "resources": [result.to_dict() for result in self.results.values()],
            "operations": [operation.to_dict() for operation in self.operations],
            "outputs": self.outputs,
            "summary": self.get_summary(),
        }


@dataclass
class _Outcome:
    """What a worker (or the dispatcher, for inline entries) reports back."""

    physical_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    properties: Dict[str, Any] = field(default_factory=dict)
    tags: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[EngineError] = None
    noop: bool = False
    created: bool = False
    adopted: bool = False
    unchanged: bool = False
    state_only: bool = False
    retained: bool = False
    cleared: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)


_Task = Callable[[float], _Outcome]
_Prepared = Union[_Outcome, _Task]


class ChangeSetExecutor:
    """Applies change sets through providers."""

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        max_workers: Optional[int] = None,
        operation_timeout: float = 1800.0,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize executor.

        Args:
            providers: Providers by resource type
            store: State store; state is saved after every batch of completions
            max_workers: Concurrent provider operations (default: CPU count)
            operation_timeout: Deadline in seconds for each entry
            retry_strategy: Backoff policy for retryable provider errors
        """
        self.providers = providers
        self.store = store
        self.max_workers = max_workers or os.cpu_count() or 1
        self.operation_timeout = operation_timeout
        self.retry_strategy = retry_strategy or RetryStrategy()

    def apply(
        self,
        change_set: ChangeSet,
        cancel_event: Optional[threading.Event] = None
    ) -> ApplyResult:
        """Apply a change set.

        Args:
            change_set: Planned changes
            cancel_event: Set from another thread to stop dispatching and roll back

        Returns:
            ApplyResult with a terminal outcome for every resource

        Raises:
            StoreIOError: If state cannot be persisted; in-flight work is drained first
        """
        run = _ApplyRun(self, change_set, cancel_event or threading.Event())
        return run.execute()


class _ApplyRun:
    """State of one apply invocation. Only the dispatcher thread mutates it."""

    def __init__(self, executor: ChangeSetExecutor, change_set: ChangeSet,
                 cancel_event: threading.Event):
        self.executor = executor
        self.change_set = change_set
        self.cancel_event = cancel_event
        self.stack_name = change_set.stack_name
        self.timeout = executor.operation_timeout
        self.max_workers = executor.max_workers
        self.log = OperationLog()
        self.caller = ProviderCaller(executor.providers, executor.retry_strategy,
                                     self.log, self.stack_name)
        self.state: StackState = executor.store.load(self.stack_name)
        if change_set.graph is not None and not change_set.graph.is_empty():
            self.state.parameters = dict(change_set.parameters)
        self.resolve = record_resolver(self.state)
        self.completions: List[CompletedChange] = []
        self.cancelled = False
        self.store_error: Optional[StoreIOError] = None
        self.first_error: Optional[EngineError] = None

        self.result = ApplyResult(stack_name=self.stack_name)
        for entry in change_set.entries:
            self.result.results[entry.logical_name] = ResourceExecutionResult(
                logical_name=entry.logical_name,
                action=entry.action,
                physical_id=entry.prior.physical_id if entry.prior else None,
            )
        for name in change_set.skipped_by_condition:
            self.result.results[name] = ResourceExecutionResult(
                logical_name=name,
                action=None,
                status=EntryStatus.SUCCEEDED,
                outcome=ResourceOutcome.SKIPPED_BY_CONDITION,
            )

    # Top level

    def execute(self) -> ApplyResult:
        logger.info(f"Applying {len(self.change_set.entries)} changes to stack {self.stack_name}...")
        forward_ok = self._dispatch(
            self.change_set.forward_entries(), self._prepare_forward,
            self._complete_forward, stop_on_failure=True, phase="forward"
        )

        if forward_ok:
            self._dispatch(
                self.change_set.delete_entries(), self._prepare_delete,
                self._complete_delete, stop_on_failure=False, phase="cleanup"
            )
            if self.store_error is None:
                self._cleanup_replaced()
                self._resolve_outputs()
        else:
            self._rollback()

        if self.store_error is None:
            self._save()
        else:
            self._save_after_store_error()
        self._finish()
        if self.store_error is not None:
            raise self.store_error
        return self.result

    def _finish(self) -> None:
        self.result.operations = self.log.records()
        self.result.cancelled = self.cancelled
        self.result.end_time = datetime.utcnow()
        self.result.outputs = dict(self.state.outputs)
        self.result.success = not self.cancelled and not any(
            result.is_failed() or result.outcome == ResourceOutcome.ROLLED_BACK
            for result in self.result.results.values()
        )
        if self.result.error is None:
            self.result.error = self.first_error
        summary = ", ".join(f"{count} {name}" for name, count in sorted(self.result.get_summary().items()))
        if self.result.success:
            logger.info(f"Apply of {self.stack_name} succeeded in {self.result.duration:.1f}s: {summary}")
        else:
            logger.error(f"Apply of {self.stack_name} did not succeed: {summary}")

    def _save(self) -> None:
        if self.store_error is not None:
            return
        try:
            self.executor.store.save(self.state)
        except StoreIOError as e:
            logger.error(f"Failed to save state for {self.stack_name}: {e}")
            self.store_error = e
            self.result.error = e

    def _save_after_store_error(self) -> None:
        """Save once more so the stored records match what rollback left in place.

        The apply still fails with the original error. If this save fails too, the
        raised error names both failures.
        """
        try:
            self.executor.store.save(self.state)
        except StoreIOError as e:
            logger.error(f"Saving state for {self.stack_name} after rollback failed: {e}")
            self.store_error = StoreIOError(
                f"{self.store_error.message}; saving state after rollback also failed: {e.message}",
                context=ErrorContext(stack_name=self.stack_name),
                cause=e,
                suggestions=[
                    f"State of {self.stack_name} may list resources that no longer exist",
                    "Fix the state directory, then re-run apply to reconcile",
                ]
            )
            self.result.error = self.store_error
            return
        logger.info(f"State for {self.stack_name} saved after rollback")

    # Dispatcher

    def _dispatch(
        self,
        entries: List[ChangeSetEntry],
        prepare: Callable[[ChangeSetEntry], _Prepared],
        complete: Callable[[ChangeSetEntry, _Outcome], bool],
        stop_on_failure: bool,
        phase: str
    ) -> bool:
        """Run entries as soon as all of their change set dependencies succeed.

        Returns:
            True if every entry succeeded
        """
        if not entries:
            return True

        by_name = {entry.logical_name: entry for entry in entries}
        order = {entry.logical_name: index for index, entry in enumerate(entries)}
        waiting = {
            entry.logical_name: {dep for dep in entry.dependencies if dep in by_name}
            for entry in entries
        }
        pending: Set[str] = set(by_name)
        succeeded: Set[str] = set()
        all_ok = True
        stop = self.store_error is not None
        in_flight: Dict[Future, Tuple[ChangeSetEntry, float]] = {}
        abandoned: Dict[Future, ChangeSetEntry] = {}

        def settle(entry: ChangeSetEntry, outcome: _Outcome) -> None:
            nonlocal all_ok, stop
            if complete(entry, outcome):
                succeeded.add(entry.logical_name)
            else:
                all_ok = False
                if stop_on_failure and not stop:
                    stop = True
                    logger.warning(f"{entry.logical_name} failed; no new {phase} operations will start")

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix=f"stackweaver-{phase}") as pool:
            while True:
                if self.cancel_event.is_set() and not self.cancelled:
                    self.cancelled = True
                    stop = True
                    logger.warning(f"Cancellation requested for {self.stack_name}")

                progressed = False
                if not stop:
                    ready = sorted(
                        (name for name in pending if waiting[name] <= succeeded),
                        key=order.get
                    )
                    for name in ready:
                        if len(in_flight) >= self.max_workers or stop:
                            break
                        entry = by_name[name]
                        pending.discard(name)
                        self._mark(name, EntryStatus.IN_PROGRESS)
                        prepared = prepare(entry)
                        if isinstance(prepared, _Outcome):
                            settle(entry, prepared)
                            progressed = True
                        else:
                            deadline = time.monotonic() + self.timeout
                            future = pool.submit(contextvars.copy_context().run, prepared, deadline)
                            in_flight[future] = (entry, deadline)

                if not in_flight:
                    if progressed:
                        self._save()
                        if self.store_error is not None:
                            stop = True
                        if not stop:
                            continue
                    break

                nearest = min(deadline for _, deadline in in_flight.values())
                timeout = 0.0 if progressed else \
                    max(0.0, min(nearest - time.monotonic(), CANCEL_POLL_INTERVAL))
                done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)

                for future in done:
                    entry, _ = in_flight.pop(future)
                    settle(entry, future.result())

                now = time.monotonic()
                expired = [f for f, (_, deadline) in in_flight.items() if now >= deadline]
                for future in expired:
                    entry, _ = in_flight.pop(future)
                    abandoned[future] = entry
                    error = OperationTimeoutError(
                        f"{entry.logical_name} did not finish within {self.timeout:g}s",
                        context=ErrorContext(stack_name=self.stack_name,
                                             resource_id=entry.logical_name,
                                             resource_type=entry.type_name)
                    )
                    settle(entry, _Outcome(error=error))

                if done or expired or progressed:
                    self._save()
                    if self.store_error is not None:
                        stop = True

        # The pool has drained; calls that outlived their deadline have now settled
        for future, entry in abandoned.items():
            outcome = future.result()
            if outcome.error is not None:
                continue
            if phase == "forward":
                logger.warning(f"{entry.logical_name} finished after its deadline; it will be rolled back")
                self._record_late(entry, outcome)
            else:
                logger.warning(f"Delete of {entry.logical_name} finished after its deadline")
                self.state.remove_record(entry.logical_name)
                self.result.results[entry.logical_name].detail = "deleted after its deadline"

        return all_ok and not self.cancelled and self.store_error is None

    def _mark(self, name: str, status: EntryStatus) -> None:
        self.result.results[name].status = status

    def _fail(self, entry: ChangeSetEntry, error: EngineError, outcome: _Outcome) -> bool:
        result = self.result.results[entry.logical_name]
        result.status = EntryStatus.FAILED
        result.outcome = ResourceOutcome.FAILED
        result.error = error
        result.duration = time.monotonic() - outcome.started
        if self.first_error is None:
            self.first_error = error
        logger.error(f"{entry.action.value} {entry.logical_name} failed: {error}")
        return False

    def _succeed(self, entry: ChangeSetEntry, outcome_kind: ResourceOutcome,
                 outcome: _Outcome, physical_id: Optional[str]) -> bool:
        result = self.result.results[entry.logical_name]
        result.status = EntryStatus.SUCCEEDED
        result.outcome = outcome_kind
        result.physical_id = physical_id
        result.duration = time.monotonic() - outcome.started
        logger.info(f"{entry.logical_name}: {outcome_kind.value}"
                    + (f" ({physical_id})" if physical_id else ""))
        return True

    # Forward pass

    def _desired(self, entry: ChangeSetEntry) -> ProviderSpec:
        spec = entry.spec
        return ProviderSpec(
            logical_name=spec.logical_name,
            type_name=spec.type_name,
            properties=resolve_value(spec.properties, self.resolve),
            tags=[{"Key": tag.key, "Value": resolve_value(tag.value, self.resolve)}
                  for tag in spec.tags],
            stack=self.stack_name,
        )

    def _matches(self, record: Optional[StateRecord], desired: ProviderSpec) -> bool:
        return (
            record is not None
            and record.status == RecordStatus.CREATED
            and record.type_name == desired.type_name
            and record.resolved_properties == desired.properties
            and record.resolved_tags == desired.tags
        )

    def _prepare_forward(self, entry: ChangeSetEntry) -> _Prepared:
        name = entry.logical_name
        record = self.state.get_record(name)

        if entry.action == ChangeAction.NOOP:
            return _Outcome(noop=True)
        if entry.state_only and record is not None:
            return _Outcome(state_only=True)

        try:
            desired = self._desired(entry)
        except EngineError as e:
            return _Outcome(error=e)

        if entry.action == ChangeAction.CREATE:
            if record is not None and record.physical_id and record.type_name == entry.type_name:
                return self._create_task(entry, desired, adopt=record)
            return self._create_task(entry, desired)

        if entry.action == ChangeAction.UPDATE:
            if record is None or not record.physical_id:
                return self._create_task(entry, desired)
            if self._matches(record, desired):
                return _Outcome(unchanged=True, physical_id=record.physical_id,
                                attributes=dict(record.attributes),
                                properties=desired.properties, tags=desired.tags)
            record.status = RecordStatus.UPDATING
            return self._update_task(entry, desired, record.physical_id)

        # REPLACE
        prior_id = entry.prior.physical_id if entry.prior else None
        if record is not None and record.physical_id != prior_id and self._matches(record, desired):
            return _Outcome(unchanged=True, physical_id=record.physical_id,
                            attributes=dict(record.attributes),
                            properties=desired.properties, tags=desired.tags)
        if record is not None:
            record.status = RecordStatus.UPDATING
        return self._create_task(entry, desired)

    def _create_task(self, entry: ChangeSetEntry, desired: ProviderSpec,
                     adopt: Optional[StateRecord] = None) -> _Task:
        adopt_id = adopt.physical_id if adopt is not None else None
        needs_update = adopt is not None and not self._matches(adopt, desired)

        def task(deadline: float) -> _Outcome:
            outcome = _Outcome(properties=desired.properties, tags=desired.tags)
            try:
                if adopt_id:
                    try:
                        attributes = self.caller.invoke(entry.type_name, entry.logical_name,
                                                        "read", "forward", deadline, adopt_id)
                        if needs_update:
                            attributes = self.caller.invoke(
                                entry.type_name, entry.logical_name, "update", "forward",
                                deadline, adopt_id, desired
                            )
                        outcome.physical_id = adopt_id
                        outcome.attributes = dict(attributes or {})
                        outcome.adopted = True
                        return outcome
                    except NotFoundError:
                        logger.info(f"{entry.logical_name} ({adopt_id}) no longer exists; creating it")
                physical_id, attributes = self.caller.invoke(
                    entry.type_name, entry.logical_name, "create", "forward", deadline, desired
                )
                outcome.physical_id = physical_id
                outcome.attributes = dict(attributes or {})
                outcome.created = True
            except EngineError as e:
                outcome.error = e
            return outcome

        return task

    def _update_task(self, entry: ChangeSetEntry, desired: ProviderSpec, physical_id: str) -> _Task:
        def task(deadline: float) -> _Outcome:
            outcome = _Outcome(properties=desired.properties, tags=desired.tags,
                               physical_id=physical_id)
            try:
                attributes = self.caller.invoke(entry.type_name, entry.logical_name,
                                                "update", "forward", deadline, physical_id, desired)
                outcome.attributes = dict(attributes or {})
            except EngineError as e:
                outcome.error = e
            return outcome

        return task

    def _build_record(self, entry: ChangeSetEntry, outcome: _Outcome,
                      previous: Optional[StateRecord]) -> StateRecord:
        spec = entry.spec
        attributes = dict(previous.attributes) if previous and not outcome.created else {}
        attributes.update(outcome.attributes)
        graph = self.change_set.graph
        dependencies = sorted(graph.get_dependencies(entry.logical_name)) if graph else \
            list(entry.dependencies)
        return StateRecord(
            logical_name=entry.logical_name,
            type_name=spec.type_name,
            physical_id=outcome.physical_id,
            properties=spec.property_snapshot(),
            resolved_properties=outcome.properties,
            tags=spec.tag_snapshot(),
            resolved_tags=outcome.tags,
            attributes=attributes,
            dependencies=dependencies,
            status=RecordStatus.CREATED,
            deletion_policy=spec.deletion_policy.value,
            pending_deletes=[p.model_copy() for p in previous.pending_deletes] if previous else [],
        )

    def _complete_forward(self, entry: ChangeSetEntry, outcome: _Outcome) -> bool:
        name = entry.logical_name
        record = self.state.get_record(name)

        if outcome.error is not None:
            if record is not None:
                if entry.action == ChangeAction.REPLACE and entry.prior is not None:
                    record.status = entry.prior.status
                elif entry.action != ChangeAction.CREATE:
                    record.status = RecordStatus.FAILED
            return self._fail(entry, outcome.error, outcome)

        if outcome.noop:
            # NOOP: only bookkeeping that does not reach the provider
            if record is not None and entry.spec is not None:
                record.dependencies = list(entry.dependencies)
            return self._succeed(entry, ResourceOutcome.UNCHANGED, outcome,
                                 record.physical_id if record else None)

        previous = record.model_copy(deep=True) if record is not None else None
        if previous is not None and previous.status == RecordStatus.UPDATING:
            previous.status = entry.prior.status if entry.prior else RecordStatus.CREATED

        if outcome.state_only:
            record.deletion_policy = entry.spec.deletion_policy.value
            record.dependencies = list(entry.dependencies)
            self.state.put_record(record)
            self.completions.append(CompletedChange(entry, previous, record.model_copy(deep=True),
                                                    state_only=True))
            return self._succeed(entry, ResourceOutcome.UPDATED, outcome, record.physical_id)

        if outcome.unchanged:
            record.status = RecordStatus.CREATED
            record.deletion_policy = entry.spec.deletion_policy.value
            logger.info(f"{name} already matches the desired state; skipping {entry.action.value}")
            return self._succeed(entry, ResourceOutcome.UNCHANGED, outcome, record.physical_id)

        new_record = self._build_record(entry, outcome, previous)
        self.state.put_record(new_record)
        self.completions.append(CompletedChange(
            entry, previous, new_record.model_copy(deep=True), adopted=outcome.adopted
        ))
        if outcome.created and entry.action == ChangeAction.UPDATE:
            kind = ResourceOutcome.CREATED
        else:
            kind = _FORWARD_OUTCOMES[entry.action]
        return self._succeed(entry, kind, outcome, new_record.physical_id)

    def _record_late(self, entry: ChangeSetEntry, outcome: _Outcome) -> None:
        """Track a call that succeeded after its deadline so rollback compensates it."""
        record = self.state.get_record(entry.logical_name)
        previous = record.model_copy(deep=True) if record is not None else None
        if previous is not None and previous.status in (RecordStatus.UPDATING, RecordStatus.FAILED):
            previous.status = entry.prior.status if entry.prior else RecordStatus.CREATED
        new_record = self._build_record(entry, outcome, previous)
        self.state.put_record(new_record)
        self.completions.append(CompletedChange(
            entry, previous, new_record.model_copy(deep=True), adopted=outcome.adopted, late=True
        ))

    # Rollback

    def _rollback(self) -> None:
        self.result.rolled_back = True
        manager = RollbackManager(self.caller, self.state, self.timeout)
        steps = manager.rollback(self.completions)

        for change in self.completions:
            name = change.entry.logical_name
            step = steps.get(name)
            result = self.result.results[name]
            if step is None:
                continue
            if step.orphaned:
                result.outcome = ResourceOutcome.ORPHANED
                result.detail = step.detail
                result.error = result.error or self.first_error
                result.physical_id = change.current.physical_id
            elif step.error is not None:
                result.outcome = ResourceOutcome.FAILED
                result.error = step.error
                result.detail = "rollback failed"
            elif change.late:
                result.detail = "completed after its deadline and was rolled back"
            else:
                result.outcome = ResourceOutcome.ROLLED_BACK
                record = self.state.get_record(name)
                result.physical_id = record.physical_id if record else None

    # Cleanup pass

    def _prepare_delete(self, entry: ChangeSetEntry) -> _Prepared:
        record = self.state.get_record(entry.logical_name)
        if record is None:
            return _Outcome(unchanged=True)

        # Replaced resources left over by earlier applies go first
        targets = [(p.physical_id, p.type_name) for p in record.pending_deletes]
        retained = entry.is_retained
        if not retained and record.physical_id and record.status != RecordStatus.DELETED:
            targets.append((record.physical_id, record.type_name))
        record_id = record.physical_id
        if not targets:
            return _Outcome(retained=retained, physical_id=record_id)

        def task(deadline: float) -> _Outcome:
            outcome = _Outcome(physical_id=record_id, retained=retained)
            for physical_id, type_name in targets:
                try:
                    self.caller.invoke(type_name, entry.logical_name, "delete", "cleanup",
                                       deadline, physical_id)
                except NotFoundError:
                    logger.info(f"{entry.logical_name} ({physical_id}) was already deleted")
                except EngineError as e:
                    outcome.error = e
                    return outcome
                outcome.cleared.append(physical_id)
            return outcome

        return task

    def _complete_delete(self, entry: ChangeSetEntry, outcome: _Outcome) -> bool:
        name = entry.logical_name
        if outcome.error is not None:
            record = self.state.get_record(name)
            if record is not None:
                record.status = RecordStatus.FAILED
                for physical_id in outcome.cleared:
                    record.clear_pending_delete(physical_id)
            return self._fail(entry, outcome.error, outcome)

        self.state.remove_record(name)
        if outcome.retained:
            result = self.result.results[name]
            result.detail = f"{outcome.physical_id} detached from state; not deleted"
            return self._succeed(entry, ResourceOutcome.RETAINED, outcome, outcome.physical_id)
        return self._succeed(entry, ResourceOutcome.DELETED, outcome, outcome.physical_id)

    def _cleanup_replaced(self) -> None:
        """Delete the old physical resources of replaced entries, highest rank first.

        Each old resource is recorded as a pending delete on the new record before
        the call and cleared once it is gone, so a failed delete is retried by the
        next apply. The new record itself stays CREATED.
        """
        work: List[Tuple[str, str, str]] = []
        forward = sorted(self.change_set.forward_entries(),
                         key=lambda e: (e.rank, e.declaration_index), reverse=True)
        for entry in forward:
            name = entry.logical_name
            record = self.state.get_record(name)
            if record is None or self.result.results[name].status != EntryStatus.SUCCEEDED:
                continue
            for pending in record.pending_deletes:
                work.append((name, pending.physical_id, pending.type_name))
            old = entry.prior
            if entry.action != ChangeAction.REPLACE or old is None or not old.physical_id \
                    or record.physical_id == old.physical_id:
                continue
            if old.is_retained():
                self.result.results[name].detail = f"previous resource {old.physical_id} retained"
                continue
            if all(pid != old.physical_id for _, pid, _ in work):
                record.add_pending_delete(old.physical_id, old.type_name)
                work.append((name, old.physical_id, old.type_name))

        if not work:
            return
        self._save()
        for name, physical_id, type_name in work:
            if self.cancel_event.is_set() or self.store_error is not None:
                break
            try:
                self.caller.invoke(type_name, name, "delete", "cleanup",
                                   time.monotonic() + self.timeout, physical_id)
                logger.info(f"Deleted replaced resource {physical_id} of {name}")
            except NotFoundError:
                logger.info(f"Replaced resource {physical_id} of {name} was already deleted")
            except EngineError as e:
                result = self.result.results[name]
                result.status = EntryStatus.FAILED
                result.outcome = ResourceOutcome.FAILED
                result.error = e
                result.detail = f"deleting replaced resource {physical_id} failed; retried on next apply"
                if self.first_error is None:
                    self.first_error = e
                logger.error(f"Failed to delete replaced resource {physical_id} of {name}: {e}")
                continue
            self.state.get_record(name).clear_pending_delete(physical_id)
            self._save()

    def _resolve_outputs(self) -> None:
        if self.change_set.graph is None or self.change_set.graph.is_empty():
            self.state.outputs = {}
            return
        outputs = {}
        for name, output in self.change_set.outputs.items():
            try:
                outputs[name] = resolve_value(output.value, self.resolve)
            except EngineError as e:
                logger.warning(f"Output {name} could not be resolved: {e}")
        self.state.outputs = outputs

