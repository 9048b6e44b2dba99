"""Rollback of changes made by a failed or cancelled apply."""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from stackweaver.orchestrator.operations import ProviderCaller
from stackweaver.orchestrator.planner import ChangeAction, ChangeSetEntry
from stackweaver.provisioners.base import ProviderSpec
from stackweaver.state.models import RecordStatus, StackState, StateRecord
from stackweaver.utils.errors import EngineError, NotFoundError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CompletedChange:
    """A forward change that reached the provider (or state) successfully.

    Attributes:
        entry: Change set entry that was applied
        previous: Working record before the change, if any
        current: Record written by the change
        adopted: The resource already existed and was adopted instead of created
        state_only: Only the state record changed; no provider call was made
        late: The call completed after its entry had already timed out
    """

    entry: ChangeSetEntry
    previous: Optional[StateRecord]
    current: StateRecord
    adopted: bool = False
    state_only: bool = False
    late: bool = False


@dataclass
class RollbackStep:
    """Outcome of compensating one completed change."""

    logical_name: str
    compensated: bool
    orphaned: bool = False
    error: Optional[EngineError] = None
    detail: Optional[str] = None


class RollbackManager:
    """Reverts completed changes in reverse completion order."""

    def __init__(self, caller: ProviderCaller, state: StackState, operation_timeout: float):
        """Initialize rollback manager.

        Args:
            caller: Provider call wrapper shared with the forward pass
            state: Working state; records are restored in place
            operation_timeout: Seconds allowed for each compensating call
        """
        self.caller = caller
        self.state = state
        self.operation_timeout = operation_timeout
        self.logger = get_logger(__name__)

    def rollback(self, completions: List[CompletedChange]) -> Dict[str, RollbackStep]:
        """Compensate every completed change, newest first.

        Changes whose desired deletion policy is Retain are left in place and
        keep their record, so a later apply adopts them.

        Returns:
            Steps keyed by logical name
        """
        self.logger.info(f"Rolling back {len(completions)} completed changes...")
        steps: Dict[str, RollbackStep] = {}
        for change in reversed(completions):
            name = change.entry.logical_name
            if change.entry.is_retained and not change.state_only:
                steps[name] = self._orphan(change)
                continue
            try:
                self._compensate(change)
                steps[name] = RollbackStep(name, compensated=True)
                self.logger.info(f"Rolled back {name} ({change.entry.action.value})")
            except EngineError as e:
                self.logger.error(f"Failed to roll back {name}: {e}")
                current = self.state.get_record(name)
                if current is not None:
                    current.status = RecordStatus.FAILED
                steps[name] = RollbackStep(name, compensated=False, error=e)

        rolled_back = sum(1 for step in steps.values() if step.compensated)
        self.logger.info(
            f"Rollback finished: {rolled_back} reverted, "
            f"{sum(1 for s in steps.values() if s.orphaned)} orphaned, "
            f"{sum(1 for s in steps.values() if s.error)} failed"
        )
        return steps

    def _orphan(self, change: CompletedChange) -> RollbackStep:
        name = change.entry.logical_name
        detail = f"{change.current.physical_id} left in place by deletion policy Retain"
        if change.entry.action == ChangeAction.REPLACE and change.previous is not None:
            detail += f"; previous resource {change.previous.physical_id} also retained"
        self.logger.warning(f"Not rolling back {name}: {detail}")
        return RollbackStep(name, compensated=False, orphaned=True, detail=detail)

    def _deadline(self) -> float:
        return time.monotonic() + self.operation_timeout

    def _compensate(self, change: CompletedChange) -> None:
        entry = change.entry
        name = entry.logical_name
        current = change.current
        previous = change.previous

        if change.state_only:
            self._restore(name, previous)
            return

        if change.adopted or (entry.action == ChangeAction.UPDATE and previous is not None):
            if previous is not None and self._differs(previous, current):
                spec = ProviderSpec(
                    logical_name=name,
                    type_name=previous.type_name,
                    properties=previous.resolved_properties,
                    tags=previous.resolved_tags,
                    stack=self.state.stack_name,
                )
                self.caller.invoke(previous.type_name, name, "update", "rollback",
                                   self._deadline(), previous.physical_id, spec)
            self._restore(name, previous)
            return

        # CREATE, REPLACE, and UPDATE of a record that vanished: remove what we made
        self._delete(current)
        restored = previous if entry.action == ChangeAction.REPLACE else None
        self._restore(name, restored)

    def _delete(self, record: StateRecord) -> None:
        try:
            self.caller.invoke(record.type_name, record.logical_name, "delete", "rollback",
                               self._deadline(), record.physical_id)
        except NotFoundError:
            self.logger.info(f"{record.logical_name} ({record.physical_id}) already gone")

    def _restore(self, name: str, record: Optional[StateRecord]) -> None:
        if record is None:
            self.state.remove_record(name)
        else:
            self.state.put_record(record.model_copy(deep=True))

    @staticmethod
    def _differs(previous: StateRecord, current: StateRecord) -> bool:
        return (
            previous.resolved_properties != current.resolved_properties
            or previous.resolved_tags != current.resolved_tags
        )
