"""State management module for tracking applied resources."""

from .models import PendingDelete, RecordStatus, StackState, StateRecord, STATE_VERSION
from .store import FileStateStore, MemoryStateStore, StateStore, validate_stack_name

__all__ = [
    "PendingDelete",
    "RecordStatus",
    "StackState",
    "StateRecord",
    "STATE_VERSION",
    "StateStore",
    "FileStateStore",
    "MemoryStateStore",
    "validate_stack_name",
]
