"""State stores for loading and atomically saving per-stack state."""

import fcntl
import json
import os
import re
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from stackweaver.state.models import StackState
from stackweaver.utils.errors import ErrorContext, StoreIOError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

_STACK_NAME = re.compile(r"^[A-Za-z][-A-Za-z0-9]{0,127}$")


def validate_stack_name(stack_name: str) -> str:
    """Stack names become file names, so they are restricted."""
    if not _STACK_NAME.match(stack_name or ""):
        raise StoreIOError(
            f"Invalid stack name '{stack_name}': must start with a letter and contain "
            f"only letters, digits and hyphens (max 128 characters)"
        )
    return stack_name


class StateStore(ABC):
    """Persists the record set of each stack."""

    @abstractmethod
    def load(self, stack_name: str) -> StackState:
        """Load stack state; an unknown stack yields an empty state."""

    @abstractmethod
    def save(self, state: StackState) -> None:
        """Persist the full state, all or nothing."""

    @abstractmethod
    def delete(self, stack_name: str) -> None:
        """Forget a stack entirely."""

    @abstractmethod
    def list_stacks(self) -> List[str]:
        """Names of stacks with persisted state."""

    def exists(self, stack_name: str) -> bool:
        return stack_name in self.list_stacks()


class MemoryStateStore(StateStore):
    """In-process store; copies on the way in and out."""

    def __init__(self):
        self._states: Dict[str, StackState] = {}
        self._lock = threading.Lock()

    def load(self, stack_name: str) -> StackState:
        with self._lock:
            state = self._states.get(stack_name)
            if state is None:
                return StackState(stack_name=stack_name)
            return state.model_copy(deep=True)

    def save(self, state: StackState) -> None:
        with self._lock:
            self._states[state.stack_name] = state.model_copy(deep=True)

    def delete(self, stack_name: str) -> None:
        with self._lock:
            self._states.pop(stack_name, None)

    def list_stacks(self) -> List[str]:
        with self._lock:
            return sorted(self._states)


class FileStateStore(StateStore):
    """One JSON document per stack, replaced atomically on save."""

    def __init__(self, state_dir: str, lock_timeout: float = 30.0):
        """
        Initialize FileStateStore.

        Args:
            state_dir: Directory holding <stack>.json files
            lock_timeout: Seconds to wait for the per-stack lock file
        """
        self.state_dir = Path(state_dir)
        self.lock_timeout = lock_timeout

    def _path(self, stack_name: str) -> Path:
        return self.state_dir / f"{validate_stack_name(stack_name)}.json"

    def load(self, stack_name: str) -> StackState:
        """
        Load state from file.

        Returns:
            StackState (empty if the stack has never been applied)

        Raises:
            StoreIOError: If the file is unreadable or corrupted
        """
        path = self._path(stack_name)
        if not path.exists():
            return StackState(stack_name=stack_name)

        try:
            with open(path, "r") as f:
                data = json.load(f)
            return StackState.from_dict(data)
        except json.JSONDecodeError as e:
            raise StoreIOError(
                f"Failed to parse state file {path}: {e}",
                context=ErrorContext(stack_name=stack_name),
                cause=e
            )
        except PydanticValidationError as e:
            raise StoreIOError(
                f"State file {path} does not match the expected layout",
                context=ErrorContext(stack_name=stack_name),
                cause=e
            )
        except OSError as e:
            raise StoreIOError(
                f"Failed to read state file {path}: {e}",
                context=ErrorContext(stack_name=stack_name),
                cause=e
            )

    def save(self, state: StackState) -> None:
        """
        Save state to file.

        The document is written to a temporary file in the same directory,
        flushed to disk and renamed over the previous file, so a concurrent
        or later load sees either the old or the new record set.

        Raises:
            StoreIOError: If state cannot be saved; the previous file is untouched
        """
        path = self._path(state.stack_name)
        context = ErrorContext(stack_name=state.stack_name, operation="save")
        try:
            payload = json.dumps(state.to_dict(), indent=2, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StoreIOError(f"State for {state.stack_name} is not serializable: {e}",
                               context=context, cause=e)

        temp_name = None
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with self._locked(state.stack_name):
                fd, temp_name = tempfile.mkstemp(
                    prefix=f".{state.stack_name}.", suffix=".tmp", dir=str(self.state_dir)
                )
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_name, path)
                temp_name = None
        except OSError as e:
            raise StoreIOError(f"Failed to save state file {path}: {e}",
                               context=context, cause=e)
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    logger.warning(f"Could not remove temporary state file {temp_name}")

        logger.debug(f"Saved state for stack {state.stack_name} ({len(state.records)} records)")

    def delete(self, stack_name: str) -> None:
        path = self._path(stack_name)
        if not self.state_dir.exists():
            return
        try:
            with self._locked(stack_name):
                if path.exists():
                    path.unlink()
        except OSError as e:
            raise StoreIOError(f"Failed to delete state file {path}: {e}",
                               context=ErrorContext(stack_name=stack_name), cause=e)

    def list_stacks(self) -> List[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.stem for p in self.state_dir.glob("*.json"))

    def _locked(self, stack_name: str) -> "_FileLock":
        return _FileLock(self.state_dir / f"{stack_name}.lock", self.lock_timeout)


class _FileLock:
    """Exclusive fcntl lock on a side file."""

    def __init__(self, lock_path: Path, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        self._fd: Optional[int] = None

    def __enter__(self):
        self._fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return self
            except BlockingIOError:
                if time.monotonic() - start_time > self.timeout:
                    os.close(self._fd)
                    self._fd = None
                    raise StoreIOError(
                        f"Failed to acquire lock {self.lock_path} after {self.timeout}s"
                    )
                time.sleep(0.1)

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
            finally:
                self._fd = None
