"""Durable JSON snapshots of reconciliation runs."""

import fcntl
import json
import os
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from tierstack.state.models import RunStatus, StateSnapshot
from tierstack.state.store import StateStore
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)


class StateError(Exception):
    """Base exception for state management errors."""

    pass


class StateLockError(StateError):
    """Another process is reconciling the same project environment."""

    pass


class StateNotFoundError(StateError):
    """No run has been recorded yet."""

    pass


class StateManager:
    """Reads and writes the snapshot file of one project environment.

    Writers hold an advisory ``flock`` on a sibling ``.lock`` file, so two
    applies against the same environment cannot interleave their snapshots.
    The lock file records the PID of its holder for error messages.
    """

    POLL_INTERVAL = 0.1

    def __init__(self, state_path: str):
        """
        Args:
            state_path: Path to the JSON snapshot file
        """
        self.state_path = Path(state_path)
        self.lock_path = self.state_path.with_suffix('.lock')
        self._lock_fd: Optional[int] = None

    def snapshot(
        self,
        store: StateStore,
        plan_name: str,
        project: Optional[str] = None,
        environment: Optional[str] = None,
        status: Optional[RunStatus] = None,
        operation: str = "apply",
    ) -> StateSnapshot:
        """Build a snapshot of a store without writing it."""
        return StateSnapshot(
            plan_name=plan_name,
            operation=operation,
            project=project,
            environment=environment,
            status=status,
            resources=store.all(),
            record=store.record.entries(),
        )

    def save(self, snapshot: StateSnapshot) -> None:
        """Replace the snapshot file atomically.

        The new content is written and fsynced to a sibling file first, so a
        crash mid-write leaves the previous snapshot intact.

        Raises:
            StateError: If the snapshot cannot be written
        """
        partial = self.state_path.with_suffix('.partial')
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, 'w') as f:
                json.dump(snapshot.model_dump(mode='json'), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(partial, self.state_path)
        except OSError as e:
            raise StateError(f"Could not write {self.state_path}: {e}") from e

        logger.debug(f"Saved {snapshot.operation} snapshot of {snapshot.plan_name} to {self.state_path}")

    def save_store(self, store: StateStore, plan_name: str, **kwargs) -> StateSnapshot:
        """Snapshot a store and save it in one step."""
        snapshot = self.snapshot(store, plan_name, **kwargs)
        self.save(snapshot)
        return snapshot

    def load(self) -> StateSnapshot:
        """Read the last saved snapshot.

        Raises:
            StateNotFoundError: If nothing has been saved yet
            StateError: If the file is not a valid snapshot
        """
        try:
            raw = self.state_path.read_text()
        except FileNotFoundError:
            raise StateNotFoundError(f"No state recorded at {self.state_path}") from None

        try:
            return StateSnapshot.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            raise StateError(f"{self.state_path} is not valid JSON: {e}") from e
        except ValidationError as e:
            raise StateError(f"{self.state_path} is not a state snapshot: {e}") from e

    def exists(self) -> bool:
        return self.state_path.exists()

    def lock(self, timeout: float = 30) -> None:
        """Take the environment lock, polling until ``timeout`` seconds pass.

        Raises:
            StateLockError: If another process keeps holding the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        deadline = time.monotonic() + timeout

        while not self._try_flock(fd):
            if time.monotonic() >= deadline:
                holder = self._read_holder(fd)
                os.close(fd)
                raise StateLockError(
                    f"{self.state_path} is locked by another run"
                    + (f" (pid {holder})" if holder else "")
                    + f", gave up after {timeout}s"
                )
            time.sleep(self.POLL_INTERVAL)

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._lock_fd = fd

    def unlock(self) -> None:
        """Release the environment lock if this manager holds it."""
        fd, self._lock_fd = self._lock_fd, None
        if fd is None:
            return
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _try_flock(fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    @staticmethod
    def _read_holder(fd: int) -> str:
        os.lseek(fd, 0, os.SEEK_SET)
        return os.read(fd, 32).decode(errors='replace').strip()

    def __enter__(self):
        self.lock()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unlock()
