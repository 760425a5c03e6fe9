"""
RunState - Persist bootstrap progress across processes and reboots.

The RunState records:
- Completion markers (one per stage id)
- Run parameters (small key=value pairs shared between stages)

Storage backends:
- In-memory (for testing)
- File-based (the real thing)

File format is plain text, one entry per line:

    # vpsboot run state
    STAGE_1
    STAGE_2
    admin_user=deploy

A bare line is a completion marker keyed by the stage id, a key=value line is
a run parameter. Deleting the file forces a full fresh run.
"""

import fcntl
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from vpsboot.errors import StateError, StateLockedError


HEADER = "# vpsboot run state"

KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")

logger = logging.getLogger("vpsboot.state")


def _check_key(key: str, kind: str) -> None:
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Invalid {kind}: {key!r}")


class RunState(ABC):
    """
    Abstract base class for run state storage.

    Implementations must provide durable completion markers and
    last-write-wins run parameters. The Stage Runner is the only writer.
    """

    @abstractmethod
    def is_completed(self, stage_id: str) -> bool:
        """
        Check whether a stage is marked completed.

        Never raises: a missing or unreadable record means False.
        """
        pass

    @abstractmethod
    def mark_completed(self, stage_id: str) -> None:
        """
        Mark a stage completed.

        Idempotent: marking twice leaves a single marker.
        """
        pass

    @abstractmethod
    def clear_completion(self, stage_id: str) -> None:
        """Remove a stage's completion marker, leaving parameters untouched."""
        pass

    @abstractmethod
    def set_parameter(self, key: str, value: str) -> None:
        """Set a run parameter (last write wins)."""
        pass

    @abstractmethod
    def get_parameter(self, key: str) -> Optional[str]:
        """Get a run parameter, or None if absent."""
        pass

    @abstractmethod
    def delete_parameter(self, key: str) -> None:
        """Remove a run parameter if present."""
        pass

    @abstractmethod
    def completed_stages(self) -> List[str]:
        """Get completed stage ids in the order they were marked."""
        pass

    @abstractmethod
    def parameters(self) -> Dict[str, str]:
        """Get a copy of all run parameters."""
        pass

    @abstractmethod
    def reset(self) -> None:
        """Forget everything (full fresh run)."""
        pass

    def lock(self) -> None:
        """Acquire exclusive ownership of this state (no-op by default)."""

    def unlock(self) -> None:
        """Release exclusive ownership of this state (no-op by default)."""

    @contextmanager
    def locked(self) -> Iterator["RunState"]:
        """Hold the state lock for the duration of a block."""
        self.lock()
        try:
            yield self
        finally:
            self.unlock()


class InMemoryRunState(RunState):
    """
    In-memory implementation of RunState for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._completed: List[str] = []
        self._params: Dict[str, str] = {}

    @classmethod
    def snapshot(cls, state: RunState) -> "InMemoryRunState":
        """Copy another state so writes can be simulated without touching it."""
        copy = cls()
        copy._completed = state.completed_stages()
        copy._params = state.parameters()
        return copy

    def is_completed(self, stage_id: str) -> bool:
        return stage_id in self._completed

    def mark_completed(self, stage_id: str) -> None:
        _check_key(stage_id, "stage id")
        if stage_id not in self._completed:
            self._completed.append(stage_id)

    def clear_completion(self, stage_id: str) -> None:
        if stage_id in self._completed:
            self._completed.remove(stage_id)

    def set_parameter(self, key: str, value: str) -> None:
        _check_key(key, "parameter key")
        if "\n" in str(value):
            raise ValueError(f"Parameter {key!r} value must be a single line")
        self._params[key] = str(value)

    def get_parameter(self, key: str) -> Optional[str]:
        return self._params.get(key)

    def delete_parameter(self, key: str) -> None:
        self._params.pop(key, None)

    def completed_stages(self) -> List[str]:
        return list(self._completed)

    def parameters(self) -> Dict[str, str]:
        return dict(self._params)

    def reset(self) -> None:
        self._completed.clear()
        self._params.clear()


class FileRunState(RunState):
    """
    File-based implementation of RunState.

    Every write rewrites the whole file through a temp file that is fsynced
    and atomically renamed into place, so a reboot at any moment leaves
    either the old or the new content on disk, never a torn file.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_fd: Optional[int] = None

    def is_completed(self, stage_id: str) -> bool:
        try:
            completed, _ = self._read()
        except StateError as e:
            logger.warning(f"Treating unreadable run state as empty: {e}")
            return False
        return stage_id in completed

    def mark_completed(self, stage_id: str) -> None:
        _check_key(stage_id, "stage id")
        completed, params = self._read()
        if stage_id in completed:
            return
        completed.append(stage_id)
        self._write(completed, params)

    def clear_completion(self, stage_id: str) -> None:
        completed, params = self._read()
        if stage_id not in completed:
            return
        completed.remove(stage_id)
        self._write(completed, params)

    def set_parameter(self, key: str, value: str) -> None:
        _check_key(key, "parameter key")
        value = str(value)
        if "\n" in value:
            raise ValueError(f"Parameter {key!r} value must be a single line")
        completed, params = self._read()
        if params.get(key) == value:
            return
        params[key] = value
        self._write(completed, params)

    def get_parameter(self, key: str) -> Optional[str]:
        _, params = self._read()
        return params.get(key)

    def delete_parameter(self, key: str) -> None:
        completed, params = self._read()
        if key not in params:
            return
        del params[key]
        self._write(completed, params)

    def completed_stages(self) -> List[str]:
        completed, _ = self._read()
        return completed

    def parameters(self) -> Dict[str, str]:
        _, params = self._read()
        return params

    def reset(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StateError(f"Could not remove run state {self.path}: {e}")

    def lock(self) -> None:
        """
        Take an exclusive, non-blocking lock on the sibling .lock file.

        Raises:
            StateLockedError: If another process holds the lock
            StateError: If the lock file cannot be opened
        """
        if self._lock_fd is not None:
            return
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise StateError(f"Could not open lock file {self.lock_path}: {e}")

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = os.read(fd, 32).decode(errors="replace").strip() or "unknown"
            os.close(fd)
            raise StateLockedError(
                f"Run state {self.path} is locked by another vpsboot run (pid {holder})"
            )

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._lock_fd = fd

    def unlock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def _read(self) -> Tuple[List[str], Dict[str, str]]:
        """Parse the state file into (completed, parameters)."""
        completed: List[str] = []
        params: Dict[str, str] = {}

        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return completed, params
        except (OSError, UnicodeDecodeError) as e:
            raise StateError(f"Could not read run state {self.path}: {e}")

        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, value = line.split("=", 1)
                params[key.strip()] = value.strip()
            elif line not in completed:
                completed.append(line)

        return completed, params

    def _write(self, completed: List[str], params: Dict[str, str]) -> None:
        """Atomically replace the state file."""
        lines = [HEADER]
        lines.extend(completed)
        lines.extend(f"{key}={value}" for key, value in params.items())
        content = "\n".join(lines) + "\n"

        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            dir_fd = os.open(directory, os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError as e:
            raise StateError(f"Could not write run state {self.path}: {e}")
