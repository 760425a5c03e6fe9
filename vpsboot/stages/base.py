"""
Base classes for bootstrap stages.

All stages inherit from Stage. A stage body is an ordered list of Actions,
each idempotent, so a stage interrupted halfway can simply run again.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from vpsboot.config import BootstrapConfig
from vpsboot.errors import RebootRequired, StageFailedError
from vpsboot.executor import CommandExecutor
from vpsboot.state import RunState


class StageStatus(str, Enum):
    """Per-run lifecycle of a stage."""

    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"


@dataclass
class StageResult:
    """Result of one stage in one run."""

    stage_id: str
    name: str
    status: StageStatus = StageStatus.PENDING
    duration_seconds: float = 0.0
    actions_completed: List[str] = field(default_factory=list)
    parameters: Dict[str, str] = field(default_factory=dict)
    error_message: Optional[str] = None
    rollback_error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "actions_completed": self.actions_completed,
            "parameters": self.parameters,
            "error_message": self.error_message,
            "rollback_error": self.rollback_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass(frozen=True)
class Action:
    """One idempotent step of a stage body."""

    name: str
    func: Callable[["StageContext"], None]


class StageContext:
    """
    Everything a stage body may touch.

    Parameters set through the context are buffered and only persisted by
    the runner after the whole body succeeded.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        state: RunState,
        executor: CommandExecutor,
        logger: logging.Logger,
        stage_id: str,
        confirm: Optional[Callable[[str, bool], bool]] = None,
    ):
        self.config = config
        self.state = state
        self.executor = executor
        self.logger = logger
        self.stage_id = stage_id
        self.produced: Dict[str, str] = {}
        self._confirm = confirm

    def get_parameter(self, key: str) -> Optional[str]:
        """Get a run parameter, preferring values produced in this attempt."""
        if key in self.produced:
            return self.produced[key]
        return self.state.get_parameter(key)

    def set_parameter(self, key: str, value: str) -> None:
        self.produced[key] = str(value)

    def confirm(self, message: str, default: bool = True) -> bool:
        """Ask the operator a yes/no question (default when non-interactive)."""
        if self._confirm is None:
            return default
        return self._confirm(message, default)

    def log(self, level: int, message: str, event: str, **metadata: Any) -> None:
        self.logger.log(
            level,
            message,
            extra={"stage": self.stage_id, "event": event, "metadata": metadata},
        )


class Stage(ABC):
    """
    Abstract base class for bootstrap stages.

    Each stage must define:
    - stage_id / name: canonical id (completion key) and operator alias
    - depends_on: the single prior stage id, or None for the first stage
    - actions(): the ordered body

    and may override:
    - preconditions(): non-mutating checks before the body
    - rollback(): best-effort compensation after a failed body
    - produces: parameter keys this stage owns (cleared on forced re-run)
    - run_as: parameter key naming the account the body runs as
    """

    stage_id: str = ""
    name: str = ""
    description: str = ""
    depends_on: Optional[str] = None
    produces: Tuple[str, ...] = ()
    run_as: Optional[str] = None

    def __init__(self, config: BootstrapConfig):
        """
        Initialize stage.

        Args:
            config: Bootstrap configuration
        """
        self.config = config

    def preconditions(self, ctx: StageContext) -> None:
        """
        Check prerequisites before the body runs.

        Raises:
            PreconditionError: If the host is unsuitable
        """
        pass

    @abstractmethod
    def actions(self, ctx: StageContext) -> List[Action]:
        """
        Build the ordered list of actions forming the body.

        Returns:
            Actions to run in order
        """
        pass

    def execute(self, ctx: StageContext) -> List[str]:
        """
        Run the body action by action.

        Returns:
            Names of the actions that completed

        Raises:
            StageFailedError: If an action fails
            RebootRequired: If an action needs the host rebooted
        """
        completed: List[str] = []
        for action in self.actions(ctx):
            ctx.log(logging.DEBUG, f"{self.stage_id}: {action.name}", "action_started", action=action.name)
            try:
                action.func(ctx)
            except RebootRequired:
                raise
            except Exception as e:
                raise StageFailedError(self.stage_id, action.name, e) from e
            completed.append(action.name)
            ctx.log(logging.INFO, f"{self.stage_id}: {action.name} done", "action_completed", action=action.name)
        return completed

    def rollback(self, ctx: StageContext) -> None:
        """
        Compensate for a failed body.

        The default only records that there is nothing to undo.
        """
        ctx.log(
            logging.WARNING,
            f"Stage {self.stage_id} has no compensating action; host left as-is",
            "rollback_noop",
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.stage_id}, name={self.name}, depends_on={self.depends_on})"
