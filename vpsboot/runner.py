"""
Stage runner for vpsboot.

Walks the stage chain in declared order. For each stage:

1. A forced stage has its completion marker and owned parameters cleared
2. Its dependency must be marked completed in run state, else the run stops
3. A completed stage is skipped
4. Preconditions run; failure stops the run with nothing changed
5. The body runs action by action
6. Success: produced parameters are persisted, then the stage is marked completed
7. Failure: rollback runs (best effort), the marker is cleared, the run stops

Ordering comes entirely from durable run state, so a run interrupted at any
point (crash, kill, reboot) resumes correctly on the next invocation.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from vpsboot.config import BootstrapConfig
from vpsboot.errors import (
    ConfigError,
    DependencyViolationError,
    PreconditionError,
    RebootRequired,
    StageFailedError,
    VpsbootError,
)
from vpsboot.executor import CommandExecutor
from vpsboot.interruption import InterruptionHandler
from vpsboot.stages import find_stage
from vpsboot.stages.base import Stage, StageContext, StageResult, StageStatus
from vpsboot.state import InMemoryRunState, RunState


class RunOutcome(str, Enum):
    """Terminal outcome of one invocation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PRECONDITION_FAILED = "precondition_failed"
    DEPENDENCY_VIOLATION = "dependency_violation"
    AWAITING_REBOOT = "awaiting_reboot"


EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_PRECONDITION_FAILED = 3
EXIT_DEPENDENCY_VIOLATION = 4
EXIT_STATE_LOCKED = 5
EXIT_AWAITING_REBOOT = 10
EXIT_INTERNAL_ERROR = 70

EXIT_CODES = {
    RunOutcome.SUCCEEDED: EXIT_OK,
    RunOutcome.FAILED: EXIT_STAGE_FAILED,
    RunOutcome.PRECONDITION_FAILED: EXIT_PRECONDITION_FAILED,
    RunOutcome.DEPENDENCY_VIOLATION: EXIT_DEPENDENCY_VIOLATION,
    RunOutcome.AWAITING_REBOOT: EXIT_AWAITING_REBOOT,
}


@dataclass
class RunResult:
    """Result of one runner invocation."""

    outcome: RunOutcome
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    stages: Dict[str, StageResult] = field(default_factory=dict)
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    instructions: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == RunOutcome.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "stages": {sid: result.to_dict() for sid, result in self.stages.items()},
            "error_message": self.error_message,
            "failed_stage": self.failed_stage,
            "instructions": self.instructions,
            "dry_run": self.dry_run,
        }


class StageRunner:
    """
    Runs a linear chain of stages against durable run state.

    The runner is the only writer of run state. In dry-run mode it works on
    an in-memory snapshot, so dependency checks behave as in a real run while
    nothing reaches disk.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        state: RunState,
        config: BootstrapConfig,
        executor: Optional[CommandExecutor] = None,
        logger: Optional[logging.Logger] = None,
        confirm: Optional[Callable[[str, bool], bool]] = None,
    ):
        """
        Initialize runner.

        Args:
            stages: Stage chain in declared order
            state: Durable run state
            config: Bootstrap configuration
            executor: Host command executor (default honours config.dry_run)
            logger: Logger for stage transitions
            confirm: Yes/no prompt used by stages in interactive mode

        Raises:
            ConfigError: On duplicate stage ids or an unknown force target
        """
        self.stages = list(stages)
        self.state = state
        self.config = config
        self.logger = logger or logging.getLogger("vpsboot")
        self.executor = executor or CommandExecutor(dry_run=config.dry_run, logger=self.logger)
        self.confirm = confirm

        ids = [s.stage_id for s in self.stages]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate stage ids: {', '.join(duplicates)}")

        self.force_id = self._resolve_force(config.force_stage)

    def _resolve_force(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        stage = find_stage(self.stages, key)
        if stage is not None:
            return stage.stage_id
        raise ConfigError(f"Unknown stage for --force: {key}")

    def run(self) -> RunResult:
        """
        Run the stage chain.

        Returns:
            RunResult describing the outcome

        Raises:
            StateError: If run state cannot be locked, read, or written
        """
        if self.config.dry_run:
            return self._run()
        with self.state.locked():
            return self._run()

    def _run(self) -> RunResult:
        started_at = datetime.now(timezone.utc)
        start_time = time.monotonic()
        dry_run = self.config.dry_run

        state = InMemoryRunState.snapshot(self.state) if dry_run else self.state
        interruption = InterruptionHandler(
            state,
            self.executor,
            self.config.system,
            self.logger,
            auto_reboot=self.config.auto_reboot and not dry_run,
        )
        results: Dict[str, StageResult] = {}

        def finish(
            outcome: RunOutcome,
            error: Optional[str] = None,
            failed_stage: Optional[str] = None,
            instructions: Optional[List[str]] = None,
        ) -> RunResult:
            result = RunResult(
                outcome=outcome,
                started_at=started_at,
                ended_at=datetime.now(timezone.utc),
                duration_seconds=time.monotonic() - start_time,
                stages=results,
                error_message=error,
                failed_stage=failed_stage,
                instructions=instructions or [],
                dry_run=dry_run,
            )
            level = logging.INFO if outcome in (RunOutcome.SUCCEEDED, RunOutcome.AWAITING_REBOOT) else logging.ERROR
            self.logger.log(
                level,
                f"Run finished: {outcome.value}",
                extra={
                    "event": "run_finished",
                    "metadata": {
                        "outcome": outcome.value,
                        "exit_code": result.exit_code,
                        "failed_stage": failed_stage,
                        "duration_seconds": result.duration_seconds,
                    },
                },
            )
            return result

        self.logger.info(
            f"Starting run: {len(self.stages)} stages",
            extra={
                "event": "run_started",
                "metadata": {
                    "stages": [s.stage_id for s in self.stages],
                    "force": self.force_id,
                    "dry_run": dry_run,
                },
            },
        )

        if not interruption.check_resume():
            return finish(
                RunOutcome.AWAITING_REBOOT,
                error="host has not rebooted yet",
                instructions=interruption.resume_instructions(),
            )

        for stage in self.stages:
            result = StageResult(stage_id=stage.stage_id, name=stage.name)
            results[stage.stage_id] = result

            if stage.stage_id == self.force_id:
                self._force(stage, state)

            if stage.depends_on and not state.is_completed(stage.depends_on):
                error = DependencyViolationError(stage.stage_id, stage.depends_on)
                result.status = StageStatus.FAILED
                result.error_message = str(error)
                self.logger.error(
                    str(error),
                    extra={
                        "stage": stage.stage_id,
                        "event": "dependency_violation",
                        "metadata": {"depends_on": stage.depends_on},
                    },
                )
                return finish(RunOutcome.DEPENDENCY_VIOLATION, str(error), stage.stage_id)

            if state.is_completed(stage.stage_id):
                result.status = StageStatus.SKIPPED
                self.logger.info(
                    f"Stage {stage.stage_id} ({stage.name}) already completed, skipping",
                    extra={"stage": stage.stage_id, "event": "stage_skipped"},
                )
                continue

            outcome, detail = self._run_stage(stage, state, interruption, result)
            if outcome == RunOutcome.AWAITING_REBOOT:
                return finish(outcome, detail, instructions=interruption.resume_instructions())
            if outcome is not None:
                return finish(outcome, detail, stage.stage_id)

        return finish(RunOutcome.SUCCEEDED)

    def _force(self, stage: Stage, state: RunState) -> None:
        state.clear_completion(stage.stage_id)
        for key in stage.produces:
            state.delete_parameter(key)
        self.logger.warning(
            f"Forcing re-run of {stage.stage_id} ({stage.name})",
            extra={
                "stage": stage.stage_id,
                "event": "stage_forced",
                "metadata": {"cleared_parameters": list(stage.produces)},
            },
        )

    def _context(self, stage: Stage, state: RunState) -> StageContext:
        executor = self.executor
        if stage.run_as:
            principal = state.get_parameter(stage.run_as)
            if not principal:
                raise VpsbootError(
                    f"Stage {stage.stage_id} runs as run parameter {stage.run_as!r}, which is not set"
                )
            executor = executor.for_user(principal)
        return StageContext(
            self.config,
            state,
            executor,
            self.logger,
            stage.stage_id,
            confirm=self.confirm if self.config.interactive else None,
        )

    def _run_stage(self, stage: Stage, state: RunState, interruption: InterruptionHandler, result: StageResult):
        """
        Run one pending stage.

        Returns:
            (None, None) on success, otherwise (terminal outcome, error message)
        """
        result.status = StageStatus.RUNNING
        result.started_at = datetime.now(timezone.utc)
        start_time = time.monotonic()

        self.logger.info(
            f"Starting stage {stage.stage_id} ({stage.name}): {stage.description}",
            extra={"stage": stage.stage_id, "event": "stage_started"},
        )

        def close(status: StageStatus) -> None:
            result.status = status
            result.ended_at = datetime.now(timezone.utc)
            result.duration_seconds = time.monotonic() - start_time

        try:
            ctx = self._context(stage, state)
        except VpsbootError as e:
            close(StageStatus.FAILED)
            result.error_message = str(e)
            self.logger.error(
                str(e),
                extra={"stage": stage.stage_id, "event": "stage_failed"},
            )
            state.clear_completion(stage.stage_id)
            return RunOutcome.FAILED, str(e)

        try:
            stage.preconditions(ctx)
        except PreconditionError as e:
            close(StageStatus.FAILED)
            result.error_message = str(e)
            self.logger.error(
                f"Stage {stage.stage_id} preconditions failed; nothing was changed",
                extra={
                    "stage": stage.stage_id,
                    "event": "preconditions_failed",
                    "metadata": {"failures": [f.to_dict() for f in e.failures]},
                },
            )
            return RunOutcome.PRECONDITION_FAILED, str(e)

        try:
            result.actions_completed = stage.execute(ctx)

        except RebootRequired as e:
            self._commit(stage, ctx, state, result)
            close(StageStatus.SUSPENDED)
            interruption.suspend(stage.stage_id, e.reason)
            return RunOutcome.AWAITING_REBOOT, e.reason

        except Exception as e:
            close(StageStatus.FAILED)
            result.error_message = str(e)
            self.logger.error(
                f"Stage {stage.stage_id} failed: {e}",
                extra={
                    "stage": stage.stage_id,
                    "event": "stage_failed",
                    "metadata": {
                        "action": e.action if isinstance(e, StageFailedError) else None,
                        "error": str(e),
                    },
                },
                exc_info=True,
            )
            self._rollback(stage, ctx, result)
            state.clear_completion(stage.stage_id)
            return RunOutcome.FAILED, str(e)

        self._commit(stage, ctx, state, result)
        close(StageStatus.COMPLETED)
        self.logger.info(
            f"Stage {stage.stage_id} ({stage.name}) completed",
            extra={
                "stage": stage.stage_id,
                "event": "stage_completed",
                "metadata": {
                    "duration_seconds": result.duration_seconds,
                    "actions": result.actions_completed,
                    "parameters": result.parameters,
                },
            },
        )
        return None, None

    def _commit(self, stage: Stage, ctx: StageContext, state: RunState, result: StageResult) -> None:
        """Persist produced parameters, then the completion marker."""
        for key, value in ctx.produced.items():
            state.set_parameter(key, value)
        state.mark_completed(stage.stage_id)
        result.parameters = dict(ctx.produced)

    def _rollback(self, stage: Stage, ctx: StageContext, result: StageResult) -> None:
        """Run the stage's rollback; failures are reported, never raised."""
        self.logger.warning(
            f"Rolling back stage {stage.stage_id} ({stage.name})",
            extra={"stage": stage.stage_id, "event": "rollback_started"},
        )
        try:
            stage.rollback(ctx)
        except Exception as e:
            result.rollback_error = str(e)
            self.logger.warning(
                f"Rollback of {stage.stage_id} failed: {e}",
                extra={
                    "stage": stage.stage_id,
                    "event": "rollback_failed",
                    "metadata": {"error": str(e)},
                },
                exc_info=True,
            )
            return
        self.logger.info(
            f"Rollback of {stage.stage_id} completed",
            extra={"stage": stage.stage_id, "event": "rollback_completed"},
        )
