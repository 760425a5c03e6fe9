"""
Error classes for vpsboot.

These error types classify failures at the stage boundary:
- PreconditionError: host unsuitable, nothing was changed, no rollback
- DependencyViolationError: prerequisite stage not completed (corrupt/forced state)
- StageFailedError: a stage action failed, rollback runs and the run stops
- RollbackError: compensation failed, reported but never replaces the cause
- RebootRequired: controlled interruption, not a failure

StateError is the one family the runner does not handle: losing the ability
to persist progress terminates the process loudly.
"""

from typing import Optional, Sequence


class VpsbootError(Exception):
    """Base exception for vpsboot."""
    pass


class ConfigError(VpsbootError):
    """Configuration validation error."""
    pass


class CommandError(VpsbootError):
    """
    A host command returned a non-zero exit status.

    Raised by the executor so stage actions fail as exceptions,
    never as return values.
    """

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({returncode}): {' '.join(self.cmd)}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class PreconditionError(VpsbootError):
    """
    One or more precondition checks failed.

    Attributes:
        failures: The failing CheckResult objects
    """

    def __init__(self, failures: Sequence):
        self.failures = list(failures)
        reasons = "; ".join(f"{f.name}: {f.reason}" for f in self.failures)
        super().__init__(f"Precondition checks failed: {reasons}")


class DependencyViolationError(VpsbootError):
    """A stage was reached before the stage it depends on completed."""

    def __init__(self, stage_id: str, missing: str):
        self.stage_id = stage_id
        self.missing = missing
        super().__init__(
            f"Stage {stage_id} depends on {missing}, which is not marked completed"
        )


class StageFailedError(VpsbootError):
    """
    A stage body failed.

    Attributes:
        stage_id: Failing stage
        action: Name of the sub-action that failed (if known)
        cause: Original exception
    """

    def __init__(self, stage_id: str, action: Optional[str], cause: BaseException):
        self.stage_id = stage_id
        self.action = action
        self.cause = cause
        where = f"{stage_id}/{action}" if action else stage_id
        super().__init__(f"Stage {where} failed: {cause}")


class RollbackError(VpsbootError):
    """Rollback of a failed stage did not complete."""
    pass


class StateError(VpsbootError):
    """Run state could not be read or written."""
    pass


class StateLockedError(StateError):
    """Another vpsboot run holds the run state lock."""
    pass


class RebootRequired(VpsbootError):
    """
    The host must reboot before the run can continue.

    Not a failure: the runner commits the raising stage and exits
    with the awaiting-reboot outcome.
    """

    def __init__(self, stage_id: str, reason: str = "system reboot required"):
        self.stage_id = stage_id
        self.reason = reason
        super().__init__(f"{stage_id}: {reason}")
