"""
Interruption handling: suspend a run for a reboot and resume it afterwards.

A stage that needs the host rebooted raises RebootRequired. The runner
commits that stage, then calls suspend(), which records a reboot-pending
sub-marker (the stage id plus the current kernel boot id) before anything
else happens. On the next invocation check_resume() compares boot ids: the
same id means the host never rebooted and the run stays suspended.
"""

import logging
from pathlib import Path
from typing import List, Optional

from vpsboot.config import SystemSettings
from vpsboot.executor import CommandExecutor
from vpsboot.state import RunState


PENDING_KEY = "reboot_pending"
BOOT_ID_KEY = "reboot_boot_id"


def reboot_required(settings: SystemSettings) -> bool:
    """Check whether the OS flags a pending reboot."""
    return Path(settings.reboot_required_file).exists()


def reboot_reason(settings: SystemSettings) -> str:
    """Describe why a reboot is needed, using the packages list if present."""
    pkgs_file = Path(str(settings.reboot_required_file) + ".pkgs")
    try:
        packages = sorted({p.strip() for p in pkgs_file.read_text().splitlines() if p.strip()})
    except OSError:
        packages = []
    if packages:
        return f"reboot required to finish updating: {', '.join(packages)}"
    return "reboot required to finish applying updates"


def read_boot_id(path: Path) -> Optional[str]:
    """Read the kernel boot id, or None if unavailable."""
    try:
        return Path(path).read_text().strip() or None
    except OSError:
        return None


class InterruptionHandler:
    """Turns "reboot required" into a clean, resumable exit."""

    def __init__(
        self,
        state: RunState,
        executor: CommandExecutor,
        settings: SystemSettings,
        logger: Optional[logging.Logger] = None,
        auto_reboot: bool = False,
    ):
        self.state = state
        self.executor = executor
        self.settings = settings
        self.logger = logger or logging.getLogger("vpsboot.interruption")
        self.auto_reboot = auto_reboot

    def pending_stage(self) -> Optional[str]:
        """Stage that suspended the run, if a reboot is pending."""
        return self.state.get_parameter(PENDING_KEY)

    def resume_instructions(self) -> List[str]:
        return [
            "Reboot the host:  sudo reboot",
            "After it comes back, run:  sudo vpsboot run",
            "Completed stages are skipped; the run resumes at the next stage.",
        ]

    def suspend(self, stage_id: str, reason: str) -> List[str]:
        """
        Record the reboot-pending sub-marker and tell the operator what to do.

        Must be called after the suspending stage is committed.

        Returns:
            Resume instructions
        """
        self.state.set_parameter(PENDING_KEY, stage_id)
        boot_id = read_boot_id(self.settings.boot_id_file)
        if boot_id:
            self.state.set_parameter(BOOT_ID_KEY, boot_id)

        instructions = self.resume_instructions()
        self.logger.warning(
            f"Run suspended after {stage_id}: {reason}",
            extra={
                "stage": stage_id,
                "event": "run_suspended",
                "metadata": {"reason": reason, "boot_id": boot_id, "instructions": instructions},
            },
        )

        if self.auto_reboot:
            self.logger.warning(
                "Rebooting host now",
                extra={"stage": stage_id, "event": "reboot_requested"},
            )
            self.executor.run(["systemctl", "reboot"])

        return instructions

    def check_resume(self) -> bool:
        """
        Decide whether a suspended run may continue.

        Returns:
            True if no reboot is pending or the host has rebooted since the
            suspend (the sub-marker is cleared), False if still waiting
        """
        pending = self.pending_stage()
        if not pending:
            return True

        recorded = self.state.get_parameter(BOOT_ID_KEY)
        current = read_boot_id(self.settings.boot_id_file)

        if recorded and current and recorded == current:
            self.logger.warning(
                f"Host has not rebooted since {pending} requested it",
                extra={
                    "stage": pending,
                    "event": "reboot_still_pending",
                    "metadata": {"boot_id": current},
                },
            )
            return False

        self.state.delete_parameter(PENDING_KEY)
        self.state.delete_parameter(BOOT_ID_KEY)
        self.logger.info(
            f"Resuming after reboot requested by {pending}",
            extra={"stage": pending, "event": "run_resumed", "metadata": {"boot_id": current}},
        )
        return True
