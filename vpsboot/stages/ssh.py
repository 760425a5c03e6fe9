"""
SSH stage: harden the SSH daemon with a rendered drop-in.

The drop-in is generated whole from SshSettings; the distribution's
sshd_config is never edited.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from vpsboot.errors import VpsbootError
from vpsboot.render import render_sshd_dropin
from vpsboot.stages.account import ADMIN_USER_KEY
from vpsboot.stages.base import Action, Stage, StageContext


class SshStage(Stage):
    """Key-only SSH on the configured port, admin account only."""

    stage_id = "STAGE_3"
    name = "ssh"
    description = "Render sshd drop-in, validate, restart ssh"
    depends_on = "STAGE_2"

    def __init__(self, config):
        super().__init__(config)
        self._dropin_written: Optional[Path] = None
        self._previous_dropin: Optional[str] = None

    def actions(self, ctx: StageContext) -> List[Action]:
        self._dropin_written = None
        self._previous_dropin = None
        return [
            Action("verify admin key access", self._verify_keys),
            Action("verify include directive", self._verify_include),
            Action("write drop-in", self._write_dropin),
            Action("validate sshd config", self._validate),
            Action("verify effective settings", self._verify_effective),
            Action("restart ssh", self._restart),
        ]

    def _admin_user(self, ctx: StageContext) -> str:
        user = ctx.get_parameter(ADMIN_USER_KEY)
        if not user:
            raise VpsbootError(f"Run parameter {ADMIN_USER_KEY} is not set")
        return user

    def _verify_keys(self, ctx: StageContext) -> None:
        # Disabling password login without a key in place locks the operator out
        user = self._admin_user(ctx)
        keys = Path(self.config.account.home_root) / user / ".ssh" / "authorized_keys"
        if ctx.executor.dry_run and not keys.exists():
            return
        if not keys.exists() or not keys.read_text().strip():
            raise VpsbootError(f"{keys} is missing or empty; not disabling password login")

    def _verify_include(self, ctx: StageContext) -> None:
        ssh = self.config.ssh
        dropin_dir = Path(ssh.dropin_path).parent
        try:
            main = Path(ssh.main_config).read_text()
        except OSError as e:
            raise VpsbootError(f"Cannot read {ssh.main_config}: {e}")

        for line in main.splitlines():
            parts = line.strip().split()
            if len(parts) >= 2 and parts[0].lower() == "include" and parts[1].startswith(str(dropin_dir)):
                return
        raise VpsbootError(
            f"{ssh.main_config} does not Include {dropin_dir}/*.conf; drop-in would be ignored"
        )

    def _write_dropin(self, ctx: StageContext) -> None:
        ssh = self.config.ssh
        content = render_sshd_dropin(ssh, allow_users=[self._admin_user(ctx)])
        target = Path(ssh.dropin_path)
        if target.exists() and target.read_text() == content:
            ctx.log(logging.INFO, f"{target} already up to date", "dropin_unchanged")
            return
        if target.exists():
            self._previous_dropin = target.read_text()
        ctx.executor.write_file(target, content, mode=0o644)
        self._dropin_written = target

    def _validate(self, ctx: StageContext) -> None:
        ctx.executor.run(["sshd", "-t"])

    def expected_settings(self) -> Dict[str, str]:
        """Settings `sshd -T` must report once the drop-in is in effect."""
        ssh = self.config.ssh
        return {
            "port": str(ssh.port),
            "permitrootlogin": "yes" if ssh.permit_root_login else "no",
            "passwordauthentication": "yes" if ssh.password_authentication else "no",
        }

    def _verify_effective(self, ctx: StageContext) -> None:
        # sshd keeps the first value it reads, so an earlier drop-in can override ours
        if ctx.executor.dry_run:
            return
        effective: Dict[str, List[str]] = {}
        for line in ctx.executor.query(["sshd", "-T"]).stdout.splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) == 2:
                effective.setdefault(parts[0].lower(), []).append(parts[1].strip())

        wrong = [
            f"{key} is {', '.join(effective[key])} (want {value})"
            for key, value in self.expected_settings().items()
            if key in effective and value not in effective[key]
        ]
        if wrong:
            raise VpsbootError(
                f"Effective sshd settings differ from {self.config.ssh.dropin_path}: {'; '.join(wrong)}. "
                f"Another file under {Path(self.config.ssh.dropin_path).parent} or {self.config.ssh.main_config} "
                "sets them first."
            )

    def _restart(self, ctx: StageContext) -> None:
        ctx.executor.run(["systemctl", "daemon-reload"])
        ctx.executor.run(["systemctl", "restart", self.config.ssh.service])
        ctx.log(
            logging.INFO,
            f"SSH listening on port {self.config.ssh.port}",
            "ssh_restarted",
            port=self.config.ssh.port,
        )

    def rollback(self, ctx: StageContext) -> None:
        """Put back the drop-in this attempt replaced and restart ssh on the old settings."""
        if self._dropin_written is None:
            super().rollback(ctx)
            return
        if self._previous_dropin is None:
            ctx.executor.remove_file(self._dropin_written)
            ctx.log(logging.WARNING, f"Removed {self._dropin_written}", "rollback_dropin_removed")
        else:
            ctx.executor.write_file(self._dropin_written, self._previous_dropin, mode=0o644)
            ctx.log(logging.WARNING, f"Restored previous {self._dropin_written}", "rollback_dropin_restored")
        ctx.executor.run(["systemctl", "restart", self.config.ssh.service])
