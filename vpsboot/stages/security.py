"""
Security stages: Fail2Ban and UFW.
"""

import logging
from pathlib import Path
from typing import List, Optional

from vpsboot.render import render_jail_local
from vpsboot.stages.base import Action, Stage, StageContext
from vpsboot.tools.apt import AptAdapter


class Fail2BanStage(Stage):
    """Install Fail2Ban and protect sshd."""

    stage_id = "STAGE_4"
    name = "fail2ban"
    description = "Install fail2ban, render jail.local, restart"
    depends_on = "STAGE_3"

    def __init__(self, config):
        super().__init__(config)
        self._jail_written: Optional[Path] = None
        self._previous_jail: Optional[str] = None

    def actions(self, ctx: StageContext) -> List[Action]:
        self._jail_written = None
        self._previous_jail = None
        return [
            Action("install fail2ban", lambda c: AptAdapter(c.executor).install(["fail2ban"])),
            Action("write jail.local", self._write_jail),
            Action("restart fail2ban", self._restart),
        ]

    def _write_jail(self, ctx: StageContext) -> None:
        content = render_jail_local(self.config.fail2ban, self.config.ssh.port)
        target = Path(self.config.fail2ban.jail_path)
        if target.exists() and target.read_text() == content:
            return
        if target.exists():
            self._previous_jail = target.read_text()
        ctx.executor.write_file(target, content, mode=0o644)
        self._jail_written = target

    def _restart(self, ctx: StageContext) -> None:
        ctx.executor.run(["systemctl", "enable", "fail2ban"])
        ctx.executor.run(["systemctl", "restart", "fail2ban"])

    def rollback(self, ctx: StageContext) -> None:
        """Undo the jail.local change made by this attempt; the package stays installed."""
        if self._jail_written is None:
            super().rollback(ctx)
            return
        if self._previous_jail is None:
            ctx.executor.remove_file(self._jail_written)
        else:
            ctx.executor.write_file(self._jail_written, self._previous_jail, mode=0o644)
        ctx.executor.run(["systemctl", "restart", "fail2ban"], check=False)
        ctx.log(logging.WARNING, f"Rolled back {self._jail_written}", "rollback_jail")


class FirewallStage(Stage):
    """Install UFW, open SSH and web ports, enable."""

    stage_id = "STAGE_5"
    name = "firewall"
    description = "Install ufw, allow ssh/http/https, enable"
    depends_on = "STAGE_4"

    def actions(self, ctx: StageContext) -> List[Action]:
        return [
            Action("install ufw", lambda c: AptAdapter(c.executor).install(["ufw"])),
            Action("allow ports", self._allow),
            Action("enable ufw", self._enable),
        ]

    def rules(self) -> List[str]:
        rules = [f"{self.config.ssh.port}/tcp"]
        rules.extend(r for r in self.config.firewall.allowed if r not in rules)
        return rules

    def _allow(self, ctx: StageContext) -> None:
        for rule in self.rules():
            ctx.executor.run(["ufw", "allow", rule])

    def _enable(self, ctx: StageContext) -> None:
        ctx.executor.run(["ufw", "--force", "enable"])
        status = ctx.executor.query(["ufw", "status", "verbose"])
        ctx.log(logging.INFO, "UFW enabled", "ufw_enabled", rules=self.rules(), status=status.stdout)

    def rollback(self, ctx: StageContext) -> None:
        # Rules that let the operator in are never withdrawn
        ctx.log(
            logging.WARNING,
            f"Leaving firewall rules in place: {', '.join(self.rules())}",
            "rollback_noop",
        )
