"""
System stage: preconditions, package updates, base packages.

The first stage. It is the only one with preconditions, and the only one
that may suspend the run for a reboot.
"""

import logging
from typing import List

from vpsboot.errors import RebootRequired
from vpsboot.interruption import reboot_reason, reboot_required
from vpsboot.preconditions import run_preconditions
from vpsboot.stages.base import Action, Stage, StageContext
from vpsboot.tools.apt import AptAdapter


class SystemStage(Stage):
    """Check the host, apply updates, install base tooling."""

    stage_id = "STAGE_1"
    name = "system"
    description = "Preconditions, apt update/upgrade, base packages"
    depends_on = None

    def preconditions(self, ctx: StageContext) -> None:
        run_preconditions(self.config.preconditions, ctx.logger, stage_id=self.stage_id)

    def actions(self, ctx: StageContext) -> List[Action]:
        actions = [Action("update package index", self._update)]
        if self.config.system.upgrade:
            actions.append(Action("upgrade packages", self._upgrade))
        actions.append(Action("install base packages", self._install_base))
        actions.append(Action("check reboot flag", self._check_reboot))
        return actions

    def _update(self, ctx: StageContext) -> None:
        AptAdapter(ctx.executor).update()

    def _upgrade(self, ctx: StageContext) -> None:
        AptAdapter(ctx.executor).upgrade()

    def _install_base(self, ctx: StageContext) -> None:
        installed = AptAdapter(ctx.executor).install(self.config.system.base_packages)
        if installed:
            ctx.log(logging.INFO, f"Installed {', '.join(installed)}", "packages_installed", packages=installed)

    def _check_reboot(self, ctx: StageContext) -> None:
        if reboot_required(self.config.system):
            raise RebootRequired(self.stage_id, reboot_reason(self.config.system))
