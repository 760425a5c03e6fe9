"""Docker stage: container runtime and compose plugin."""

from typing import List

from vpsboot.errors import VpsbootError
from vpsboot.stages.account import ADMIN_USER_KEY
from vpsboot.stages.base import Action, Stage, StageContext
from vpsboot.tools.apt import AptAdapter


class DockerStage(Stage):
    """Install Docker, let the admin account use it, enable the service."""

    stage_id = "STAGE_6"
    name = "docker"
    description = "Install docker + compose, docker group, enable service"
    depends_on = "STAGE_5"

    def actions(self, ctx: StageContext) -> List[Action]:
        return [
            Action("install docker", self._install),
            Action("add admin to docker group", self._grant),
            Action("enable docker", self._enable),
        ]

    def _install(self, ctx: StageContext) -> None:
        AptAdapter(ctx.executor).install(self.config.deploy.docker_packages)

    def _grant(self, ctx: StageContext) -> None:
        user = ctx.get_parameter(ADMIN_USER_KEY)
        if not user:
            raise VpsbootError(f"Run parameter {ADMIN_USER_KEY} is not set")
        ctx.executor.run(["usermod", "-aG", "docker", user])

    def _enable(self, ctx: StageContext) -> None:
        ctx.executor.run(["systemctl", "enable", "--now", "docker"])
