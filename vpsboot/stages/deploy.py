"""
Deploy stage: hand the service topology to Docker Compose.

The compose file and env file are supplied by the operator. This stage
validates them, creates the named volumes, and brings the stack up as the
admin account.
"""

import logging
from pathlib import Path
from typing import List

from vpsboot.config import BootstrapConfig
from vpsboot.errors import CommandError, ConfigError, RollbackError
from vpsboot.executor import CommandExecutor
from vpsboot.render import render_caddyfile
from vpsboot.stages.account import ADMIN_USER_KEY
from vpsboot.stages.base import Action, Stage, StageContext
from vpsboot.tools.compose import ComposeAdapter


def compose_adapter(config: BootstrapConfig, executor: CommandExecutor) -> ComposeAdapter:
    """Build the compose adapter for the configured project."""
    deploy = config.deploy
    return ComposeAdapter(
        executor,
        compose_file=Path(deploy.compose_file).resolve(),
        env_file=Path(deploy.env_file).resolve(),
        project_name=deploy.project_name,
    )


def compose_profiles(config: BootstrapConfig) -> List[str]:
    return ["portainer"] if config.deploy.portainer else []


def validate_compose(adapter: ComposeAdapter, logger: logging.Logger) -> None:
    """
    Validate compose and env files, logging warnings.

    Raises:
        ConfigError: If validation fails
    """
    validation = adapter.validate()
    for warning in validation.get("warnings", []):
        logger.warning(
            f"Compose validation warning: {warning}",
            extra={"event": "validation_warning", "metadata": {"warning": warning}},
        )
    if not validation["valid"]:
        raise ConfigError(f"Compose validation failed: {'; '.join(validation['errors'])}")


def update_stack(config: BootstrapConfig, executor: CommandExecutor, logger: logging.Logger) -> None:
    """Pull newer images and recreate the stack (pull, down, up)."""
    adapter = compose_adapter(config, executor)
    validate_compose(adapter, logger)
    profiles = compose_profiles(config)

    logger.info("Pulling images", extra={"event": "compose_pull"})
    adapter.pull(profiles)
    logger.info("Stopping stack", extra={"event": "compose_down"})
    adapter.down(profiles)
    logger.info("Starting stack", extra={"event": "compose_up"})
    adapter.up(profiles)


class DeployStage(Stage):
    """Bring the n8n / PostgreSQL / Caddy stack up."""

    stage_id = "STAGE_7"
    name = "deploy"
    description = "Validate compose + env, create volumes, compose up"
    depends_on = "STAGE_6"
    run_as = ADMIN_USER_KEY

    def __init__(self, config):
        super().__init__(config)
        self._started = False

    def actions(self, ctx: StageContext) -> List[Action]:
        self._started = False
        actions = [Action("validate compose files", self._validate)]
        if self.config.deploy.render_caddyfile:
            actions.append(Action("render Caddyfile", self._caddyfile))
        actions.extend([
            Action("create volumes", self._volumes),
            Action("pull images", self._pull),
            Action("start stack", self._up),
        ])
        return actions

    def _adapter(self, ctx: StageContext) -> ComposeAdapter:
        return compose_adapter(self.config, ctx.executor)

    def _validate(self, ctx: StageContext) -> None:
        validate_compose(self._adapter(ctx), ctx.logger)

    def _caddyfile(self, ctx: StageContext) -> None:
        adapter = self._adapter(ctx)
        target = adapter.compose_file.parent / "Caddyfile"
        if target.exists():
            ctx.log(logging.INFO, f"Using existing {target}", "caddyfile_exists")
            return
        content = render_caddyfile(adapter.env, portainer=self.config.deploy.portainer)
        ctx.executor.write_file(target, content, mode=0o644, owner=ctx.executor.default_user)

    def _volumes(self, ctx: StageContext) -> None:
        adapter = self._adapter(ctx)
        for volume in self.config.deploy.volumes:
            if adapter.ensure_volume(volume):
                ctx.log(logging.INFO, f"Created volume {volume}", "volume_created", volume=volume)

    def _pull(self, ctx: StageContext) -> None:
        self._adapter(ctx).pull(compose_profiles(self.config))

    def _up(self, ctx: StageContext) -> None:
        self._started = True
        self._adapter(ctx).up(compose_profiles(self.config))

    def rollback(self, ctx: StageContext) -> None:
        """Bring the stack down if this attempt tried to start it. Volumes are kept."""
        if not self._started:
            super().rollback(ctx)
            return
        try:
            self._adapter(ctx).down(compose_profiles(self.config))
        except (CommandError, ValueError) as e:
            raise RollbackError(f"Could not bring the stack down: {e}") from e
        ctx.log(logging.WARNING, "Stack brought down", "rollback_stack_down")
