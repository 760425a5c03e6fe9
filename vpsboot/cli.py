"""
CLI interface for vpsboot.

Provides commands to bootstrap a fresh Ubuntu VPS and inspect progress.

The run is a fixed chain of stages (system, account, ssh, fail2ban, firewall,
docker, deploy). Progress is kept in a run state file, so `vpsboot run` can
be repeated after a failure or a reboot and continues where it stopped.
"""


import json

import click
from pathlib import Path

from vpsboot import __version__


EXIT_CONFIG_ERROR = 2


def _load(config_path, overrides=None):
    """Load configuration or exit with a readable message."""
    from vpsboot.config import load_config
    from vpsboot.errors import ConfigError

    try:
        return load_config(config_path, overrides)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)


def _logger(config, verbose: bool = False):
    from vpsboot.reporting import setup_logging

    settings = config.logging
    return setup_logging(
        Path(settings.file),
        log_level="DEBUG" if verbose else settings.level,
        log_format=settings.format,
        console_output=settings.console,
        max_bytes=settings.max_bytes,
        backup_count=settings.backup_count,
    )


def _confirm(message: str, default: bool) -> bool:
    return click.confirm(message, default=default)


def _print_result(result, log_file: Path) -> None:
    from vpsboot.reporting import format_duration, print_banner, print_error, print_info, print_success, print_warning
    from vpsboot.runner import RunOutcome
    from vpsboot.stages import StageStatus

    for stage_result in result.stages.values():
        label = f"{stage_result.stage_id} ({stage_result.name})"
        if stage_result.status == StageStatus.COMPLETED:
            print_success(f"{label} completed in {format_duration(stage_result.duration_seconds)}")
        elif stage_result.status == StageStatus.SKIPPED:
            print_info(f"{label} already completed")
        elif stage_result.status == StageStatus.SUSPENDED:
            print_warning(f"{label} completed, reboot required")
        elif stage_result.status == StageStatus.FAILED:
            print_error(f"{label} failed: {stage_result.error_message}")
            if stage_result.rollback_error:
                print_warning(f"Rollback of {stage_result.stage_id} failed: {stage_result.rollback_error}")

    prefix = "[DRY-RUN] " if result.dry_run else ""
    print_banner(f"{prefix}{result.outcome.value}")

    if result.outcome == RunOutcome.SUCCEEDED:
        print_success(f"{prefix}Bootstrap complete in {format_duration(result.duration_seconds)}")
    elif result.outcome == RunOutcome.AWAITING_REBOOT:
        print_warning(f"{prefix}Run suspended: {result.error_message}")
        for line in result.instructions:
            click.echo(f"  {line}")
    else:
        print_error(f"{prefix}Run stopped: {result.error_message}")
        click.echo(f"See {log_file} for details. Fix the problem and run `vpsboot run` again.")


def _running_services(config, state):
    """Services the deployed stack reports as running, or None if docker cannot tell."""
    from vpsboot.errors import CommandError
    from vpsboot.executor import CommandExecutor
    from vpsboot.stages.account import ADMIN_USER_KEY
    from vpsboot.stages.deploy import compose_adapter

    executor = CommandExecutor(default_user=state.get_parameter(ADMIN_USER_KEY))
    try:
        return compose_adapter(config, executor).running_services()
    except (CommandError, ValueError):
        return None


def _print_crash(log_file: Path) -> None:
    from vpsboot.reporting import console, print_error, tail_log

    console.print_exception()
    print_error("Unexpected error, last log lines:")
    for line in tail_log(log_file, 20):
        click.echo(f"  {line}", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="vpsboot")
def main():
    """
    vpsboot - Idempotent VPS bootstrap.

    Hardens a fresh Ubuntu host and deploys a Docker Compose stack,
    one resumable stage at a time.
    """


@main.command("run")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--skip-platform-check", is_flag=True, help="Do not require Ubuntu")
@click.option("--force", "force_stage", metavar="STAGE", help="Re-run one stage (id or name) even if completed")
@click.option("--dry-run", is_flag=True, help="Log what would change without touching the host")
@click.option("--interactive/--non-interactive", default=None, help="Prompt for the admin account and confirmations")
@click.option("--admin-user", metavar="NAME", help="Administrative account to create")
@click.option("--reboot", "auto_reboot", is_flag=True, help="Reboot automatically when a stage requires it")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(config_path, skip_platform_check, force_stage, dry_run, interactive, admin_user, auto_reboot, verbose):
    """
    Run the bootstrap.

    Completed stages are skipped, so the same command resumes after a
    failure or a reboot.

    Examples:

        sudo vpsboot run

        sudo vpsboot run --admin-user deploy --reboot

        sudo vpsboot run --force ssh

        sudo vpsboot run --dry-run
    """
    from vpsboot.errors import ConfigError, StateLockedError
    from vpsboot.reporting import print_banner, print_error
    from vpsboot.runner import EXIT_INTERNAL_ERROR, EXIT_STATE_LOCKED, StageRunner
    from vpsboot.stages import AccountStage, build_stages, find_stage
    from vpsboot.stages.account import ADMIN_USER_KEY
    from vpsboot.state import FileRunState

    overrides = {
        "preconditions.skip_platform_check": True if skip_platform_check else None,
        "force_stage": force_stage,
        "dry_run": True if dry_run else None,
        "interactive": interactive,
        "account.admin_user": admin_user,
        "auto_reboot": True if auto_reboot else None,
    }
    config = _load(config_path, overrides)
    state = FileRunState(config.state_file)

    # Forcing the account stage clears the stored name before the stage runs
    stored_user = state.get_parameter(ADMIN_USER_KEY)
    forced = find_stage(build_stages(config), force_stage) if force_stage else None
    reprompt = forced is not None and forced.stage_id == AccountStage.stage_id

    if not config.account.admin_user and (reprompt or not stored_user):
        if config.interactive:
            overrides["account.admin_user"] = click.prompt(
                "Administrative account name", default=stored_user or config.account.default_admin_user
            )
        elif stored_user:
            overrides["account.admin_user"] = stored_user
        config = _load(config_path, overrides)

    log_file = Path(config.logging.file)
    logger = _logger(config, verbose)

    if config.dry_run:
        print_banner("DRY RUN MODE (no changes to the host)")

    try:
        runner = StageRunner(
            build_stages(config),
            state,
            config,
            logger=logger,
            confirm=_confirm,
        )
    except ConfigError as e:
        print_error(str(e))
        raise SystemExit(EXIT_CONFIG_ERROR)

    try:
        result = runner.run()
    except StateLockedError as e:
        print_error(str(e))
        raise SystemExit(EXIT_STATE_LOCKED)
    except Exception:
        logger.exception("Unexpected error", extra={"event": "internal_error"})
        _print_crash(log_file)
        raise SystemExit(EXIT_INTERNAL_ERROR)

    _print_result(result, log_file)
    raise SystemExit(result.exit_code)


@main.command("status")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
def status(config_path, as_json: bool):
    """Show which stages are completed."""
    from rich.table import Table

    from vpsboot.interruption import PENDING_KEY
    from vpsboot.reporting import console
    from vpsboot.stages import DeployStage, build_stages
    from vpsboot.state import FileRunState

    config = _load(config_path)
    state = FileRunState(config.state_file)
    completed = state.completed_stages()
    parameters = state.parameters()
    stages = build_stages(config)
    deployed = DeployStage.stage_id in completed
    services = _running_services(config, state) if deployed else None

    if as_json:
        payload = {
            "state_file": str(config.state_file),
            "stages": [
                {
                    "stage_id": s.stage_id,
                    "name": s.name,
                    "depends_on": s.depends_on,
                    "completed": s.stage_id in completed,
                }
                for s in stages
            ],
            "parameters": parameters,
            "reboot_pending": parameters.get(PENDING_KEY),
            "running_services": services,
        }
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(title=f"Run state: {config.state_file}")
    table.add_column("Stage")
    table.add_column("Name")
    table.add_column("Status")
    for s in stages:
        done = s.stage_id in completed
        table.add_row(s.stage_id, s.name, "[green]completed[/green]" if done else "pending")
    console.print(table)

    for key, value in sorted(parameters.items()):
        click.echo(f"{key}={value}")
    if parameters.get(PENDING_KEY):
        click.echo(f"Reboot pending (requested by {parameters[PENDING_KEY]}); reboot, then run again.")
    if deployed:
        if services is None:
            click.echo("Running services: unknown (docker compose could not be queried)")
        else:
            click.echo(f"Running services: {', '.join(services) or 'none'}")


@main.command("check")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--skip-platform-check", is_flag=True, help="Do not require Ubuntu")
def check(config_path, skip_platform_check: bool):
    """Run host precondition checks without changing anything."""
    from vpsboot.preconditions import default_checks
    from vpsboot.reporting import print_error, print_success, print_warning
    from vpsboot.runner import EXIT_PRECONDITION_FAILED

    config = _load(config_path, {"preconditions.skip_platform_check": True if skip_platform_check else None})

    failed = 0
    for check_fn in default_checks(config.preconditions):
        result = check_fn()
        if result.passed:
            print_success(f"{result.name}: {result.reason}")
        else:
            failed += 1
            print_error(f"{result.name}: {result.reason}")

    if config.preconditions.skip_platform_check:
        print_warning("platform: check skipped")

    if failed:
        raise SystemExit(EXIT_PRECONDITION_FAILED)


@main.command("reset")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def reset(config_path, yes: bool):
    """Forget all progress so the next run starts from the first stage."""
    from vpsboot.errors import StateLockedError
    from vpsboot.runner import EXIT_STATE_LOCKED
    from vpsboot.state import FileRunState

    config = _load(config_path)
    state = FileRunState(config.state_file)

    if not yes:
        click.confirm(f"Delete run state {config.state_file}?", abort=True)

    try:
        with state.locked():
            state.reset()
    except StateLockedError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_STATE_LOCKED)

    click.echo(f"✓ Run state reset ({config.state_file})")


@main.command("stages")
def list_stages():
    """List the stage chain."""
    from vpsboot.config import BootstrapConfig
    from vpsboot.stages import build_stages

    for s in build_stages(BootstrapConfig()):
        after = f" (after {s.depends_on})" if s.depends_on else ""
        click.echo(f"{s.stage_id}  {s.name:<9} {s.description}{after}")


@main.command("update")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def update(config_path, verbose: bool):
    """
    Update the deployed stack (compose pull, down, up).

    Requires a completed deploy stage.
    """
    from vpsboot.errors import StateLockedError, VpsbootError
    from vpsboot.executor import CommandExecutor
    from vpsboot.reporting import print_error, print_success
    from vpsboot.runner import EXIT_DEPENDENCY_VIOLATION, EXIT_STAGE_FAILED, EXIT_STATE_LOCKED
    from vpsboot.stages import DeployStage
    from vpsboot.stages.account import ADMIN_USER_KEY
    from vpsboot.stages.deploy import update_stack
    from vpsboot.state import FileRunState

    config = _load(config_path)
    state = FileRunState(config.state_file)

    if not state.is_completed(DeployStage.stage_id):
        print_error(f"{DeployStage.stage_id} ({DeployStage.name}) has not completed; run `vpsboot run` first")
        raise SystemExit(EXIT_DEPENDENCY_VIOLATION)

    logger = _logger(config, verbose)
    executor = CommandExecutor(logger=logger, default_user=state.get_parameter(ADMIN_USER_KEY))

    try:
        with state.locked():
            update_stack(config, executor, logger)
    except StateLockedError as e:
        print_error(str(e))
        raise SystemExit(EXIT_STATE_LOCKED)
    except (VpsbootError, ValueError) as e:
        logger.error(f"Update failed: {e}", extra={"event": "update_failed"})
        print_error(f"Update failed: {e}")
        raise SystemExit(EXIT_STAGE_FAILED)

    print_success("Stack updated")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Write a default configuration file to $VPSBOOT_HOME/config.yaml."""
    import yaml

    from vpsboot.config import BootstrapConfig, get_vpsboot_home

    home = get_vpsboot_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = BootstrapConfig().to_dict()
    for runtime_key in ("dry_run", "interactive", "force_stage"):
        default_cfg.pop(runtime_key)
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized vpsboot config at {cfg_path}")
    click.echo("Place your docker-compose.yml and .env where deploy.compose_file / deploy.env_file point.")


if __name__ == "__main__":
    main()
