"""Tests for the concrete bootstrap stages.

Host paths come from the ``config`` fixture and point into tmp_path; host
commands go to FakeExecutor, which records them.
"""

import dataclasses
import logging

import pytest
import yaml

from vpsboot import BootstrapConfig, preconditions
from vpsboot.errors import CommandError, PreconditionError, RebootRequired, RollbackError, StageFailedError
from vpsboot.preconditions import CheckResult
from vpsboot.runner import RunOutcome, StageRunner
from vpsboot.stages import (
    AccountStage,
    DeployStage,
    DockerStage,
    Fail2BanStage,
    FirewallStage,
    SshStage,
    SystemStage,
    build_stages,
    find_stage,
)
from vpsboot.stages.account import ADMIN_USER_KEY
from vpsboot.stages.base import StageContext
from vpsboot.stages.deploy import compose_adapter
from vpsboot.tools.compose import REQUIRED_ENV_KEYS


@pytest.fixture
def network_ok(monkeypatch):
    monkeypatch.setattr(preconditions, "check_network", lambda *a, **k: CheckResult("network", True, "ok"))


@pytest.fixture
def compose_files(config):
    deploy = config.deploy
    deploy.compose_file.write_text(yaml.safe_dump({
        "services": {"n8n": {"image": "n8nio/n8n", "environment": ["N8N_HOST=${N8N_HOST}"]}},
    }))
    env = {key: "value" for key in REQUIRED_ENV_KEYS}
    env["N8N_HOST"] = "n8n.example.com"
    deploy.env_file.write_text("".join(f"{k}={v}\n" for k, v in env.items()))
    return deploy


def make_ctx(stage, config, state, executor, logger, **kwargs):
    return StageContext(config, state, executor, logger, stage.stage_id, **kwargs)


def with_admin(state, host, user="deploy"):
    state.set_parameter(ADMIN_USER_KEY, user)
    keys = host["home"] / user / ".ssh" / "authorized_keys"
    keys.parent.mkdir(parents=True, exist_ok=True)
    keys.write_text("ssh-ed25519 AAAAC3Nza operator@laptop\n")


class TestStageChain:
    """The fixed stage chain."""

    def test_chain_is_linear(self):
        stages = build_stages(BootstrapConfig())
        ids = [s.stage_id for s in stages]
        assert ids == [f"STAGE_{i}" for i in range(1, 8)]
        assert stages[0].depends_on is None
        for previous, stage in zip(stages, stages[1:]):
            assert stage.depends_on == previous.stage_id

    def test_find_stage(self, config):
        stages = build_stages(config)
        assert find_stage(stages, "ssh").stage_id == "STAGE_3"
        assert find_stage(stages, "stage_7").name == "deploy"
        assert find_stage(stages, "nope") is None


class TestSystemStage:
    def test_preconditions_pass(self, config, state, executor, logger, network_ok):
        stage = SystemStage(config)
        stage.preconditions(make_ctx(stage, config, state, executor, logger))

    def test_preconditions_fail_on_platform(self, config, state, executor, logger, network_ok, host):
        host["os_release"].write_text("ID=debian\n")
        stage = SystemStage(config)
        with pytest.raises(PreconditionError, match="platform"):
            stage.preconditions(make_ctx(stage, config, state, executor, logger))

    def test_updates_and_installs(self, config, state, executor, logger):
        stage = SystemStage(config)

        done = stage.execute(make_ctx(stage, config, state, executor, logger))

        assert done == ["update package index", "upgrade packages", "install base packages", "check reboot flag"]
        assert executor.ran("env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "update")
        assert executor.ran("env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", "git", "curl", "ca-certificates")

    def test_reboot_flag_raises(self, config, state, executor, logger, host):
        host["reboot_required"].write_text("*** System restart required ***\n")
        host["reboot_required"].with_name("reboot-required.pkgs").write_text("linux-base\n")
        stage = SystemStage(config)

        with pytest.raises(RebootRequired) as exc_info:
            stage.execute(make_ctx(stage, config, state, executor, logger))

        assert "linux-base" in exc_info.value.reason

    def test_apt_failure_wrapped(self, config, state, executor, logger):
        executor.fail_on(["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "update"])
        stage = SystemStage(config)

        with pytest.raises(StageFailedError) as exc_info:
            stage.execute(make_ctx(stage, config, state, executor, logger))

        assert exc_info.value.action == "update package index"
        assert isinstance(exc_info.value.cause, CommandError)


class TestAccountStage:
    def test_creates_account(self, config, state, executor, logger, host):
        executor.respond(["id", "-u"], returncode=1)
        stage = AccountStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        stage.execute(ctx)

        assert ctx.produced == {ADMIN_USER_KEY: "deploy"}
        assert executor.ran("useradd", "--create-home")
        assert executor.ran("usermod", "-aG", "sudo", "deploy")
        keys = host["home"] / "deploy" / ".ssh" / "authorized_keys"
        assert keys.read_text() == "ssh-ed25519 AAAAC3Nza operator@laptop\n"
        assert (host["sudoers"] / "90-vpsboot-deploy").read_text().endswith("deploy ALL=(ALL:ALL) NOPASSWD:ALL\n")
        assert executor.ran("visudo", "-cf")

    def test_configured_name_wins(self, config, state, executor, logger):
        config = dataclasses.replace(config, account=dataclasses.replace(config.account, admin_user="ops"))
        state.set_parameter(ADMIN_USER_KEY, "old")
        stage = AccountStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        stage.execute(ctx)

        assert ctx.produced[ADMIN_USER_KEY] == "ops"

    def test_existing_account_reused(self, config, state, executor, logger):
        stage = AccountStage(config)
        stage.execute(make_ctx(stage, config, state, executor, logger))
        assert not executor.ran("useradd")

    def test_existing_account_declined(self, config, state, executor, logger):
        stage = AccountStage(config)
        ctx = make_ctx(stage, config, state, executor, logger, confirm=lambda message, default: False)

        with pytest.raises(StageFailedError, match="declined"):
            stage.execute(ctx)

    def test_keys_merged_not_duplicated(self, config, state, executor, logger, host):
        keys = host["home"] / "deploy" / ".ssh" / "authorized_keys"
        keys.parent.mkdir(parents=True)
        keys.write_text("ssh-rsa AAAAB3 existing@host\nssh-ed25519 AAAAC3Nza operator@laptop\n")
        stage = AccountStage(config)

        stage.execute(make_ctx(stage, config, state, executor, logger))

        assert keys.read_text().splitlines() == [
            "ssh-rsa AAAAB3 existing@host",
            "ssh-ed25519 AAAAC3Nza operator@laptop",
        ]

    def test_no_root_keys_fails(self, config, state, executor, logger, host):
        host["root_keys"].write_text("")
        stage = AccountStage(config)
        with pytest.raises(StageFailedError, match="No SSH keys"):
            stage.execute(make_ctx(stage, config, state, executor, logger))

    def test_rollback_removes_created_account(self, config, state, executor, logger, host):
        executor.respond(["id", "-u"], returncode=1)
        executor.fail_on(["visudo"])
        stage = AccountStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert executor.ran("userdel", "--remove", "deploy")
        assert not (host["sudoers"] / "90-vpsboot-deploy").exists()

    def test_failed_account_removal_raises_rollback_error(self, config, state, executor, logger):
        executor.respond(["id", "-u"], returncode=1)
        executor.fail_on(["visudo"])
        executor.fail_on(["userdel"])
        stage = AccountStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        with pytest.raises(RollbackError, match="Could not remove account deploy"):
            stage.rollback(ctx)

    def test_runner_records_rollback_error(self, config, state, executor, logger):
        state.mark_completed("STAGE_1")
        executor.respond(["id", "-u"], returncode=1)
        executor.fail_on(["visudo"])
        executor.fail_on(["userdel"])

        result = StageRunner([AccountStage(config)], state, config, executor=executor, logger=logger).run()

        assert result.outcome == RunOutcome.FAILED
        assert "Could not remove account deploy" in result.stages["STAGE_2"].rollback_error
        assert "visudo" in result.error_message

    def test_rollback_keeps_preexisting_account(self, config, state, executor, logger):
        executor.fail_on(["visudo"])
        stage = AccountStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert not executor.ran("userdel")


class TestSshStage:
    def test_writes_dropin_and_restarts(self, config, state, executor, logger, host):
        with_admin(state, host)
        stage = SshStage(config)

        stage.execute(make_ctx(stage, config, state, executor, logger))

        dropin = host["dropin"].read_text()
        assert "Port 2222" in dropin
        assert "AllowUsers deploy" in dropin
        assert executor.ran("sshd", "-t")
        assert executor.ran("systemctl", "restart", "ssh")

    def test_second_run_leaves_dropin_untouched(self, config, state, executor, logger, host):
        with_admin(state, host)
        first = SshStage(config)
        first.execute(make_ctx(first, config, state, executor, logger))
        writes = len(executor.writes)

        stage = SshStage(config)
        stage.execute(make_ctx(stage, config, state, executor, logger))

        assert len(executor.writes) == writes

    def test_refuses_without_admin_keys(self, config, state, executor, logger):
        state.set_parameter(ADMIN_USER_KEY, "deploy")
        stage = SshStage(config)
        with pytest.raises(StageFailedError, match="missing or empty"):
            stage.execute(make_ctx(stage, config, state, executor, logger))

    def test_requires_include_directive(self, config, state, executor, logger, host):
        with_admin(state, host)
        host["sshd_config"].write_text("Port 22\n")
        stage = SshStage(config)
        with pytest.raises(StageFailedError, match="Include"):
            stage.execute(make_ctx(stage, config, state, executor, logger))

    def test_rollback_removes_dropin(self, config, state, executor, logger, host):
        with_admin(state, host)
        executor.fail_on(["sshd", "-t"])
        stage = SshStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert not host["dropin"].exists()
        assert executor.ran("systemctl", "restart", "ssh")

    def test_rollback_restores_previous_dropin(self, config, state, executor, logger, host):
        with_admin(state, host)
        host["dropin"].parent.mkdir(parents=True, exist_ok=True)
        host["dropin"].write_text("Port 22\n")
        executor.fail_on(["sshd", "-t"])
        stage = SshStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert host["dropin"].read_text() == "Port 22\n"

    def test_dropin_sorts_before_cloud_init(self):
        name = BootstrapConfig().ssh.dropin_path.name
        assert sorted([name, "50-cloud-init.conf"])[0] == name

    def test_overridden_password_auth_fails_and_rolls_back(self, config, state, executor, logger, host):
        """An earlier drop-in re-enabling password login is caught before restart."""
        with_admin(state, host)
        executor.respond(["sshd", "-T"], stdout="port 2222\npermitrootlogin no\npasswordauthentication yes\n")
        stage = SshStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError, match="passwordauthentication is yes"):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert not executor.ran("systemctl", "daemon-reload")
        assert not host["dropin"].exists()

    def test_effective_settings_match(self, config, state, executor, logger, host):
        with_admin(state, host)
        executor.respond(["sshd", "-T"], stdout="port 2222\npermitrootlogin no\npasswordauthentication no\n")
        stage = SshStage(config)

        completed = stage.execute(make_ctx(stage, config, state, executor, logger))

        assert "verify effective settings" in completed
        assert executor.ran("systemctl", "restart", "ssh")


class TestSecurityStages:
    def test_fail2ban(self, config, state, executor, logger, host):
        stage = Fail2BanStage(config)

        stage.execute(make_ctx(stage, config, state, executor, logger))

        assert "port = 2222" in host["jail"].read_text()
        assert executor.ran("systemctl", "restart", "fail2ban")

    def test_fail2ban_rollback(self, config, state, executor, logger, host):
        executor.fail_on(["systemctl", "enable", "fail2ban"])
        stage = Fail2BanStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert not host["jail"].exists()

    def test_firewall_rules(self, config, state, executor, logger):
        stage = FirewallStage(config)

        stage.execute(make_ctx(stage, config, state, executor, logger))

        assert stage.rules() == ["2222/tcp", "80/tcp", "443/tcp"]
        for rule in stage.rules():
            assert executor.ran("ufw", "allow", rule)
        assert executor.ran("ufw", "--force", "enable")

    def test_firewall_rollback_keeps_rules(self, config, state, executor, logger, caplog):
        stage = FirewallStage(config)
        with caplog.at_level(logging.WARNING):
            stage.rollback(make_ctx(stage, config, state, executor, logger))
        assert executor.calls == []
        assert "Leaving firewall rules in place" in caplog.text


class TestDockerStage:
    def test_installs_and_grants(self, config, state, executor, logger):
        state.set_parameter(ADMIN_USER_KEY, "deploy")
        stage = DockerStage(config)

        stage.execute(make_ctx(stage, config, state, executor, logger))

        assert executor.ran("usermod", "-aG", "docker", "deploy")
        assert executor.ran("systemctl", "enable", "--now", "docker")

    def test_requires_admin_user(self, config, state, executor, logger):
        stage = DockerStage(config)
        with pytest.raises(StageFailedError, match=ADMIN_USER_KEY):
            stage.execute(make_ctx(stage, config, state, executor, logger))


class TestDeployStage:
    def test_deploys_as_admin(self, config, state, executor, logger, compose_files):
        executor.respond(["docker", "volume", "inspect"], returncode=1)
        stage = DeployStage(config)

        stage.execute(make_ctx(stage, config, state, executor.for_user("deploy"), logger))

        assert (compose_files.compose_file.parent / "Caddyfile").read_text().count("n8n.example.com {") == 1
        assert executor.ran("docker", "volume", "create", "caddy_data")
        assert executor.ran("docker", "volume", "create", "n8n_data")
        up = executor.calls[-1]
        assert up[:4] == ["runuser", "-u", "deploy", "--"]
        assert up[-2:] == ["up", "-d"]

    def test_existing_caddyfile_kept(self, config, state, executor, logger, compose_files):
        caddyfile = compose_files.compose_file.parent / "Caddyfile"
        caddyfile.write_text("custom\n")
        stage = DeployStage(config)

        stage.execute(make_ctx(stage, config, state, executor, logger))

        assert caddyfile.read_text() == "custom\n"

    def test_invalid_env_fails_before_docker(self, config, state, executor, logger, compose_files):
        compose_files.env_file.write_text("N8N_HOST=x\n")
        stage = DeployStage(config)

        with pytest.raises(StageFailedError, match="missing required keys"):
            stage.execute(make_ctx(stage, config, state, executor, logger))

        assert executor.calls == []

    def test_rollback_brings_stack_down(self, config, state, executor, logger, compose_files):
        stage = DeployStage(config)
        ctx = make_ctx(stage, config, state, executor, logger)
        executor.fail_on([*compose_adapter(config, executor).base_command(), "up"])

        with pytest.raises(StageFailedError):
            stage.execute(ctx)
        stage.rollback(ctx)

        assert executor.calls[-1][-1] == "down"


class TestFullChain:
    """All seven stages through the runner."""

    def test_fresh_host(self, config, state, executor, logger, network_ok, compose_files):
        executor.respond(["id", "-u"], returncode=1)
        runner = StageRunner(build_stages(config), state, config, executor=executor, logger=logger)

        result = runner.run()

        assert result.outcome == RunOutcome.SUCCEEDED, result.error_message
        assert state.completed_stages() == [f"STAGE_{i}" for i in range(1, 8)]
        assert state.get_parameter(ADMIN_USER_KEY) == "deploy"

        again = StageRunner(build_stages(config), state, config, executor=executor, logger=logger).run()
        assert again.outcome == RunOutcome.SUCCEEDED
        assert all(r.status.value == "skipped" for r in again.stages.values())

    def test_dry_run_changes_nothing(self, config, state, executor, logger, network_ok, compose_files, host):
        dry_executor = type(executor)(dry_run=True, logger=logger)
        dry = dataclasses.replace(config, dry_run=True)

        result = StageRunner(build_stages(dry), state, dry, executor=dry_executor, logger=logger).run()

        assert result.outcome == RunOutcome.SUCCEEDED, result.error_message
        assert state.completed_stages() == []
        assert not host["dropin"].exists()
        assert not host["jail"].exists()
        assert not (host["home"] / "deploy").exists()
