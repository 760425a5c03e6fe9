import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from vpsboot.config import (
    AccountSettings,
    BootstrapConfig,
    DeploySettings,
    Fail2BanSettings,
    LoggingSettings,
    PreconditionSettings,
    SshSettings,
    SystemSettings,
)
from vpsboot.executor import CommandExecutor
from vpsboot.stages.base import Action, Stage, StageContext
from vpsboot.state import InMemoryRunState


class FakeExecutor(CommandExecutor):
    """
    Executor that records commands instead of running them.

    ``responses`` maps a command prefix (tuple) to a CompletedProcess-like
    (returncode, stdout) pair; unknown commands succeed with empty output.
    ``failures`` holds command prefixes that should raise CommandError.
    """

    def __init__(self, dry_run=False, logger=None, default_user=None, env=None, shared=None):
        super().__init__(dry_run=dry_run, logger=logger, default_user=default_user, env=env)
        self.shared = shared if shared is not None else {
            "calls": [],
            "writes": {},
            "removed": [],
            "dirs": [],
            "responses": {},
            "failures": set(),
        }

    @property
    def calls(self) -> List[List[str]]:
        return self.shared["calls"]

    @property
    def writes(self) -> Dict[Path, str]:
        return self.shared["writes"]

    @property
    def removed(self) -> List[Path]:
        return self.shared["removed"]

    def respond(self, prefix, returncode=0, stdout=""):
        self.shared["responses"][tuple(prefix)] = (returncode, stdout)

    def fail_on(self, prefix):
        self.shared["failures"].add(tuple(prefix))

    def for_user(self, user):
        return FakeExecutor(
            dry_run=self.dry_run,
            logger=self.logger,
            default_user=user,
            env=self.env,
            shared=self.shared,
        )

    def run(self, cmd, *, as_user=None, check=True, mutating=True, input=None, cwd=None):
        from vpsboot.errors import CommandError

        argv = self._wrap(cmd, as_user or self.default_user)
        plain = [str(c) for c in cmd]
        if self.dry_run and mutating:
            return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")
        self.calls.append(argv)

        for prefix in self.shared["failures"]:
            if tuple(plain[: len(prefix)]) == prefix:
                raise CommandError(argv, 1, "forced failure")

        returncode, stdout = 0, ""
        for prefix, response in self.shared["responses"].items():
            if tuple(plain[: len(prefix)]) == prefix:
                returncode, stdout = response
        if check and returncode != 0:
            raise CommandError(argv, returncode, "")
        return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr="")

    def write_file(self, path, content, mode=0o644, owner=None):
        if self.dry_run:
            return
        self.writes[Path(path)] = content
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_text(content)

    def remove_file(self, path):
        path = Path(path)
        if not path.exists():
            return False
        self.removed.append(path)
        if not self.dry_run:
            path.unlink()
        return True

    def make_dir(self, path, mode=0o755, owner=None):
        self.shared["dirs"].append(Path(path))
        if not self.dry_run:
            Path(path).mkdir(parents=True, exist_ok=True)

    def ran(self, *prefix) -> bool:
        """Check whether any recorded command starts with ``prefix``."""
        for argv in self.calls:
            plain = argv[4:] if argv[:2] == ["runuser", "-u"] else argv
            if tuple(plain[: len(prefix)]) == prefix:
                return True
        return False


class FnStage(Stage):
    """Stage built from plain callables, for runner tests."""

    def __init__(
        self,
        stage_id: str,
        depends_on: Optional[str] = None,
        body: Optional[Callable[[StageContext], None]] = None,
        produces=(),
        run_as: Optional[str] = None,
        rollback: Optional[Callable[[StageContext], None]] = None,
        preconditions: Optional[Callable[[StageContext], None]] = None,
    ):
        super().__init__(BootstrapConfig())
        self.stage_id = stage_id
        self.name = stage_id.lower()
        self.description = f"test stage {stage_id}"
        self.depends_on = depends_on
        self.produces = tuple(produces)
        self.run_as = run_as
        self.body = body or (lambda ctx: None)
        self._rollback = rollback
        self._preconditions = preconditions
        self.runs = 0
        self.rollbacks = 0
        self.executors: List[CommandExecutor] = []

    def preconditions(self, ctx):
        if self._preconditions:
            self._preconditions(ctx)

    def actions(self, ctx):
        def step(c):
            self.runs += 1
            self.executors.append(c.executor)
            self.body(c)

        return [Action("body", step)]

    def rollback(self, ctx):
        self.rollbacks += 1
        if self._rollback:
            self._rollback(ctx)


@pytest.fixture
def logger():
    return logging.getLogger("vpsboot.test")


@pytest.fixture
def state():
    return InMemoryRunState()


@pytest.fixture
def executor(logger):
    return FakeExecutor(logger=logger)


@pytest.fixture
def host(tmp_path):
    """Fake host filesystem layout under tmp_path."""
    root = tmp_path / "host"
    paths = {
        "root": root,
        "home": root / "home",
        "sudoers": root / "etc" / "sudoers.d",
        "root_keys": root / "root" / ".ssh" / "authorized_keys",
        "sshd_config": root / "etc" / "ssh" / "sshd_config",
        "dropin": root / "etc" / "ssh" / "sshd_config.d" / "00-vpsboot.conf",
        "jail": root / "etc" / "fail2ban" / "jail.local",
        "reboot_required": root / "run" / "reboot-required",
        "boot_id": root / "proc" / "boot_id",
        "os_release": root / "etc" / "os-release",
        "deploy": root / "opt" / "deploy",
    }
    for key in ("home", "sudoers", "deploy"):
        paths[key].mkdir(parents=True)
    paths["root_keys"].parent.mkdir(parents=True)
    paths["root_keys"].write_text("ssh-ed25519 AAAAC3Nza operator@laptop\n")
    paths["sshd_config"].parent.mkdir(parents=True)
    paths["sshd_config"].write_text(f"Include {paths['dropin'].parent}/*.conf\nPort 22\n")
    paths["reboot_required"].parent.mkdir(parents=True)
    paths["boot_id"].parent.mkdir(parents=True)
    paths["boot_id"].write_text("boot-1\n")
    paths["os_release"].write_text('ID=ubuntu\nPRETTY_NAME="Ubuntu 24.04 LTS"\n')
    return paths


@pytest.fixture
def config(tmp_path, host):
    """Configuration pointing every host path into tmp_path."""
    return BootstrapConfig(
        state_file=tmp_path / "state" / "state",
        logging=LoggingSettings(file=tmp_path / "log" / "vpsboot.log", console=False),
        preconditions=PreconditionSettings(
            min_disk_mb=0,
            min_memory_mb=0,
            min_cpu_cores=0,
            os_release_file=host["os_release"],
            require_root=False,
        ),
        system=SystemSettings(
            reboot_required_file=host["reboot_required"],
            boot_id_file=host["boot_id"],
        ),
        account=AccountSettings(
            home_root=host["home"],
            authorized_keys_source=host["root_keys"],
            sudoers_dir=host["sudoers"],
        ),
        ssh=SshSettings(
            port=2222,
            main_config=host["sshd_config"],
            dropin_path=host["dropin"],
        ),
        fail2ban=Fail2BanSettings(jail_path=host["jail"]),
        deploy=DeploySettings(
            compose_file=host["deploy"] / "docker-compose.yml",
            env_file=host["deploy"] / ".env",
        ),
    )


@pytest.fixture
def fn_stage():
    """The FnStage class, for building ad-hoc stages."""
    return FnStage


@pytest.fixture
def chain():
    """Build a linear chain of FnStages: chain(("A", {}), ("B", {...}))."""

    def build(*specs):
        stages = []
        previous = None
        for stage_id, kwargs in specs:
            stages.append(FnStage(stage_id, depends_on=previous, **kwargs))
            previous = stage_id
        return stages

    return build


@pytest.fixture(autouse=True)
def restore_vpsboot_logger():
    """Undo setup_logging() so log capture works in later tests."""
    yield
    vpsboot_logger = logging.getLogger("vpsboot")
    for handler in vpsboot_logger.handlers:
        handler.close()
    vpsboot_logger.handlers = []
    vpsboot_logger.propagate = True
    vpsboot_logger.setLevel(logging.NOTSET)
