"""
Command executor - the only path through which stages touch the host.

The executor provides:
- Command execution with failures raised as CommandError
- Running a command as another principal (runuser -u <user> --)
- Dry-run mode: mutating commands and file writes are logged, not performed;
  read-only queries still run so stages can inspect the host
- File writes that are atomic and owned by the right account
"""

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Mapping, Optional, Sequence

from vpsboot.errors import CommandError


class CommandExecutor:
    """
    Runs host commands on behalf of stage bodies.

    Attributes:
        dry_run: Log mutating operations instead of performing them
        default_user: Principal used when a call does not name one
    """

    def __init__(
        self,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
        default_user: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger("vpsboot.executor")
        self.default_user = default_user
        self.env = dict(env) if env is not None else None

    def for_user(self, user: Optional[str]) -> "CommandExecutor":
        """Return an executor whose commands run as ``user`` by default."""
        return CommandExecutor(
            dry_run=self.dry_run,
            logger=self.logger,
            default_user=user,
            env=self.env,
        )

    def run(
        self,
        cmd: Sequence[str],
        *,
        as_user: Optional[str] = None,
        check: bool = True,
        mutating: bool = True,
        input: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a command.

        Args:
            cmd: Command and arguments
            as_user: Run as this account (defaults to default_user)
            check: Raise CommandError on non-zero exit
            mutating: False for read-only queries, which also run in dry-run mode
            input: Text fed to stdin
            cwd: Working directory

        Returns:
            subprocess.CompletedProcess with captured text output

        Raises:
            CommandError: If check is set and the command fails
        """
        argv = self._wrap(cmd, as_user or self.default_user)

        if self.dry_run and mutating:
            self.logger.info(
                f"[dry-run] would run: {' '.join(argv)}",
                extra={"event": "command_skipped", "metadata": {"cmd": argv}},
            )
            return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

        self.logger.debug(
            f"Running: {' '.join(argv)}",
            extra={"event": "command_started", "metadata": {"cmd": argv}},
        )

        try:
            result = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                cwd=str(cwd) if cwd else None,
                env=self.env,
            )
        except FileNotFoundError as e:
            raise CommandError(argv, 127, str(e))

        if check and result.returncode != 0:
            raise CommandError(argv, result.returncode, result.stderr or result.stdout)

        return result

    def query(self, cmd: Sequence[str], *, as_user: Optional[str] = None) -> subprocess.CompletedProcess:
        """Run a read-only command without raising on failure."""
        return self.run(cmd, as_user=as_user, check=False, mutating=False)

    def succeeds(self, cmd: Sequence[str]) -> bool:
        """Check whether a read-only command exits with status 0."""
        return self.query(cmd).returncode == 0

    def write_file(
        self,
        path: Path,
        content: str,
        mode: int = 0o644,
        owner: Optional[str] = None,
    ) -> None:
        """
        Atomically write a file.

        Args:
            path: Destination path
            content: File content
            mode: Permission bits
            owner: Account that should own the file (group = same name)
        """
        path = Path(path)
        if self.dry_run:
            self.logger.info(
                f"[dry-run] would write {path} ({len(content)} bytes, mode {oct(mode)})",
                extra={"event": "write_skipped", "metadata": {"path": str(path)}},
            )
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, mode)
            if owner:
                shutil.chown(tmp_name, user=owner, group=owner)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        self.logger.debug(
            f"Wrote {path}",
            extra={"event": "file_written", "metadata": {"path": str(path), "mode": oct(mode)}},
        )

    def remove_file(self, path: Path) -> bool:
        """
        Remove a file if it exists.

        Returns:
            True if a file was (or in dry-run mode would be) removed
        """
        path = Path(path)
        if not path.exists():
            return False
        if self.dry_run:
            self.logger.info(
                f"[dry-run] would remove {path}",
                extra={"event": "remove_skipped", "metadata": {"path": str(path)}},
            )
            return True
        path.unlink()
        return True

    def make_dir(self, path: Path, mode: int = 0o755, owner: Optional[str] = None) -> None:
        """Create a directory (and parents) with the given mode and owner."""
        path = Path(path)
        if self.dry_run:
            self.logger.info(
                f"[dry-run] would create directory {path}",
                extra={"event": "mkdir_skipped", "metadata": {"path": str(path)}},
            )
            return
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, mode)
        if owner:
            shutil.chown(path, user=owner, group=owner)

    @staticmethod
    def _wrap(cmd: Sequence[str], user: Optional[str]) -> list:
        argv = [str(part) for part in cmd]
        if user:
            return ["runuser", "-u", user, "--", *argv]
        return argv
