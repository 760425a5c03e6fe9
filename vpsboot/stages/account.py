"""
Account stage: create the administrative account used by later stages.

Produces the `admin_user` run parameter. Later stages (and later runs,
e.g. after a reboot) read the account name from run state, never from the
environment.
"""

import logging
from pathlib import Path
from typing import List, Optional

from vpsboot.errors import CommandError, RollbackError, VpsbootError
from vpsboot.render import render_sudoers
from vpsboot.stages.base import Action, Stage, StageContext


ADMIN_USER_KEY = "admin_user"


def resolve_admin_user(ctx: StageContext) -> str:
    """
    Pick the account name.

    Explicit configuration wins, then a name chosen by an earlier run,
    then the configured default.
    """
    account = ctx.config.account
    return account.admin_user or ctx.get_parameter(ADMIN_USER_KEY) or account.default_admin_user


class AccountStage(Stage):
    """Ensure the admin account exists with sudo rights and SSH keys."""

    stage_id = "STAGE_2"
    name = "account"
    description = "Admin account, sudo, authorized_keys"
    depends_on = "STAGE_1"
    produces = (ADMIN_USER_KEY,)

    def __init__(self, config):
        super().__init__(config)
        self._created_user: Optional[str] = None
        self._sudoers_written: Optional[Path] = None

    def actions(self, ctx: StageContext) -> List[Action]:
        self._created_user = None
        self._sudoers_written = None
        user = resolve_admin_user(ctx)
        ctx.set_parameter(ADMIN_USER_KEY, user)

        actions = [
            Action("ensure account", lambda c: self._ensure_account(c, user)),
            Action("grant groups", lambda c: self._grant_groups(c, user)),
            Action("install authorized keys", lambda c: self._install_keys(c, user)),
        ]
        if self.config.account.sudo_nopasswd:
            actions.append(Action("configure sudo", lambda c: self._configure_sudo(c, user)))
        return actions

    def home_dir(self, user: str) -> Path:
        return Path(self.config.account.home_root) / user

    def _ensure_account(self, ctx: StageContext, user: str) -> None:
        if ctx.executor.succeeds(["id", "-u", user]):
            ctx.log(logging.INFO, f"Account {user} already exists", "account_exists", user=user)
            if not ctx.confirm(f"Account {user} already exists. Continue setup under {user}?", True):
                raise VpsbootError(f"Operator declined to reuse existing account {user}")
            return

        ctx.executor.run([
            "useradd",
            "--create-home",
            "--home-dir", str(self.home_dir(user)),
            "--shell", self.config.account.shell,
            user,
        ])
        self._created_user = user
        ctx.log(logging.INFO, f"Created account {user}", "account_created", user=user)

    def _grant_groups(self, ctx: StageContext, user: str) -> None:
        groups = ",".join(self.config.account.groups)
        if groups:
            ctx.executor.run(["usermod", "-aG", groups, user])

    def _install_keys(self, ctx: StageContext, user: str) -> None:
        source = Path(self.config.account.authorized_keys_source)
        try:
            keys = [line.strip() for line in source.read_text().splitlines() if line.strip()]
        except OSError as e:
            raise VpsbootError(f"Cannot read authorized keys from {source}: {e}")
        if not keys:
            raise VpsbootError(f"No SSH keys in {source}; refusing to continue without key access")

        ssh_dir = self.home_dir(user) / ".ssh"
        target = ssh_dir / "authorized_keys"

        existing: List[str] = []
        if target.exists():
            existing = [line.strip() for line in target.read_text().splitlines() if line.strip()]
        merged = existing + [k for k in keys if k not in existing]

        ctx.executor.make_dir(ssh_dir, mode=0o700, owner=user)
        ctx.executor.write_file(target, "\n".join(merged) + "\n", mode=0o600, owner=user)

    def _configure_sudo(self, ctx: StageContext, user: str) -> None:
        target = Path(self.config.account.sudoers_dir) / f"90-vpsboot-{user}"
        content = render_sudoers(user)
        if target.exists() and target.read_text() == content:
            return
        ctx.executor.write_file(target, content, mode=0o440)
        self._sudoers_written = target
        ctx.executor.run(["visudo", "-cf", str(target)])

    def rollback(self, ctx: StageContext) -> None:
        """Remove what this attempt created: the sudoers fragment and a new account."""
        if self._sudoers_written is not None:
            ctx.executor.remove_file(self._sudoers_written)
            ctx.log(logging.WARNING, f"Removed {self._sudoers_written}", "rollback_sudoers")

        if self._created_user is None:
            ctx.log(
                logging.WARNING,
                "Account pre-existed or was not created; leaving it in place",
                "rollback_noop",
            )
            return

        try:
            ctx.executor.run(["userdel", "--remove", self._created_user])
        except CommandError as e:
            raise RollbackError(f"Could not remove account {self._created_user}: {e}") from e
        ctx.log(
            logging.WARNING,
            f"Removed account {self._created_user} created by this attempt",
            "rollback_account_removed",
            user=self._created_user,
        )
