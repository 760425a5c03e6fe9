"""
Render daemon configuration fragments from typed settings via Jinja2.

Configuration files are generated whole from templates shipped in
vpsboot/templates, never patched in place, so the result does not depend on
what the file contained before.
"""

from typing import Any, Dict, Iterable, Optional

from jinja2 import Environment, PackageLoader, StrictUndefined

from vpsboot.config import Fail2BanSettings, SshSettings


_env: Optional[Environment] = None


def get_environment() -> Environment:
    """Get the shared template environment."""
    global _env
    if _env is None:
        _env = Environment(
            loader=PackageLoader("vpsboot", "templates"),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
    return _env


def render_template(name: str, **context: Any) -> str:
    """
    Render a packaged template.

    Args:
        name: Template file name under vpsboot/templates
        **context: Template variables

    Returns:
        Rendered text

    Raises:
        jinja2.UndefinedError: If the template references a missing variable
    """
    return get_environment().get_template(name).render(**context)


def render_sshd_dropin(ssh: SshSettings, allow_users: Iterable[str] = ()) -> str:
    """Render the sshd_config.d drop-in for the hardened SSH daemon."""
    return render_template("sshd_dropin.conf.j2", ssh=ssh, allow_users=list(allow_users))


def render_jail_local(fail2ban: Fail2BanSettings, ssh_port: int) -> str:
    """Render fail2ban's jail.local protecting sshd on ``ssh_port``."""
    return render_template("jail.local.j2", fail2ban=fail2ban, ssh_port=ssh_port)


def render_caddyfile(env: Dict[str, str], portainer: bool = False) -> str:
    """
    Render the Caddy reverse-proxy config from the deployment env.

    Args:
        env: Parsed deployment env file (N8N_HOST, N8N_PORT, SSL_EMAIL)
        portainer: Also proxy portainer.<host>
    """
    return render_template(
        "Caddyfile.j2",
        host=env["N8N_HOST"],
        port=env.get("N8N_PORT") or "5678",
        tls_email=env.get("SSL_EMAIL"),
        portainer=portainer,
    )


def render_sudoers(user: str) -> str:
    """Render a sudoers.d fragment granting ``user`` passwordless sudo."""
    return render_template("sudoers.j2", user=user)
