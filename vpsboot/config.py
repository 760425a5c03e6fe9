"""
Configuration management for vpsboot.

Assembles a single immutable BootstrapConfig at startup from, in order of
precedence (lowest first):

1. Built-in defaults
2. YAML config file ($VPSBOOT_HOME/config.yaml or --config)
3. VPSBOOT_* environment variables
4. CLI flags

Stages receive the finished config object; nothing reads the environment
while stages execute.
"""

import dataclasses
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union, get_args, get_origin

import yaml

from vpsboot.errors import ConfigError


DEFAULT_HOME = Path("/etc/vpsboot")

USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")


@dataclass(frozen=True)
class LoggingSettings:
    file: Path = Path("/var/log/vpsboot/vpsboot.log")
    level: str = "INFO"
    format: str = "structured"
    console: bool = True
    max_bytes: int = 1_048_576
    backup_count: int = 5


@dataclass(frozen=True)
class PreconditionSettings:
    min_disk_mb: int = 10_240
    min_memory_mb: int = 1_024
    min_cpu_cores: int = 1
    network_check_host: str = "archive.ubuntu.com"
    network_check_port: int = 80
    network_timeout: float = 5.0
    expected_platform: str = "ubuntu"
    os_release_file: Path = Path("/etc/os-release")
    skip_platform_check: bool = False
    require_root: bool = True


@dataclass(frozen=True)
class SystemSettings:
    upgrade: bool = True
    base_packages: Tuple[str, ...] = ("git", "curl", "ca-certificates")
    reboot_required_file: Path = Path("/var/run/reboot-required")
    boot_id_file: Path = Path("/proc/sys/kernel/random/boot_id")


@dataclass(frozen=True)
class AccountSettings:
    admin_user: Optional[str] = None
    default_admin_user: str = "deploy"
    groups: Tuple[str, ...] = ("sudo",)
    shell: str = "/bin/bash"
    home_root: Path = Path("/home")
    authorized_keys_source: Path = Path("/root/.ssh/authorized_keys")
    sudo_nopasswd: bool = True
    sudoers_dir: Path = Path("/etc/sudoers.d")


@dataclass(frozen=True)
class SshSettings:
    port: int = 22
    permit_root_login: bool = False
    password_authentication: bool = False
    main_config: Path = Path("/etc/ssh/sshd_config")
    dropin_path: Path = Path("/etc/ssh/sshd_config.d/00-vpsboot.conf")
    service: str = "ssh"


@dataclass(frozen=True)
class Fail2BanSettings:
    jail_path: Path = Path("/etc/fail2ban/jail.local")
    ignoreip: Tuple[str, ...] = ("127.0.0.1/8",)
    bantime: str = "1h"
    findtime: str = "10m"
    maxretry: int = 5
    backend: str = "systemd"
    ssh_maxretry: int = 3


@dataclass(frozen=True)
class FirewallSettings:
    allowed: Tuple[str, ...] = ("80/tcp", "443/tcp")


@dataclass(frozen=True)
class DeploySettings:
    compose_file: Path = Path("config/docker-compose.yml")
    env_file: Path = Path("config/.env")
    project_name: str = "n8n"
    volumes: Tuple[str, ...] = ("caddy_data", "n8n_data")
    portainer: bool = False
    docker_packages: Tuple[str, ...] = ("docker.io", "docker-compose-v2")
    render_caddyfile: bool = True


@dataclass(frozen=True)
class BootstrapConfig:
    """Complete, immutable orchestrator configuration."""

    state_file: Path = Path("/var/lib/vpsboot/state")
    dry_run: bool = False
    interactive: bool = False
    force_stage: Optional[str] = None
    auto_reboot: bool = False
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    preconditions: PreconditionSettings = field(default_factory=PreconditionSettings)
    system: SystemSettings = field(default_factory=SystemSettings)
    account: AccountSettings = field(default_factory=AccountSettings)
    ssh: SshSettings = field(default_factory=SshSettings)
    fail2ban: Fail2BanSettings = field(default_factory=Fail2BanSettings)
    firewall: FirewallSettings = field(default_factory=FirewallSettings)
    deploy: DeploySettings = field(default_factory=DeploySettings)

    def validate(self) -> None:
        """Validate cross-field constraints."""
        if not 1 <= self.ssh.port <= 65535:
            raise ConfigError(f"ssh.port out of range: {self.ssh.port}")

        for name in (self.account.admin_user, self.account.default_admin_user):
            if name is not None and not USERNAME_PATTERN.match(name):
                raise ConfigError(f"Invalid account name: {name!r}")

        for key in ("min_disk_mb", "min_memory_mb", "min_cpu_cores"):
            if getattr(self.preconditions, key) < 0:
                raise ConfigError(f"preconditions.{key} must not be negative")

        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ConfigError(f"Unknown log level: {self.logging.level}")

        if self.logging.format not in ("structured", "pretty"):
            raise ConfigError(f"Unknown log format: {self.logging.format}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a YAML-safe dictionary."""
        return _to_plain(dataclasses.asdict(self))


# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "VPSBOOT_STATE_FILE": "state_file",
    "VPSBOOT_LOG_FILE": "logging.file",
    "VPSBOOT_LOG_LEVEL": "logging.level",
    "VPSBOOT_ADMIN_USER": "account.admin_user",
    "VPSBOOT_SSH_PORT": "ssh.port",
    "VPSBOOT_SKIP_PLATFORM_CHECK": "preconditions.skip_platform_check",
    "VPSBOOT_COMPOSE_FILE": "deploy.compose_file",
    "VPSBOOT_ENV_FILE": "deploy.env_file",
    "VPSBOOT_PORTAINER": "deploy.portainer",
    "VPSBOOT_AUTO_REBOOT": "auto_reboot",
}


def get_vpsboot_home() -> Path:
    """Get the vpsboot configuration directory (VPSBOOT_HOME or /etc/vpsboot)."""
    env = os.environ.get("VPSBOOT_HOME")
    if env:
        return Path(env).expanduser()
    return DEFAULT_HOME


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BootstrapConfig:
    """
    Assemble the bootstrap configuration.

    Args:
        config_path: Explicit YAML file. Must exist when given. Defaults to
            $VPSBOOT_HOME/config.yaml, which is optional.
        overrides: Dotted-key overrides from CLI flags (None values ignored)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated BootstrapConfig

    Raises:
        ConfigError: If the file is missing/invalid or a value is rejected
    """
    environ = os.environ if environ is None else environ

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")
        data = _load_yaml(config_path)
    else:
        default_path = get_vpsboot_home() / "config.yaml"
        data = _load_yaml(default_path) if default_path.exists() else {}

    for env_name, key in ENV_OVERRIDES.items():
        if env_name in environ:
            _set_dotted(data, key, environ[env_name])

    for key, value in (overrides or {}).items():
        if value is not None:
            _set_dotted(data, key, value)

    config = _build(BootstrapConfig, data, prefix="")
    config.validate()
    return config


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load and parse a YAML config file."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")
    return data


def _set_dotted(data: Dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        section = target.get(part)
        if section is None:
            section = target[part] = {}
        elif not isinstance(section, dict):
            raise ConfigError(f"Config section {part!r} must be a mapping")
        target = section
    target[parts[-1]] = value


def _build(cls, data: Mapping[str, Any], prefix: str):
    """Build a (possibly nested) settings dataclass from a mapping."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config section {prefix.rstrip('.') or 'root'} must be a mapping")

    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(prefix + k for k in unknown)}")

    kwargs = {}
    for name, value in data.items():
        field_type = known[name].type
        if dataclasses.is_dataclass(field_type):
            kwargs[name] = _build(field_type, value or {}, prefix=f"{prefix}{name}.")
        else:
            kwargs[name] = _coerce(field_type, value, f"{prefix}{name}")
    return cls(**kwargs)


def _coerce(field_type: Any, value: Any, key: str) -> Any:
    """Coerce YAML/env values into the annotated field type."""
    if get_origin(field_type) is Union:
        if value is None or value == "":
            return None
        inner = [t for t in get_args(field_type) if t is not type(None)]
        return _coerce(inner[0], value, key)

    try:
        if field_type is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off", ""):
                    return False
                raise ValueError(f"not a boolean: {value!r}")
            return bool(value)
        if field_type is int:
            return int(value)
        if field_type is float:
            return float(value)
        if field_type is Path:
            return Path(str(value)).expanduser()
        if get_origin(field_type) is tuple:
            if isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            return tuple(str(v) for v in value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {e}")


def _to_plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value
