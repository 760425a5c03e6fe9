"""Docker Compose adapter for vpsboot."""

import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from dotenv import dotenv_values

from vpsboot.executor import CommandExecutor
from vpsboot.tools.base import ToolAdapter


# Keys the n8n/PostgreSQL/Caddy stack understands
RECOGNIZED_ENV_KEYS = frozenset({
    "N8N_HOST",
    "N8N_PORT",
    "N8N_PROTOCOL",
    "N8N_VERSION",
    "N8N_BASIC_AUTH_ACTIVE",
    "N8N_BASIC_AUTH_USER",
    "N8N_BASIC_AUTH_PASSWORD",
    "N8N_ENCRYPTION_KEY",
    "DB_TYPE",
    "DB_POSTGRESDB_HOST",
    "DB_POSTGRESDB_PORT",
    "DB_POSTGRESDB_DATABASE",
    "DB_POSTGRESDB_USER",
    "DB_POSTGRESDB_PASSWORD",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "SSL_EMAIL",
    "GENERIC_TIMEZONE",
})

REQUIRED_ENV_KEYS = (
    "N8N_HOST",
    "N8N_PORT",
    "N8N_PROTOCOL",
    "N8N_ENCRYPTION_KEY",
    "DB_TYPE",
    "DB_POSTGRESDB_HOST",
    "DB_POSTGRESDB_DATABASE",
    "DB_POSTGRESDB_USER",
    "DB_POSTGRESDB_PASSWORD",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
)

# ${VAR} or ${VAR:-default} / ${VAR-default}
INTERPOLATION_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:?-[^}]*)?\}")


class ComposeAdapter(ToolAdapter):
    """
    Adapter for the `docker compose` CLI.

    The compose file and env file are external artifacts: this adapter
    validates them and hands them to docker, it never edits them.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        compose_file: Path,
        env_file: Path,
        project_name: str = "n8n",
    ):
        """
        Initialize ComposeAdapter.

        Args:
            executor: Executor (usually bound to the admin account)
            compose_file: Service topology file
            env_file: Environment file interpolated into the compose file
            project_name: Compose project name
        """
        self.compose_file = Path(compose_file)
        self.env_file = Path(env_file)
        self.project_name = project_name
        self.env: Dict[str, str] = {}
        super().__init__(executor, self.compose_file)

    def load_config(self) -> Dict[str, Any]:
        """
        Load the compose file and env file.

        Returns:
            Parsed compose document (empty if the file is missing)

        Raises:
            ValueError: If the compose file is not valid YAML
        """
        if self.env_file.exists():
            self.env = {k: v for k, v in dotenv_values(self.env_file).items() if v is not None}

        if not self.compose_file.exists():
            return {}

        try:
            with open(self.compose_file, "r") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {self.compose_file}: {e}")

    def referenced_variables(self) -> Dict[str, bool]:
        """
        Variables interpolated by the compose file.

        Returns:
            Mapping of variable name to whether it has an inline default
        """
        if not self.compose_file.exists():
            return {}
        found: Dict[str, bool] = {}
        for name, default in INTERPOLATION_PATTERN.findall(self.compose_file.read_text()):
            found[name] = found.get(name, False) or bool(default)
        return found

    def validate(self) -> Dict[str, Any]:
        """
        Validate the compose file and env file.

        Returns:
            Dictionary with 'valid', 'errors', 'warnings'
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not self.compose_file.exists():
            errors.append(f"Compose file not found: {self.compose_file}")
        elif not self.config.get("services"):
            errors.append(f"Compose file defines no services: {self.compose_file}")

        if not self.env_file.exists():
            errors.append(f"Env file not found: {self.env_file}")
        else:
            missing = [k for k in REQUIRED_ENV_KEYS if not self.env.get(k)]
            if missing:
                errors.append(f"Env file missing required keys: {', '.join(missing)}")

            unknown = sorted(set(self.env) - RECOGNIZED_ENV_KEYS)
            if unknown:
                warnings.append(f"Env file has unrecognized keys: {', '.join(unknown)}")

            undefined = sorted(
                name for name, has_default in self.referenced_variables().items()
                if not has_default and name not in self.env
            )
            if undefined:
                errors.append(
                    f"Compose file references undefined variables: {', '.join(undefined)}"
                )

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def base_command(self) -> List[str]:
        return [
            "docker", "compose",
            "-f", str(self.compose_file),
            "--env-file", str(self.env_file),
            "-p", self.project_name,
        ]

    def execute(self, *args: str, profiles: Sequence[str] = ()) -> subprocess.CompletedProcess:
        """Run a docker compose subcommand for this project."""
        profile_args: List[str] = []
        for profile in profiles:
            profile_args.extend(["--profile", profile])
        return self.executor.run([*self.base_command(), *profile_args, *args])

    def up(self, profiles: Sequence[str] = ()) -> None:
        self.execute("up", "-d", profiles=profiles)

    def pull(self, profiles: Sequence[str] = ()) -> None:
        self.execute("pull", profiles=profiles)

    def down(self, profiles: Sequence[str] = ()) -> None:
        self.execute("down", profiles=profiles)

    def volume_exists(self, name: str) -> bool:
        return self.executor.query(["docker", "volume", "inspect", name]).returncode == 0

    def ensure_volume(self, name: str) -> bool:
        """
        Create a named docker volume if it does not exist.

        Returns:
            True if the volume was created
        """
        if self.volume_exists(name):
            return False
        self.executor.run(["docker", "volume", "create", name])
        return True

    def running_services(self) -> Optional[List[str]]:
        """Names of running services, or None if docker cannot be queried."""
        result = self.executor.query([*self.base_command(), "ps", "--services", "--filter", "status=running"])
        if result.returncode != 0:
            return None
        return [line for line in result.stdout.splitlines() if line.strip()]
