"""apt package manager adapter for vpsboot."""

import shutil
import subprocess
from typing import Any, Dict, List, Sequence

from vpsboot.tools.base import ToolAdapter


APT_GET = ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get"]


class AptAdapter(ToolAdapter):
    """
    Adapter for apt-get / dpkg.

    install() only asks apt for packages that are not already installed,
    so re-running a stage after a partial failure is cheap.
    """

    def validate(self) -> Dict[str, Any]:
        errors = []
        for binary in ("apt-get", "dpkg-query"):
            if shutil.which(binary) is None:
                errors.append(f"{binary} not found on PATH")
        return {"valid": not errors, "errors": errors, "warnings": []}

    def execute(self, *args: str) -> subprocess.CompletedProcess:
        """Run apt-get with non-interactive frontend."""
        return self.executor.run([*APT_GET, *args])

    def update(self) -> None:
        self.execute("update")

    def upgrade(self) -> None:
        self.execute("-y", "-o", "Dpkg::Options::=--force-confold", "upgrade")

    def is_installed(self, package: str) -> bool:
        result = self.executor.query(["dpkg-query", "-W", "-f=${Status}", package])
        return result.returncode == 0 and "install ok installed" in result.stdout

    def missing(self, packages: Sequence[str]) -> List[str]:
        """Return the packages that are not installed yet."""
        return [p for p in packages if not self.is_installed(p)]

    def install(self, packages: Sequence[str]) -> List[str]:
        """
        Install packages that are missing.

        Returns:
            The packages that were (or in dry-run mode would be) installed
        """
        missing = self.missing(packages)
        if missing:
            self.execute("install", "-y", *missing)
        return missing
