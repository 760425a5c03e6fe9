"""
Precondition checks run before any mutating action.

Each check inspects the host without changing it and returns a CheckResult
with a human-readable reason. run_preconditions() runs every check (so the
operator sees all problems at once) and raises PreconditionError if any
failed.
"""

import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil

from vpsboot.config import PreconditionSettings
from vpsboot.errors import PreconditionError


MB = 1024 * 1024


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one precondition check."""

    name: str
    passed: bool
    reason: str

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "passed": self.passed, "reason": self.reason}


def check_disk_space(min_mb: int, path: str = "/") -> CheckResult:
    """Free disk space on ``path`` is at least ``min_mb`` megabytes."""
    free_mb = psutil.disk_usage(path).free // MB
    if free_mb >= min_mb:
        return CheckResult("disk", True, f"{free_mb} MB free on {path}")
    return CheckResult("disk", False, f"{free_mb} MB free on {path}, need {min_mb} MB")


def check_memory(min_mb: int) -> CheckResult:
    """Total memory is at least ``min_mb`` megabytes."""
    total_mb = psutil.virtual_memory().total // MB
    if total_mb >= min_mb:
        return CheckResult("memory", True, f"{total_mb} MB total")
    return CheckResult("memory", False, f"{total_mb} MB total, need {min_mb} MB")


def check_cpu_cores(min_cores: int) -> CheckResult:
    """At least ``min_cores`` CPU cores are available."""
    cores = psutil.cpu_count(logical=True) or 0
    if cores >= min_cores:
        return CheckResult("cpu", True, f"{cores} cores")
    return CheckResult("cpu", False, f"{cores} cores, need {min_cores}")


def check_network(host: str, port: int = 80, timeout: float = 5.0) -> CheckResult:
    """A TCP connection to ``host:port`` can be opened."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as e:
        return CheckResult("network", False, f"cannot reach {host}:{port}: {e}")
    return CheckResult("network", True, f"reached {host}:{port}")


def read_os_release(path: Path) -> Dict[str, str]:
    """
    Parse an os-release file.

    Returns:
        Mapping of keys to unquoted values (empty if the file is missing)
    """
    info: Dict[str, str] = {}
    try:
        text = Path(path).read_text()
    except OSError:
        return info

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        info[key.strip()] = value.strip().strip('"').strip("'")
    return info


def check_platform(expected: str, os_release: Path = Path("/etc/os-release")) -> CheckResult:
    """The distribution ID in os-release equals ``expected``."""
    info = read_os_release(os_release)
    platform_id = info.get("ID", "").lower()
    pretty = info.get("PRETTY_NAME", platform_id or "unknown")
    if not platform_id:
        return CheckResult("platform", False, f"cannot determine platform from {os_release}")
    if platform_id == expected.lower():
        return CheckResult("platform", True, pretty)
    return CheckResult("platform", False, f"running on {pretty}, expected {expected}")


def check_root() -> CheckResult:
    """The process runs with root privileges."""
    if os.geteuid() == 0:
        return CheckResult("root", True, "running as root")
    return CheckResult("root", False, "root privileges required, run with sudo")


def default_checks(settings: PreconditionSettings) -> List[Callable[[], CheckResult]]:
    """Build the check list for the given thresholds."""
    checks: List[Callable[[], CheckResult]] = []
    if settings.require_root:
        checks.append(check_root)
    checks.extend([
        lambda: check_disk_space(settings.min_disk_mb),
        lambda: check_memory(settings.min_memory_mb),
        lambda: check_cpu_cores(settings.min_cpu_cores),
        lambda: check_network(
            settings.network_check_host,
            settings.network_check_port,
            settings.network_timeout,
        ),
    ])
    if not settings.skip_platform_check:
        checks.append(lambda: check_platform(settings.expected_platform, settings.os_release_file))
    return checks


def run_preconditions(
    settings: PreconditionSettings,
    logger: Optional[logging.Logger] = None,
    checks: Optional[List[Callable[[], CheckResult]]] = None,
    stage_id: Optional[str] = None,
) -> List[CheckResult]:
    """
    Run all precondition checks.

    Args:
        settings: Thresholds and platform expectations
        logger: Logger for per-check results
        checks: Override the check list (defaults to default_checks(settings))
        stage_id: Stage the checks belong to, for log context

    Returns:
        All CheckResults (all passed)

    Raises:
        PreconditionError: If any check failed
    """
    logger = logger or logging.getLogger("vpsboot.preconditions")
    checks = default_checks(settings) if checks is None else checks

    results = []
    for check in checks:
        result = check()
        results.append(result)
        extra = {"event": "precondition_checked", "metadata": result.to_dict()}
        if stage_id:
            extra["stage"] = stage_id
        if result.passed:
            logger.info(f"Precondition {result.name} passed: {result.reason}", extra=extra)
        else:
            logger.error(f"Precondition {result.name} failed: {result.reason}", extra=extra)

    if settings.skip_platform_check:
        logger.warning(
            "Platform identity check skipped by operator",
            extra={"event": "precondition_skipped", "metadata": {"name": "platform"}},
        )

    failures = [r for r in results if not r.passed]
    if failures:
        raise PreconditionError(failures)
    return results
