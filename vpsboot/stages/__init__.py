"""
Bootstrap stages for vpsboot.

Each stage is responsible for one part of provisioning, in this order:
- system: preconditions, updates, base packages (may request a reboot)
- account: admin account, sudo, SSH keys
- ssh: hardened SSH daemon
- fail2ban: brute-force protection
- firewall: UFW rules
- docker: container runtime
- deploy: Docker Compose stack
"""

from typing import List, Optional, Sequence

from vpsboot.config import BootstrapConfig

from .base import Action, Stage, StageContext, StageResult, StageStatus
from .account import AccountStage
from .deploy import DeployStage
from .docker import DockerStage
from .security import Fail2BanStage, FirewallStage
from .ssh import SshStage
from .system import SystemStage

STAGE_CLASSES = (
    SystemStage,
    AccountStage,
    SshStage,
    Fail2BanStage,
    FirewallStage,
    DockerStage,
    DeployStage,
)


def build_stages(config: BootstrapConfig) -> List[Stage]:
    """Instantiate the stage chain in declared order."""
    return [cls(config) for cls in STAGE_CLASSES]


def find_stage(stages: Sequence[Stage], key: str) -> Optional[Stage]:
    """Look a stage up by id (STAGE_3) or name (ssh), case-insensitively."""
    wanted = key.strip().lower()
    for stage in stages:
        if stage.stage_id.lower() == wanted or stage.name.lower() == wanted:
            return stage
    return None


__all__ = [
    "AccountStage",
    "Action",
    "DeployStage",
    "DockerStage",
    "Fail2BanStage",
    "FirewallStage",
    "SshStage",
    "SystemStage",
    "Stage",
    "StageContext",
    "StageResult",
    "StageStatus",
    "STAGE_CLASSES",
    "build_stages",
    "find_stage",
]
