"""
vpsboot - Re-entrant VPS bootstrap orchestrator

Provisions an Ubuntu host in ordered stages and hands off to Docker Compose.
Progress is persisted so an interrupted run (e.g. a reboot) resumes where it
stopped.
"""

__version__ = "0.1.0"
__author__ = "vpsboot maintainers"


__all__ = ["BootstrapConfig", "load_config", "get_vpsboot_home"]

from .config import BootstrapConfig, load_config, get_vpsboot_home
