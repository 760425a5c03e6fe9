"""Base class for tool adapters."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from vpsboot.executor import CommandExecutor


class ToolAdapter(ABC):
    """
    Base class for tool adapters.

    Tool adapters provide a standardized interface for vpsboot stages to
    drive external tools (apt, docker compose, ...). Each adapter handles
    configuration loading, validation, and execution for its specific tool,
    and sends every command through the injected CommandExecutor.
    """

    def __init__(self, executor: CommandExecutor, config_path: Optional[Path] = None):
        """
        Initialize the tool adapter.

        Args:
            executor: Executor used for every tool command
            config_path: Path to the tool's configuration artifact, if any
        """
        self.executor = executor
        self.config_path = config_path
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """
        Load tool configuration.

        Returns:
            Dictionary containing the tool's configuration (empty by default)

        Raises:
            ValueError: If the config artifact is invalid
        """
        return {}

    @abstractmethod
    def validate(self) -> Dict[str, Any]:
        """
        Validate the tool's configuration and setup.

        Returns:
            Dictionary with keys:
                - 'valid': bool indicating if validation passed
                - 'errors': list of error messages (empty if valid)
                - 'warnings': list of warning messages (optional)
        """
        pass

    @abstractmethod
    def execute(self, *args, **kwargs) -> Any:
        """
        Execute a tool command.

        Returns:
            Tool-specific return value (typically subprocess.CompletedProcess)

        Raises:
            CommandError: If command execution fails
        """
        pass
