"""Tool adapters for driving external tools from vpsboot stages."""

from vpsboot.tools.base import ToolAdapter
from vpsboot.tools.apt import AptAdapter
from vpsboot.tools.compose import ComposeAdapter

__all__ = ["ToolAdapter", "AptAdapter", "ComposeAdapter"]
