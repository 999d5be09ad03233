"""Tool routing and built-in tools."""

from .builtin import register_builtin_tools
from .context import ToolContext
from .router import ToolRegistry, ToolSpec

__all__ = ["ToolContext", "ToolRegistry", "ToolSpec", "register_builtin_tools"]
