"""
ToolPilot Built-in Tools

Reference implementations of the five tools the default pattern table
and argument extractors know about.
"""

from toolpilot.tools.registry import ToolRegistry

from toolpilot.tools.builtin.file_ops import READ_FILE_TOOL, WRITE_FILE_TOOL
from toolpilot.tools.builtin.http_client import API_CALL_TOOL
from toolpilot.tools.builtin.search import SEARCH_TOOL
from toolpilot.tools.builtin.shell import EXECUTE_COMMAND_TOOL

ALL_BUILTIN_TOOLS = [
    READ_FILE_TOOL,
    WRITE_FILE_TOOL,
    SEARCH_TOOL,
    API_CALL_TOOL,
    EXECUTE_COMMAND_TOOL,
]


def register_all_builtins(registry: ToolRegistry) -> None:
    """Register all built-in tools with the given registry."""
    for tool in ALL_BUILTIN_TOOLS:
        registry.register(tool)
