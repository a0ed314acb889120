"""ToolPilot tool registry and built-in tools."""

from toolpilot.tools.registry import AgentState, Predicate, Tool, ToolListing, ToolRegistry

__all__ = ["AgentState", "Predicate", "Tool", "ToolListing", "ToolRegistry"]
