"""
ToolPilot Tool Registry

Central registry for every tool the router may select. Each tool is
registered once, with immutable metadata (capabilities, risk level,
budgets, pre/postconditions, argument schema) and the handler that
performs the work.

The registry owns the Tool objects; the router, planner and policy
decorator hold references to them and never copy them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from typing import Any

from pydantic import BaseModel

from toolpilot.core.models import Capability, Policy, RiskLevel
from toolpilot.exceptions import DuplicateToolError

AgentState = dict[str, Any]
ToolHandler = Callable[[dict[str, Any], AgentState], AgentState | Awaitable[AgentState]]


class Predicate:
    """A named check run before (args) or after (output state) a tool call.

    ``check`` receives ``(state, value)`` and returns a bool. For a
    precondition ``value`` is the argument dict; for a postcondition it
    is the state returned by the tool.
    """

    __slots__ = ("name", "check", "message")

    def __init__(self, name: str, check: Callable[[AgentState, Any], bool], message: str = ""):
        self.name = name
        self.check = check
        self.message = message or f"Condition '{name}' not satisfied"

    def __repr__(self) -> str:
        return f"Predicate({self.name!r})"


class Tool:
    """An invocable tool with immutable metadata.

    Attributes are exposed as read-only properties; there is no way to
    change a Tool after construction.
    """

    __slots__ = (
        "_name",
        "_description",
        "_capabilities",
        "_risk",
        "_time_budget_ms",
        "_memory_budget_mb",
        "_preconditions",
        "_postconditions",
        "_arg_schema",
        "_handler",
        "_policy",
    )

    def __init__(
        self,
        name: str,
        handler: ToolHandler,
        arg_schema: type[BaseModel],
        description: str = "",
        capabilities: Iterable[Capability] = (),
        risk: RiskLevel = RiskLevel.LOW,
        time_budget_ms: int | None = None,
        memory_budget_mb: int | None = None,
        preconditions: Iterable[Predicate] = (),
        postconditions: Iterable[Predicate] = (),
        policy: Policy | None = None,
    ):
        if not name:
            raise ValueError("Tool name must be non-empty")
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_description", description)
        object.__setattr__(self, "_capabilities", frozenset(capabilities))
        object.__setattr__(self, "_risk", risk)
        object.__setattr__(self, "_time_budget_ms", time_budget_ms)
        object.__setattr__(self, "_memory_budget_mb", memory_budget_mb)
        object.__setattr__(self, "_preconditions", tuple(preconditions))
        object.__setattr__(self, "_postconditions", tuple(postconditions))
        object.__setattr__(self, "_arg_schema", arg_schema)
        object.__setattr__(self, "_handler", handler)
        object.__setattr__(self, "_policy", policy)

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"Tool '{self._name}' is immutable")

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self._capabilities

    @property
    def risk(self) -> RiskLevel:
        return self._risk

    @property
    def time_budget_ms(self) -> int | None:
        return self._time_budget_ms

    @property
    def memory_budget_mb(self) -> int | None:
        return self._memory_budget_mb

    @property
    def preconditions(self) -> tuple[Predicate, ...]:
        return self._preconditions

    @property
    def postconditions(self) -> tuple[Predicate, ...]:
        return self._postconditions

    @property
    def arg_schema(self) -> type[BaseModel]:
        return self._arg_schema

    @property
    def handler(self) -> ToolHandler:
        return self._handler

    @property
    def policy(self) -> Policy | None:
        """Per-tool policy override; None means the risk table default."""
        return self._policy

    def has_capability(self, *capabilities: Capability) -> bool:
        return any(c in self._capabilities for c in capabilities)

    def __repr__(self) -> str:
        return f"Tool({self._name!r}, risk={self._risk.value})"


class ToolListing:
    """Lazy, restartable view over the registry.

    Every iteration re-reads the registry and re-applies the filter, so
    the listing reflects tools registered after it was created.
    """

    def __init__(
        self,
        tools: dict[str, Tool],
        capability: Capability | None = None,
        risk: RiskLevel | None = None,
        max_risk: RiskLevel | None = None,
    ):
        self._tools = tools
        self._capability = capability
        self._risk = risk
        self._max_risk = max_risk

    def __iter__(self) -> Iterator[Tool]:
        for tool in list(self._tools.values()):
            if self._capability is not None and self._capability not in tool.capabilities:
                continue
            if self._risk is not None and tool.risk != self._risk:
                continue
            if self._max_risk is not None and tool.risk.rank > self._max_risk.rank:
                continue
            yield tool


class ToolRegistry:
    """Central registry for all available tools.

    Tools are registered once at startup and looked up on every turn.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Raises DuplicateToolError if a tool with the same name exists.
        """
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        """Look up a tool by name. Returns None when absent."""
        return self._tools.get(name)

    def list(
        self,
        capability: Capability | None = None,
        risk: RiskLevel | None = None,
        max_risk: RiskLevel | None = None,
    ) -> ToolListing:
        """Tools matching an optional capability / exact risk / risk ceiling."""
        return ToolListing(self._tools, capability=capability, risk=risk, max_risk=max_risk)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        """Tool-use schemas (name, description, JSON schema of the arguments)."""
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.arg_schema.model_json_schema(),
            }
            for t in self._tools.values()
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
