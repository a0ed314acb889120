"""Shared test fixtures for the ToolPilot test suite."""

from typing import Any

import pytest
from pydantic import BaseModel

from toolpilot.core.models import Capability, RiskLevel
from toolpilot.observability.recorder import reset_observability_manager
from toolpilot.tools.builtin import register_all_builtins
from toolpilot.tools.registry import Tool, ToolRegistry


class EchoArgs(BaseModel):
    text: str = ""


def _echo(args: dict[str, Any], state: dict[str, Any]) -> dict[str, Any]:
    return {**state, "echo": args.get("text", "")}


@pytest.fixture(autouse=True)
def _fresh_observability():
    reset_observability_manager()
    yield
    reset_observability_manager()


@pytest.fixture
def registry():
    reg = ToolRegistry()
    register_all_builtins(reg)
    return reg


@pytest.fixture
def make_tool():
    """Factory for small in-memory tools."""

    def _make(
        name: str = "echo",
        handler=_echo,
        arg_schema=EchoArgs,
        risk: RiskLevel = RiskLevel.LOW,
        capabilities=(Capability.MEMORY_READ,),
        **kwargs,
    ) -> Tool:
        return Tool(
            name=name,
            handler=handler,
            arg_schema=arg_schema,
            risk=risk,
            capabilities=capabilities,
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_sleep():
    """Records requested sleep durations (seconds) instead of sleeping."""
    calls: list[float] = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls  # type: ignore[attr-defined]
    return _sleep
