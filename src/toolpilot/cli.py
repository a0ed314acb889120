"""
ToolPilot CLI

Command-line interface over the built-in tools.

Commands:
    toolpilot route "text"     Rank candidate tools for an utterance
    toolpilot plan "text"      Show the plan without running it
    toolpilot run "text"       Plan and execute, print the turn result

Usage:
    toolpilot plan "read config.json and then write output.txt"
    toolpilot run --safety-config safety.json --approve "run ls in ./src"

All commands print JSON on stdout.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click

from toolpilot import __version__
from toolpilot.config import load_policy_table, load_safety_config
from toolpilot.core.models import ApprovalRequest
from toolpilot.engine.executor import AgentExecutor
from toolpilot.exceptions import ToolPilotError
from toolpilot.logging import configure_logging
from toolpilot.observability.recorder import ObservabilityManager
from toolpilot.planning.planner import plan_from_utterance, plan_summary
from toolpilot.routing.patterns import gate, matched_patterns
from toolpilot.routing.router import Router
from toolpilot.safety.engine import SafetyEngine
from toolpilot.tools.builtin import register_all_builtins
from toolpilot.tools.registry import ToolRegistry


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _builtin_registry() -> ToolRegistry:
    registry = ToolRegistry()
    register_all_builtins(registry)
    return registry


@click.group()
@click.version_option(version=__version__, prog_name="toolpilot")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...)")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines")
def cli(log_level: str | None, log_json: bool) -> None:
    """ToolPilot: route, plan and safely execute tool calls from text."""
    if log_level or log_json:
        configure_logging(level=log_level or "INFO", json_output=log_json)


@cli.command()
@click.argument("text")
def route(text: str) -> None:
    """Rank candidate tools for TEXT."""
    registry = _builtin_registry()
    gated = gate(text) & set(registry.names())
    result = Router(known_tools=registry.names()).route(text, gated)
    _echo_json({
        "patterns_matched": matched_patterns(text),
        "gated": sorted(gated),
        "candidates": [c.model_dump(mode="json") for c in result.candidates],
    })


@cli.command()
@click.argument("text")
def plan(text: str) -> None:
    """Build the plan for TEXT without executing it."""
    registry = _builtin_registry()
    try:
        built = plan_from_utterance(text, registry.list())
    except ToolPilotError as exc:
        _echo_json({"error": str(exc), "error_type": type(exc).__name__})
        raise SystemExit(1) from exc

    _echo_json({
        "summary": plan_summary(built),
        "risk_level": built.risk_level.value,
        "total_time_budget_ms": built.total_time_budget_ms,
        "total_memory_budget_mb": built.total_memory_budget_mb,
        "steps": [
            {
                "id": s.id,
                "tool": s.tool.name,
                "args": s.args,
                "depends_on": sorted(s.depends_on),
                "time_budget_ms": s.time_budget_ms,
            }
            for s in built.steps
        ],
    })


@cli.command()
@click.argument("text")
@click.option("--safety-config", type=click.Path(exists=True, dir_okay=False), help="Safety config JSON file")
@click.option("--policy-table", type=click.Path(exists=True, dir_okay=False), help="Risk policy overrides JSON file")
@click.option("--approve", is_flag=True, help="Auto-approve tools that require approval")
def run(text: str, safety_config: str | None, policy_table: str | None, approve: bool) -> None:
    """Plan and execute TEXT with the built-in tools."""

    def approval(request: ApprovalRequest) -> bool:
        click.echo(f"Approval requested for {request.tool_name} ({request.risk_level.value})", err=True)
        return approve

    try:
        executor = AgentExecutor(
            _builtin_registry(),
            safety=SafetyEngine(load_safety_config(safety_config)),
            observability=ObservabilityManager(),
            approval_callback=approval,
            policy_table=load_policy_table(policy_table) if policy_table else None,
        )
    except ToolPilotError as exc:
        _echo_json({"error": str(exc), "error_type": type(exc).__name__})
        raise SystemExit(2) from exc

    new_state, result = asyncio.run(executor.execute_turn({}, text))
    _echo_json({
        "result": result.model_dump(mode="json"),
        "state": new_state,
    })
    if not result.success:
        raise SystemExit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
