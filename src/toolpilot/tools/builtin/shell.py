"""Shell tool: execute_command.

Risk: HIGH (arbitrary side effects).

The command is split with shlex and run without a shell, so the base
command the safety engine allow-listed is the program that runs.
Cancellation (policy timeout) kills the child process.
"""

from __future__ import annotations

import asyncio
import shlex
from typing import Any

from pydantic import BaseModel, Field

from toolpilot.core.models import Capability, RiskLevel
from toolpilot.exceptions import ToolExecutionError, ValidationError
from toolpilot.tools.registry import AgentState, Tool

_MAX_OUTPUT_BYTES = 65_536


class CommandArgs(BaseModel):
    command: str = Field(min_length=1)
    working_dir: str | None = None


def _truncate(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    if len(text) > _MAX_OUTPUT_BYTES:
        return text[:_MAX_OUTPUT_BYTES] + f"\n[TRUNCATED at {_MAX_OUTPUT_BYTES} bytes]"
    return text


async def _execute_command(args: dict[str, Any], state: AgentState) -> AgentState:
    try:
        argv = shlex.split(args["command"])
    except ValueError as exc:
        raise ValidationError("execute_command", f"cannot parse command: {exc}") from exc

    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=args["working_dir"],
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    result = {"exit_code": proc.returncode, "stdout": _truncate(stdout), "stderr": _truncate(stderr)}
    if proc.returncode != 0:
        raise ToolExecutionError(
            "execute_command",
            f"exit code {proc.returncode}: {result['stderr'][:200]}",
            details=result,
        )
    return {**state, "last_command": result, "last_output": result["stdout"]}


EXECUTE_COMMAND_TOOL = Tool(
    name="execute_command",
    description="Run a command (no shell) and capture its output.",
    handler=_execute_command,
    arg_schema=CommandArgs,
    capabilities={Capability.SHELL_EXEC, Capability.PROCESS_SPAWN},
    risk=RiskLevel.HIGH,
    time_budget_ms=30_000,
    memory_budget_mb=64,
)
