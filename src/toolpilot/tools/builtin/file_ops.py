"""File operations tools: read_file and write_file.

Two separate tools with different risk profiles:
- read_file: LOW risk (read-only, no side effects)
- write_file: MEDIUM risk (creates/modifies files)

Path allow-listing happens in the safety engine before either handler
runs; the handlers only do the I/O.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from toolpilot.core.models import Capability, RiskLevel
from toolpilot.exceptions import ValidationError
from toolpilot.tools.registry import AgentState, Predicate, Tool

MAX_READ_BYTES = 1_048_576


class ReadFileArgs(BaseModel):
    path: str = Field(min_length=1, description="Absolute or relative path to the file")


class WriteFileArgs(BaseModel):
    path: str = Field(min_length=1, description="Absolute or relative path for the file")
    content: str = Field(default="", description="Text to write; empty means the last tool output")


def _read_file(args: dict[str, Any], state: AgentState) -> AgentState:
    """Read a text file into ``state["files"]`` and ``state["last_output"]``."""
    path = Path(args["path"])
    size = path.stat().st_size
    if size > MAX_READ_BYTES:
        raise ValidationError("read_file", f"file too large ({size} bytes, max {MAX_READ_BYTES})")

    content = path.read_text(encoding="utf-8", errors="replace")
    files = dict(state.get("files", {}))
    files[args["path"]] = content
    return {**state, "files": files, "last_output": content}


def _write_file(args: dict[str, Any], state: AgentState) -> AgentState:
    """Write content to a file, creating parent directories if needed.

    With no explicit content, the previous step's text output is written,
    so "read a.txt and then write b.txt" copies the file.
    """
    content = args["content"]
    if not content and isinstance(state.get("last_output"), str):
        content = state["last_output"]

    path = Path(args["path"])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")

    written = [*state.get("written", []), args["path"]]
    return {**state, "written": written, "last_output": f"Written {len(content)} bytes to {args['path']}"}


def _file_exists(state: AgentState, args: Any) -> bool:
    return Path(args["path"]).is_file()


READ_FILE_TOOL = Tool(
    name="read_file",
    description="Read the contents of a text file.",
    handler=_read_file,
    arg_schema=ReadFileArgs,
    capabilities={Capability.FS_READ},
    risk=RiskLevel.LOW,
    time_budget_ms=2_000,
    memory_budget_mb=16,
    preconditions=[Predicate("file_exists", _file_exists, "file does not exist")],
)

WRITE_FILE_TOOL = Tool(
    name="write_file",
    description="Write text content to a file. Creates parent directories if needed.",
    handler=_write_file,
    arg_schema=WriteFileArgs,
    capabilities={Capability.FS_WRITE},
    risk=RiskLevel.MEDIUM,
    time_budget_ms=3_000,
    memory_budget_mb=16,
)
