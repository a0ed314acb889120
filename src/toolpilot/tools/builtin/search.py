"""Search tool: case-insensitive text search over files under a directory.

Risk: LOW (read-only, no side effects).

Walks the tree in a worker thread so the event loop stays free. Hidden
directories and files larger than 1MB are skipped.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from toolpilot.core.models import Capability, RiskLevel
from toolpilot.tools.registry import AgentState, Tool

_MAX_FILE_BYTES = 1_048_576


class SearchArgs(BaseModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=10, ge=1, le=500)
    path: str = Field(default=".", description="Directory to search under")


def search_files(root: str, query: str, max_results: int) -> list[dict[str, Any]]:
    needle = query.lower()
    hits: list[dict[str, Any]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            file = Path(dirpath) / name
            try:
                if file.stat().st_size > _MAX_FILE_BYTES:
                    continue
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for lineno, line in enumerate(text.splitlines(), start=1):
                if needle in line.lower():
                    hits.append({"path": str(file), "line": lineno, "text": line.strip()[:200]})
                    if len(hits) >= max_results:
                        return hits
    return hits


async def _search(args: dict[str, Any], state: AgentState) -> AgentState:
    loop = asyncio.get_running_loop()
    hits = await loop.run_in_executor(None, search_files, args["path"], args["query"], args["max_results"])
    return {**state, "search_results": hits, "last_output": hits}


SEARCH_TOOL = Tool(
    name="search",
    description="Search file contents under a directory for a text query.",
    handler=_search,
    arg_schema=SearchArgs,
    capabilities={Capability.FS_READ},
    risk=RiskLevel.LOW,
    time_budget_ms=5_000,
    memory_budget_mb=32,
)
