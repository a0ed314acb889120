"""HTTP client tool: api_call.

Risk: MEDIUM (can interact with external services).

Uses urllib in a worker thread. Host allow-listing is handled by the
safety engine, not here. Server errors (5xx) and connection failures
raise ToolExecutionError so the policy decorator can retry them;
client errors (4xx) are returned as a response.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Literal
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import BaseModel, Field

from toolpilot import __version__
from toolpilot.core.models import Capability, RiskLevel
from toolpilot.exceptions import ToolExecutionError
from toolpilot.tools.registry import AgentState, Tool

_REQUEST_TIMEOUT = 10  # seconds
_MAX_BODY_CHARS = 32_768


class ApiCallArgs(BaseModel):
    url: str = Field(pattern=r"^https?://")
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


def _do_request(args: dict[str, Any]) -> dict[str, Any]:
    headers = {"User-Agent": f"ToolPilot/{__version__}", **args["headers"]}
    body = args["body"]
    data = None
    if isinstance(body, (dict, list)):
        data = json.dumps(body).encode("utf-8")
        headers.setdefault("Content-Type", "application/json")
    elif body is not None:
        data = str(body).encode("utf-8")

    req = Request(args["url"], data=data, headers=headers, method=args["method"])
    try:
        with urlopen(req, timeout=_REQUEST_TIMEOUT) as resp:  # noqa: S310
            status = resp.status
            text = resp.read().decode("utf-8", errors="replace")
    except HTTPError as e:
        if e.code >= 500:
            raise ToolExecutionError("api_call", f"HTTP {e.code}: {e.reason}", details={"status": e.code}) from e
        status = e.code
        text = e.read().decode("utf-8", errors="replace")
    except URLError as e:
        raise ToolExecutionError("api_call", f"Connection error: {e.reason}") from e

    if len(text) > _MAX_BODY_CHARS:
        text = text[:_MAX_BODY_CHARS] + "\n[TRUNCATED]"
    return {"status": status, "body": text}


async def _api_call(args: dict[str, Any], state: AgentState) -> AgentState:
    # Run in thread pool to avoid blocking the event loop
    response = await asyncio.get_running_loop().run_in_executor(None, _do_request, args)
    return {**state, "last_response": response, "last_output": response["body"]}


API_CALL_TOOL = Tool(
    name="api_call",
    description="Make an HTTP request to an external API and return the response.",
    handler=_api_call,
    arg_schema=ApiCallArgs,
    capabilities={Capability.NET_HTTP},
    risk=RiskLevel.MEDIUM,
    time_budget_ms=10_000,
    memory_budget_mb=32,
)
