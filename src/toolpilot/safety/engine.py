"""
ToolPilot Safety Engine

Admission control in front of every policy-wrapped tool call:

- Allow-lists: file paths, network hosts and commands referenced by
  the arguments must be allowed before the tool body is ever reached.
  A list of None means unrestricted; an empty list denies everything.
- Quotas: a counting semaphore bounds concurrent calls across all
  steps. Memory and CPU-time quotas are checked against the budgets a
  tool (or plan) declares; measuring real consumption is left to the
  execution environment.
- Idempotency: identical calls (same tool, same normalized arguments)
  within the window replay the cached outcome instead of re-running.
  Only successful outcomes are cached, and only as the change they made
  to the state, so a replay never rolls back newer state keys.

Note: path checks are advisory pre-flight checks on the arguments, the
same way an allow-listing proxy would work. They are not an OS-level
sandbox.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import json
import logging
import os
import shlex
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from toolpilot.core.models import Capability, FILESYSTEM_CAPABILITIES
from toolpilot.exceptions import PolicyViolationError
from toolpilot.observability.metrics import record_policy_violation
from toolpilot.tools.registry import AgentState, Tool

if TYPE_CHECKING:
    from toolpilot.planning.planner import Plan
    from toolpilot.policy.decorator import CallStats, PolicyWrappedTool

logger = logging.getLogger(__name__)

IdempotencyKeyFn = Callable[[str, dict[str, Any]], str]

_GLOB_CHARS = set("*?[")


class Allowlists(BaseModel):
    file_paths: list[str] | None = None
    network_hosts: list[str] | None = None
    commands: list[str] | None = None


class Quotas(BaseModel):
    max_concurrency: int = Field(default=10, ge=1)
    max_memory_mb: int | None = Field(default=None, ge=0)
    max_cpu_time_ms: int | None = Field(default=None, ge=0)


class IdempotencyConfig(BaseModel):
    enabled: bool = False
    window_ms: int = Field(default=300_000, ge=0)
    key_fn: IdempotencyKeyFn | None = Field(default=None, exclude=True)


class SafetyConfig(BaseModel):
    """Process-wide safety settings. Loaded once, read-only afterwards."""

    allowlists: Allowlists = Field(default_factory=Allowlists)
    quotas: Quotas = Field(default_factory=Quotas)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    base_dir: str | None = None


# ─── Key derivation ──────────────────────────────────────────


def normalize_args(value: Any) -> Any:
    """Drop None values recursively so absent and null arguments agree."""
    if isinstance(value, Mapping):
        return {str(k): normalize_args(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [normalize_args(v) for v in value]
    return value


def idempotency_key(tool_name: str, args: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``(tool_name, args)``."""
    canonical = json.dumps(
        {"tool": tool_name, "args": normalize_args(args)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class StateChange:
    """Keys a successful call set or overwrote, and keys it dropped."""

    updated: dict[str, Any]
    removed: frozenset[str]

    @classmethod
    def between(cls, before: AgentState, after: AgentState) -> StateChange:
        updated = {k: v for k, v in after.items() if k not in before or before[k] != v}
        return cls(updated=updated, removed=frozenset(k for k in before if k not in after))

    def apply(self, state: AgentState) -> AgentState:
        result = {k: v for k, v in state.items() if k not in self.removed}
        result.update(self.updated)
        return result


# ─── Allow-list matching ─────────────────────────────────────


def _has_glob(value: str) -> bool:
    return any(ch in _GLOB_CHARS for ch in value)


def _resolve_pattern(entry: str, base_dir: str) -> str:
    joined = os.path.normpath(os.path.join(base_dir, os.path.expanduser(entry)))
    if not _has_glob(joined):
        return os.path.realpath(joined)
    parts = joined.split(os.sep)
    first_glob = next(i for i, part in enumerate(parts) if _has_glob(part))
    static = os.sep.join(parts[:first_glob]) or os.sep
    return os.path.join(os.path.realpath(static), *parts[first_glob:])


def path_allowed(path: str, allowed: list[str] | None, base_dir: str | None = None) -> bool:
    """Prefix match for plain entries, fnmatch for glob entries."""
    if allowed is None:
        return True
    base = base_dir or os.getcwd()
    resolved = os.path.realpath(os.path.join(base, os.path.expanduser(path)))
    for entry in allowed:
        pattern = _resolve_pattern(entry, base)
        if _has_glob(pattern):
            if fnmatch.fnmatch(resolved, pattern):
                return True
            # "dir/*" also admits "dir" itself
            if pattern.endswith(os.sep + "*") and resolved == pattern[:-2]:
                return True
        elif resolved == pattern or resolved.startswith(pattern.rstrip(os.sep) + os.sep):
            return True
    return False


def host_allowed(host: str, allowed: list[str] | None) -> bool:
    """Exact host, any subdomain of an entry, or a ``*.`` wildcard."""
    if allowed is None:
        return True
    host = host.lower().rstrip(".")
    for entry in allowed:
        entry = entry.lower().rstrip(".")
        if entry.startswith("*."):
            if host.endswith(entry[1:]):
                return True
        elif host == entry or host.endswith("." + entry):
            return True
    return False


def base_command(command: str) -> str | None:
    try:
        tokens = shlex.split(command)
    except ValueError:
        return None
    if not tokens:
        return None
    return os.path.basename(tokens[0])


def command_allowed(command: str, allowed: list[str] | None) -> bool:
    if allowed is None:
        return True
    base = base_command(command)
    if base is None:
        return False
    return any(base == entry or base == os.path.basename(entry) for entry in allowed)


# ─── Engine ──────────────────────────────────────────────────


class SafetyEngine:
    """Enforces allow-lists, quotas and idempotency around tool calls."""

    def __init__(
        self,
        config: SafetyConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or SafetyConfig()
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self._config.quotas.max_concurrency)
        self._in_flight = 0
        self._cache: dict[str, tuple[float, StateChange]] = {}
        self._pending: dict[str, asyncio.Future] = {}

    @property
    def config(self) -> SafetyConfig:
        return self._config

    @property
    def limits(self) -> Quotas:
        return self._config.quotas

    @property
    def in_flight(self) -> int:
        """Calls currently holding a concurrency slot."""
        return self._in_flight

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ── pre-flight checks ──

    def _violation(self, tool_name: str, rule: str, message: str, **details: Any) -> PolicyViolationError:
        record_policy_violation(tool_name=tool_name, rule=rule)
        logger.warning(message, extra={"tool_name": tool_name, "rule": rule})
        return PolicyViolationError(tool_name, rule, message, details=details)

    def check_allowlists(self, tool: Tool, args: Mapping[str, Any]) -> None:
        """Raise PolicyViolationError if any referenced resource is not allowed."""
        lists = self._config.allowlists
        base_dir = self._config.base_dir

        paths: list[str] = []
        if tool.capabilities & FILESYSTEM_CAPABILITIES and args.get("path"):
            paths.append(str(args["path"]))
        if args.get("working_dir"):
            paths.append(str(args["working_dir"]))
        for path in paths:
            if not path_allowed(path, lists.file_paths, base_dir):
                raise self._violation(
                    tool.name, "allowlist.path", f"File path not allowed: {path}", path=path,
                )

        if Capability.NET_HTTP in tool.capabilities and args.get("url"):
            host = urlparse(str(args["url"])).hostname or ""
            if not host or not host_allowed(host, lists.network_hosts):
                raise self._violation(
                    tool.name, "allowlist.host", f"Network host not allowed: {host or args['url']}", host=host,
                )

        if tool.has_capability(Capability.SHELL_EXEC, Capability.PROCESS_SPAWN) and args.get("command"):
            command = str(args["command"])
            if not command_allowed(command, lists.commands):
                raise self._violation(
                    tool.name,
                    "allowlist.command",
                    f"Command not allowed: {base_command(command) or command}",
                    command=command,
                )

    def check_budgets(self, tool: Tool) -> None:
        """Reject tools whose declared budgets exceed the quotas."""
        quotas = self._config.quotas
        if (
            quotas.max_memory_mb is not None
            and tool.memory_budget_mb is not None
            and tool.memory_budget_mb > quotas.max_memory_mb
        ):
            raise self._violation(
                tool.name,
                "quota.memory",
                f"Memory budget {tool.memory_budget_mb}MB exceeds quota {quotas.max_memory_mb}MB",
            )
        if (
            quotas.max_cpu_time_ms is not None
            and tool.time_budget_ms is not None
            and tool.time_budget_ms > quotas.max_cpu_time_ms
        ):
            raise self._violation(
                tool.name,
                "quota.cpu_time",
                f"Time budget {tool.time_budget_ms}ms exceeds quota {quotas.max_cpu_time_ms}ms",
            )

    def check_plan(self, plan: Plan) -> None:
        """Apply the memory and CPU-time quotas to a plan's totals."""
        quotas = self._config.quotas
        label = ",".join(plan.tool_names)
        if quotas.max_memory_mb is not None and plan.total_memory_budget_mb > quotas.max_memory_mb:
            raise self._violation(
                label,
                "quota.memory",
                f"Plan memory budget {plan.total_memory_budget_mb}MB exceeds quota {quotas.max_memory_mb}MB",
            )
        if quotas.max_cpu_time_ms is not None and plan.total_time_budget_ms > quotas.max_cpu_time_ms:
            raise self._violation(
                label,
                "quota.cpu_time",
                f"Plan time budget {plan.total_time_budget_ms}ms exceeds quota {quotas.max_cpu_time_ms}ms",
            )

    # ── idempotency ──

    def key_for(self, tool_name: str, args: Mapping[str, Any]) -> str:
        key_fn = self._config.idempotency.key_fn
        if key_fn is not None:
            return key_fn(tool_name, normalize_args(args))
        return idempotency_key(tool_name, args)

    def _expired(self, stored_at: float) -> bool:
        return (self._clock() - stored_at) * 1000 > self._config.idempotency.window_ms

    def _cached(self, key: str) -> StateChange | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, change = entry
        if self._expired(stored_at):
            del self._cache[key]
            return None
        return change

    def _store(self, key: str, change: StateChange) -> None:
        for stale in [k for k, (stored_at, _) in self._cache.items() if self._expired(stored_at)]:
            del self._cache[stale]
        self._cache[key] = (self._clock(), change)

    # ── execution ──

    def _anchor_paths(self, tool: Tool, args: dict[str, Any]) -> dict[str, Any]:
        """Rewrite relative path arguments against ``base_dir``.

        The tool then opens exactly the path the allow-list check saw.
        """
        base_dir = self._config.base_dir
        if not base_dir:
            return args
        fields = ["working_dir"]
        if tool.capabilities & FILESYSTEM_CAPABILITIES:
            fields.append("path")
        anchored = dict(args)
        for name in fields:
            value = anchored.get(name)
            if isinstance(value, str) and value:
                expanded = os.path.expanduser(value)
                if not os.path.isabs(expanded):
                    anchored[name] = os.path.normpath(os.path.join(base_dir, expanded))
        return anchored

    async def _run(
        self,
        wrapped: PolicyWrappedTool,
        args: Mapping[str, Any],
        state: AgentState,
        stats: CallStats | None,
    ) -> AgentState:
        async with self._semaphore:
            self._in_flight += 1
            try:
                return await wrapped(args, state, stats)
            finally:
                self._in_flight -= 1

    async def execute(
        self,
        wrapped: PolicyWrappedTool,
        args: Mapping[str, Any],
        state: AgentState,
        stats: CallStats | None = None,
    ) -> AgentState:
        """Admit and run one policy-wrapped call.

        Arguments are checked in the form the tool will receive them:
        schema defaults filled in and relative paths anchored at
        ``base_dir``. Raises ValidationError for arguments the schema
        rejects, PolicyViolationError (body never invoked) for a breach,
        or whatever the wrapped call raises.
        """
        tool = wrapped.tool
        call_args = self._anchor_paths(tool, wrapped.normalize(args))
        self.check_allowlists(tool, call_args)
        self.check_budgets(tool)

        if not self._config.idempotency.enabled:
            return await self._run(wrapped, call_args, state, stats)

        key = self.key_for(tool.name, call_args)
        cached = self._cached(key)
        if cached is not None:
            logger.debug("Idempotent hit for %s", tool.name, extra={"tool_name": tool.name})
            return cached.apply(state)

        pending = self._pending.get(key)
        if pending is not None:
            change = await asyncio.shield(pending)
            return change.apply(state)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = await self._run(wrapped, call_args, state, stats)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # mark retrieved so an unawaited future does not warn
            future.exception()
            raise
        else:
            change = StateChange.between(state, result)
            self._store(key, change)
            future.set_result(change)
            return dict(result)
        finally:
            self._pending.pop(key, None)
