"""
Tests for the safety engine.

Verifies:
- Path, host and command allow-lists (tool body never reached on breach)
- Declared budget quotas and plan quotas
- Concurrency semaphore released on every exit path
- Idempotency cache, in-flight sharing and window expiry
- Arguments checked after schema defaults and base_dir anchoring
"""

import asyncio

import pytest
from pydantic import BaseModel

from toolpilot.core.models import Capability, RiskLevel
from toolpilot.exceptions import PolicyViolationError, ToolExecutionError, ValidationError
from toolpilot.planning.planner import plan_from_utterance
from toolpilot.policy.decorator import with_policies
from toolpilot.safety.engine import (
    Allowlists,
    IdempotencyConfig,
    Quotas,
    SafetyConfig,
    SafetyEngine,
    base_command,
    command_allowed,
    host_allowed,
    idempotency_key,
    normalize_args,
    path_allowed,
)
from toolpilot.tools.builtin.file_ops import READ_FILE_TOOL
from toolpilot.tools.builtin.search import SEARCH_TOOL


class FileArgs(BaseModel):
    path: str


class UrlArgs(BaseModel):
    url: str


class CommandArgs(BaseModel):
    command: str
    working_dir: str | None = None


def counting_handler():
    calls = {"n": 0}

    async def handler(args, state):
        calls["n"] += 1
        return {**state, "count": calls["n"]}

    handler.calls = calls
    return handler


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ─── Matching helpers ──────────────────────────────────────


class TestPathAllowed:
    def test_unrestricted(self):
        assert path_allowed("/etc/passwd", None)

    def test_empty_list_denies(self, tmp_path):
        assert not path_allowed(str(tmp_path / "a.txt"), [])

    def test_prefix_entry(self, tmp_path):
        allowed = [str(tmp_path / "data")]
        assert path_allowed(str(tmp_path / "data" / "x.csv"), allowed)
        assert path_allowed(str(tmp_path / "data"), allowed)
        assert not path_allowed(str(tmp_path / "database.db"), allowed)

    def test_glob_entry(self, tmp_path):
        allowed = [str(tmp_path / "*")]
        assert path_allowed(str(tmp_path / "notes.txt"), allowed)
        assert path_allowed(str(tmp_path), allowed)
        assert not path_allowed("/etc/passwd", allowed)

    def test_relative_to_base_dir(self, tmp_path):
        assert path_allowed("notes.txt", ["./*"], base_dir=str(tmp_path))
        assert not path_allowed("../escape.txt", ["./*"], base_dir=str(tmp_path))

    def test_extension_glob(self, tmp_path):
        allowed = [str(tmp_path / "*.md")]
        assert path_allowed(str(tmp_path / "README.md"), allowed)
        assert not path_allowed(str(tmp_path / "run.sh"), allowed)


class TestHostAllowed:
    def test_exact_and_subdomain(self):
        assert host_allowed("api.github.com", ["api.github.com"])
        assert host_allowed("uploads.github.com", ["github.com"])
        assert not host_allowed("evilgithub.com", ["github.com"])

    def test_wildcard(self):
        assert host_allowed("api.openai.com", ["*.openai.com"])
        assert not host_allowed("openai.com", ["*.openai.com"])

    def test_case_insensitive(self):
        assert host_allowed("API.GitHub.com", ["api.github.com"])

    def test_none_and_empty(self):
        assert host_allowed("anything.example", None)
        assert not host_allowed("anything.example", [])


class TestCommandAllowed:
    def test_base_command(self):
        assert base_command("/bin/ls -la") == "ls"
        assert base_command("") is None
        assert base_command('echo "unterminated') is None

    def test_allowed(self):
        assert command_allowed("ls -la", ["ls", "echo"])
        assert command_allowed("/bin/ls -la", ["ls"])
        assert not command_allowed("rm -rf /", ["ls"])
        assert not command_allowed('echo "unterminated', ["echo"])
        assert command_allowed("rm -rf /", None)


class TestIdempotencyKey:
    def test_none_values_ignored(self):
        assert idempotency_key("t", {"a": 1, "b": None}) == idempotency_key("t", {"a": 1})

    def test_key_order_ignored(self):
        assert idempotency_key("t", {"a": 1, "b": 2}) == idempotency_key("t", {"b": 2, "a": 1})

    def test_tool_name_matters(self):
        assert idempotency_key("t1", {"a": 1}) != idempotency_key("t2", {"a": 1})

    def test_normalize_nested(self):
        assert normalize_args({"a": {"b": None, "c": [1, {"d": None}]}}) == {"a": {"c": [1, {}]}}


# ─── Engine: allow-lists and quotas ────────────────────────


class TestAllowlistEnforcement:
    @pytest.mark.asyncio
    async def test_path_outside_allowlist_never_invokes_body(self, make_tool, tmp_path):
        handler = counting_handler()
        tool = make_tool("read_file", handler=handler, arg_schema=FileArgs, capabilities=[Capability.FS_READ])
        engine = SafetyEngine(SafetyConfig(allowlists=Allowlists(file_paths=[str(tmp_path / "*")])))

        with pytest.raises(PolicyViolationError) as exc_info:
            await engine.execute(with_policies(tool), {"path": "/etc/passwd"}, {})

        assert exc_info.value.rule == "allowlist.path"
        assert handler.calls["n"] == 0

        await engine.execute(with_policies(tool), {"path": str(tmp_path / "ok.txt")}, {})
        assert handler.calls["n"] == 1

    @pytest.mark.asyncio
    async def test_host_outside_allowlist(self, make_tool):
        handler = counting_handler()
        tool = make_tool("api_call", handler=handler, arg_schema=UrlArgs, capabilities=[Capability.NET_HTTP])
        engine = SafetyEngine(SafetyConfig(allowlists=Allowlists(network_hosts=["api.github.com"])))

        with pytest.raises(PolicyViolationError) as exc_info:
            await engine.execute(with_policies(tool), {"url": "https://evil.example/x"}, {})
        assert exc_info.value.rule == "allowlist.host"
        assert handler.calls["n"] == 0

    @pytest.mark.asyncio
    async def test_command_and_working_dir(self, make_tool, tmp_path):
        handler = counting_handler()
        tool = make_tool(
            "execute_command",
            handler=handler,
            arg_schema=CommandArgs,
            capabilities=[Capability.SHELL_EXEC],
            risk=RiskLevel.HIGH,
        )
        engine = SafetyEngine(
            SafetyConfig(allowlists=Allowlists(commands=["ls"], file_paths=[str(tmp_path)]))
        )

        with pytest.raises(PolicyViolationError) as exc_info:
            await engine.execute(with_policies(tool), {"command": "rm -rf /"}, {})
        assert exc_info.value.rule == "allowlist.command"

        with pytest.raises(PolicyViolationError) as exc_info:
            await engine.execute(with_policies(tool), {"command": "ls", "working_dir": "/etc"}, {})
        assert exc_info.value.rule == "allowlist.path"

        await engine.execute(with_policies(tool), {"command": "ls", "working_dir": str(tmp_path)}, {})
        assert handler.calls["n"] == 1

    @pytest.mark.asyncio
    async def test_non_fs_tool_path_arg_ignored(self, make_tool):
        handler = counting_handler()
        tool = make_tool("note", handler=handler, arg_schema=FileArgs, capabilities=[Capability.MEMORY_WRITE])
        engine = SafetyEngine(SafetyConfig(allowlists=Allowlists(file_paths=[])))
        await engine.execute(with_policies(tool), {"path": "/etc/passwd"}, {})
        assert handler.calls["n"] == 1


class TestSchemaDefaultsChecked:
    @pytest.mark.asyncio
    async def test_default_search_root_outside_allowlist(self, tmp_path, monkeypatch):
        sandbox = tmp_path / "sandbox"
        outside = tmp_path / "outside"
        sandbox.mkdir()
        outside.mkdir()
        (outside / "secret.txt").write_text("password=hunter2")
        monkeypatch.chdir(outside)
        engine = SafetyEngine(SafetyConfig(allowlists=Allowlists(file_paths=[str(sandbox)])))

        with pytest.raises(PolicyViolationError) as exc_info:
            await engine.execute(with_policies(SEARCH_TOOL), {"query": "password"}, {})
        assert exc_info.value.rule == "allowlist.path"

    @pytest.mark.asyncio
    async def test_default_search_root_inside_allowlist(self, tmp_path, monkeypatch):
        (tmp_path / "notes.txt").write_text("password reminder")
        monkeypatch.chdir(tmp_path)
        engine = SafetyEngine(SafetyConfig(allowlists=Allowlists(file_paths=[str(tmp_path)])))

        state = await engine.execute(with_policies(SEARCH_TOOL), {"query": "password"}, {})
        assert [hit["line"] for hit in state["search_results"]] == [1]

    @pytest.mark.asyncio
    async def test_schema_rejection_before_body(self, make_tool):
        handler = counting_handler()
        tool = make_tool("read_file", handler=handler, arg_schema=FileArgs, capabilities=[Capability.FS_READ])
        with pytest.raises(ValidationError):
            await SafetyEngine().execute(with_policies(tool), {}, {})
        assert handler.calls["n"] == 0


class TestBaseDir:
    @pytest.mark.asyncio
    async def test_tool_opens_the_checked_path(self, tmp_path, monkeypatch):
        base = tmp_path / "base"
        cwd = tmp_path / "cwd"
        base.mkdir()
        cwd.mkdir()
        (base / "notes.txt").write_text("inside")
        (cwd / "notes.txt").write_text("outside")
        monkeypatch.chdir(cwd)
        engine = SafetyEngine(
            SafetyConfig(allowlists=Allowlists(file_paths=[str(base / "*")]), base_dir=str(base))
        )

        state = await engine.execute(with_policies(READ_FILE_TOOL), {"path": "notes.txt"}, {})

        assert state["last_output"] == "inside"
        assert list(state["files"]) == [str(base / "notes.txt")]

    @pytest.mark.asyncio
    async def test_relative_working_dir_anchored(self, make_tool, tmp_path):
        seen = {}

        async def handler(args, state):
            seen.update(args)
            return state

        tool = make_tool(
            "execute_command",
            handler=handler,
            arg_schema=CommandArgs,
            capabilities=[Capability.SHELL_EXEC],
            risk=RiskLevel.HIGH,
        )
        engine = SafetyEngine(SafetyConfig(base_dir=str(tmp_path)))
        await engine.execute(with_policies(tool), {"command": "ls", "working_dir": "sub"}, {})
        assert seen["working_dir"] == str(tmp_path / "sub")

    @pytest.mark.asyncio
    async def test_absolute_path_untouched(self, make_tool, tmp_path):
        seen = {}

        async def handler(args, state):
            seen.update(args)
            return state

        tool = make_tool("read_file", handler=handler, arg_schema=FileArgs, capabilities=[Capability.FS_READ])
        engine = SafetyEngine(SafetyConfig(base_dir=str(tmp_path / "base")))
        await engine.execute(with_policies(tool), {"path": str(tmp_path / "x.txt")}, {})
        assert seen["path"] == str(tmp_path / "x.txt")


class TestQuotas:
    @pytest.mark.asyncio
    async def test_memory_budget_over_quota(self, make_tool):
        handler = counting_handler()
        tool = make_tool(handler=handler, memory_budget_mb=64)
        engine = SafetyEngine(SafetyConfig(quotas=Quotas(max_memory_mb=32)))
        with pytest.raises(PolicyViolationError) as exc_info:
            await engine.execute(with_policies(tool), {}, {})
        assert exc_info.value.rule == "quota.memory"
        assert handler.calls["n"] == 0

    @pytest.mark.asyncio
    async def test_time_budget_over_quota(self, make_tool):
        tool = make_tool(time_budget_ms=10_000)
        engine = SafetyEngine(SafetyConfig(quotas=Quotas(max_cpu_time_ms=5_000)))
        with pytest.raises(PolicyViolationError, match="quota.cpu_time"):
            await engine.execute(with_policies(tool), {}, {})

    def test_check_plan(self, registry):
        plan = plan_from_utterance("read a.txt and then write b.txt", registry.list())
        SafetyEngine(SafetyConfig(quotas=Quotas(max_cpu_time_ms=5_000))).check_plan(plan)
        with pytest.raises(PolicyViolationError):
            SafetyEngine(SafetyConfig(quotas=Quotas(max_cpu_time_ms=4_999))).check_plan(plan)
        with pytest.raises(PolicyViolationError):
            SafetyEngine(SafetyConfig(quotas=Quotas(max_memory_mb=31))).check_plan(plan)

    def test_limits_exposed(self):
        engine = SafetyEngine(SafetyConfig(quotas=Quotas(max_concurrency=3, max_memory_mb=128)))
        assert engine.limits.max_concurrency == 3
        assert engine.limits.max_memory_mb == 128


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_semaphore_bounds_in_flight(self, make_tool):
        active = {"now": 0, "peak": 0}

        async def handler(args, state):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return state

        tool = make_tool(handler=handler)
        engine = SafetyEngine(SafetyConfig(quotas=Quotas(max_concurrency=2)))
        await asyncio.gather(*(engine.execute(with_policies(tool), {"text": str(i)}, {}) for i in range(6)))
        assert active["peak"] == 2
        assert engine.in_flight == 0

    @pytest.mark.asyncio
    async def test_slot_released_on_failure(self, make_tool):
        async def boom(args, state):
            raise RuntimeError("boom")

        engine = SafetyEngine(SafetyConfig(quotas=Quotas(max_concurrency=1)))
        for _ in range(3):
            with pytest.raises(ToolExecutionError):
                await engine.execute(with_policies(make_tool(handler=boom)), {}, {})
        assert engine.in_flight == 0

    @pytest.mark.asyncio
    async def test_slot_released_on_cancel(self, make_tool):
        started = asyncio.Event()

        async def hang(args, state):
            started.set()
            await asyncio.sleep(10)
            return state

        engine = SafetyEngine(SafetyConfig(quotas=Quotas(max_concurrency=1)))
        task = asyncio.create_task(engine.execute(with_policies(make_tool(handler=hang)), {}, {}))
        await started.wait()
        assert engine.in_flight == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.in_flight == 0

        # the slot is usable again
        await asyncio.wait_for(engine.execute(with_policies(make_tool()), {"text": "x"}, {}), timeout=1)


# ─── Engine: idempotency ───────────────────────────────────


def _idempotent(window_ms=300_000, key_fn=None, clock=None):
    config = SafetyConfig(idempotency=IdempotencyConfig(enabled=True, window_ms=window_ms, key_fn=key_fn))
    return SafetyEngine(config, clock=clock) if clock else SafetyEngine(config)


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_identical_calls_execute_once(self, make_tool):
        handler = counting_handler()
        tool = make_tool(handler=handler)
        engine = _idempotent()

        first = await engine.execute(with_policies(tool), {"text": "hi"}, {})
        second = await engine.execute(with_policies(tool), {"text": "hi"}, {})

        assert handler.calls["n"] == 1
        assert first == second == {"count": 1}
        assert engine.cache_size == 1

    @pytest.mark.asyncio
    async def test_returned_outcomes_are_independent_copies(self, make_tool):
        engine = _idempotent()
        tool = make_tool(handler=counting_handler())
        first = await engine.execute(with_policies(tool), {"text": "hi"}, {})
        first["count"] = 99
        second = await engine.execute(with_policies(tool), {"text": "hi"}, {})
        assert second == {"count": 1}

    @pytest.mark.asyncio
    async def test_different_args_execute_twice(self, make_tool):
        handler = counting_handler()
        engine = _idempotent()
        tool = make_tool(handler=handler)
        await engine.execute(with_policies(tool), {"text": "a"}, {})
        await engine.execute(with_policies(tool), {"text": "b"}, {})
        assert handler.calls["n"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_identical_calls_share_execution(self, make_tool):
        calls = {"n": 0}

        async def slow(args, state):
            calls["n"] += 1
            await asyncio.sleep(0.02)
            return {"value": "done"}

        engine = _idempotent()
        tool = make_tool(handler=slow)
        results = await asyncio.gather(
            engine.execute(with_policies(tool), {"text": "x"}, {}),
            engine.execute(with_policies(tool), {"text": "x"}, {}),
        )
        assert calls["n"] == 1
        assert results[0] == results[1] == {"value": "done"}

    @pytest.mark.asyncio
    async def test_window_expiry(self, make_tool):
        clock = FakeClock()
        handler = counting_handler()
        engine = _idempotent(window_ms=1_000, clock=clock)
        tool = make_tool(handler=handler)

        await engine.execute(with_policies(tool), {"text": "x"}, {})
        clock.now += 0.5
        await engine.execute(with_policies(tool), {"text": "x"}, {})
        assert handler.calls["n"] == 1

        clock.now += 1.0
        await engine.execute(with_policies(tool), {"text": "x"}, {})
        assert handler.calls["n"] == 2

    @pytest.mark.asyncio
    async def test_failures_not_cached(self, make_tool):
        calls = {"n": 0}

        async def boom(args, state):
            calls["n"] += 1
            raise RuntimeError("transient")

        engine = _idempotent()
        tool = make_tool(handler=boom)
        for _ in range(2):
            with pytest.raises(ToolExecutionError):
                await engine.execute(with_policies(tool), {"text": "x"}, {})
        assert calls["n"] == 2
        assert engine.cache_size == 0

    @pytest.mark.asyncio
    async def test_cache_hit_keeps_newer_state(self, make_tool):
        handler = counting_handler()
        engine = _idempotent()
        tool = make_tool(handler=handler)

        await engine.execute(with_policies(tool), {"text": "x"}, {"counter": 1})
        second = await engine.execute(with_policies(tool), {"text": "x"}, {"counter": 5, "extra": True})

        assert handler.calls["n"] == 1
        assert second == {"counter": 5, "extra": True, "count": 1}

    @pytest.mark.asyncio
    async def test_cache_hit_replays_removed_keys(self, make_tool):
        async def drop_token(args, state):
            return {k: v for k, v in state.items() if k != "token"}

        engine = _idempotent()
        tool = make_tool(handler=drop_token)
        await engine.execute(with_policies(tool), {"text": "x"}, {"token": "a"})
        second = await engine.execute(with_policies(tool), {"text": "x"}, {"token": "b", "keep": 1})
        assert second == {"keep": 1}

    @pytest.mark.asyncio
    async def test_concurrent_waiter_applies_change_to_own_state(self, make_tool):
        async def slow(args, state):
            await asyncio.sleep(0.02)
            return {**state, "value": "done"}

        engine = _idempotent()
        tool = make_tool(handler=slow)
        first, second = await asyncio.gather(
            engine.execute(with_policies(tool), {"text": "x"}, {"turn": 1}),
            engine.execute(with_policies(tool), {"text": "x"}, {"turn": 2}),
        )
        assert first == {"turn": 1, "value": "done"}
        assert second == {"turn": 2, "value": "done"}

    @pytest.mark.asyncio
    async def test_expired_entries_pruned_on_insert(self, make_tool):
        clock = FakeClock()
        engine = _idempotent(window_ms=1_000, clock=clock)
        tool = make_tool(handler=counting_handler())

        await engine.execute(with_policies(tool), {"text": "a"}, {})
        await engine.execute(with_policies(tool), {"text": "b"}, {})
        assert engine.cache_size == 2

        clock.now += 2.0
        await engine.execute(with_policies(tool), {"text": "c"}, {})
        assert engine.cache_size == 1

    @pytest.mark.asyncio
    async def test_custom_key_fn(self, make_tool):
        handler = counting_handler()
        engine = _idempotent(key_fn=lambda tool, args: tool)
        tool = make_tool(handler=handler)
        await engine.execute(with_policies(tool), {"text": "a"}, {})
        await engine.execute(with_policies(tool), {"text": "b"}, {})
        assert handler.calls["n"] == 1

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, make_tool):
        handler = counting_handler()
        engine = SafetyEngine()
        tool = make_tool(handler=handler)
        await engine.execute(with_policies(tool), {"text": "x"}, {})
        await engine.execute(with_policies(tool), {"text": "x"}, {})
        assert handler.calls["n"] == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, make_tool):
        handler = counting_handler()
        engine = _idempotent()
        tool = make_tool(handler=handler)
        await engine.execute(with_policies(tool), {"text": "x"}, {})
        engine.clear_cache()
        await engine.execute(with_policies(tool), {"text": "x"}, {})
        assert handler.calls["n"] == 2
