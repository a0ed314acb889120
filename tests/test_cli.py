"""Tests for the ToolPilot CLI.

Invokes the click commands in-process with CliRunner.
"""

import json

import pytest
from click.testing import CliRunner

from toolpilot import __version__
from toolpilot.cli import cli
from toolpilot.config import SAFETY_CONFIG_ENV


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv(SAFETY_CONFIG_ENV, raising=False)
    return CliRunner()


class TestCLIBasic:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("route", "plan", "run"):
            assert command in result.output


class TestRouteCommand:
    def test_route(self, runner):
        result = runner.invoke(cli, ["route", "search for TypeScript"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["gated"] == ["search"]
        assert data["candidates"][0]["tool"] == "search"
        assert data["patterns_matched"]

    def test_route_no_match(self, runner):
        result = runner.invoke(cli, ["route", "good morning"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["candidates"] == []


class TestPlanCommand:
    def test_plan(self, runner):
        result = runner.invoke(cli, ["plan", "read config.json and then write output.txt"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [s["tool"] for s in data["steps"]] == ["read_file", "write_file"]
        assert data["steps"][1]["depends_on"] == ["step-0"]
        assert data["risk_level"] == "MEDIUM"
        assert data["summary"].startswith("Plan: read_file -> write_file")

    def test_plan_no_match(self, runner):
        result = runner.invoke(cli, ["plan", "good morning"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "NoApplicablePlanError"


class TestRunCommand:
    def test_run_reads_file(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "notes.txt").write_text("hello")
        result = runner.invoke(cli, ["run", "read notes.txt"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["result"]["success"] is True
        assert data["state"]["last_output"] == "hello"

    def test_run_blocked_by_default_allowlist(self, runner):
        result = runner.invoke(cli, ["run", "read /etc/passwd"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["result"]["error_type"] == "PolicyViolationError"

    def test_run_with_safety_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "notes.txt").write_text("hello")
        config = tmp_path / "safety.json"
        config.write_text(json.dumps({"allowlists": {"file_paths": []}}))
        result = runner.invoke(cli, ["run", "--safety-config", str(config), "read notes.txt"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["result"]["error_type"] == "PolicyViolationError"

    def test_run_with_invalid_safety_config(self, runner, tmp_path):
        config = tmp_path / "safety.json"
        config.write_text("{broken")
        result = runner.invoke(cli, ["run", "--safety-config", str(config), "read notes.txt"])
        assert result.exit_code == 2
        assert json.loads(result.stdout)["error_type"] == "ConfigurationError"
