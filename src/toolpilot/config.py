"""
ToolPilot Configuration

Loads the process-wide SafetyConfig and the risk -> policy table from
JSON files. Both are read once at startup and treated as read-only.

Lookup order for the safety config:
    1. explicit ``path`` argument
    2. TOOLPILOT_SAFETY_CONFIG env var
    3. default_safety_config()

Example safety config file:

    {
      "allowlists": {"file_paths": ["./*"], "network_hosts": ["api.github.com"]},
      "quotas": {"max_concurrency": 4, "max_memory_mb": 256},
      "idempotency": {"enabled": true, "window_ms": 60000},
      "base_dir": "/srv/agent"
    }

Example policy table file (keys are risk levels, any case):

    {"high": {"retries": 5, "max_delay_ms": 2000}}
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pydantic

from toolpilot.core.models import Policy, RiskLevel
from toolpilot.exceptions import ConfigurationError
from toolpilot.policy.decorator import DEFAULT_POLICY_TABLE, merge_policies
from toolpilot.safety.engine import Allowlists, IdempotencyConfig, Quotas, SafetyConfig

logger = logging.getLogger(__name__)

SAFETY_CONFIG_ENV = "TOOLPILOT_SAFETY_CONFIG"


def default_safety_config() -> SafetyConfig:
    """Permissive-but-bounded preset: temp and working dirs, a few hosts and commands."""
    return SafetyConfig(
        allowlists=Allowlists(
            file_paths=["/tmp/*", "./*"],
            network_hosts=["api.github.com", "*.openai.com"],
            commands=["ls", "cat", "grep", "find", "echo"],
        ),
        quotas=Quotas(max_concurrency=5, max_memory_mb=100, max_cpu_time_ms=60_000),
        idempotency=IdempotencyConfig(enabled=True, window_ms=300_000),
    )


def strict_safety_config() -> SafetyConfig:
    """Locked-down preset: one sandbox dir, no network, echo only, serial execution."""
    return SafetyConfig(
        allowlists=Allowlists(
            file_paths=["/tmp/toolpilot-sandbox/*"],
            network_hosts=[],
            commands=["echo"],
        ),
        quotas=Quotas(max_concurrency=1, max_memory_mb=10, max_cpu_time_ms=5_000),
        idempotency=IdempotencyConfig(enabled=True, window_ms=60_000),
    )


def _read_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text())
    except OSError as exc:
        raise ConfigurationError(str(path), f"cannot read file ({exc})") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(str(path), f"not valid JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a JSON object")
    return data


def load_safety_config(path: str | Path | None = None) -> SafetyConfig:
    """Load the safety config (see module docstring for lookup order)."""
    source = path or os.environ.get(SAFETY_CONFIG_ENV)
    if not source:
        return default_safety_config()

    file = Path(source)
    data = _read_json(file)
    try:
        config = SafetyConfig.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ConfigurationError(str(file), str(exc)) from exc
    logger.info("Loaded safety config from %s", file)
    return config


def load_policy_table(path: str | Path) -> dict[RiskLevel, Policy]:
    """Policy overrides per risk level, merged over DEFAULT_POLICY_TABLE."""
    file = Path(path)
    data = _read_json(file)

    table = dict(DEFAULT_POLICY_TABLE)
    for key, fields in data.items():
        try:
            level = RiskLevel(str(key).upper())
        except ValueError as exc:
            raise ConfigurationError(str(file), f"unknown risk level '{key}'") from exc
        try:
            override = Policy.model_validate(fields)
        except pydantic.ValidationError as exc:
            raise ConfigurationError(str(file), str(exc)) from exc
        table[level] = merge_policies(DEFAULT_POLICY_TABLE[level], override)
    return table
