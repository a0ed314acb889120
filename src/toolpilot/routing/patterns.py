"""
ToolPilot Pattern Gate

Cheap regex pre-filter that runs on every turn before the router.
No model calls: a fixed rule table per built-in tool plus whatever
rules the caller supplies.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PatternRule:
    """A case-insensitive regex that nominates ``tool`` when it matches."""

    tool: str
    pattern: str
    confidence: float = 0.9
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, text: str) -> bool:
        return self._compiled.search(text) is not None


DEFAULT_RULES: tuple[PatternRule, ...] = (
    PatternRule("read_file", r"\b(?:read|view|open|load)\b", 0.9),
    PatternRule(
        "read_file",
        r"\b(?:show|display)\s+(?:the\s+)?(?:contents?\s+of\s+)?(?:file|document)\b",
        0.8,
    ),
    PatternRule("write_file", r"\b(?:write|save|create|overwrite)\b", 0.9),
    PatternRule("search", r"\b(?:search|look\s+up|look\s+for|find|query)\b", 0.85),
    PatternRule("search", r"\b(?:google|bing|duckduckgo)\b", 0.9),
    PatternRule("api_call", r"https?://", 0.8),
    PatternRule(
        "api_call",
        r"\b(?:call|request|post\s+to|get)\s+(?:the\s+)?(?:api|endpoint|service)\b",
        0.9,
    ),
    PatternRule("api_call", r"\b(?:rest|graphql)\b", 0.7),
    PatternRule("execute_command", r"\b(?:run|execute|launch)\b", 0.85),
    PatternRule("execute_command", r"^\s*(?:ls|mkdir|rm|cp|mv|grep|echo|pwd)\b", 0.9),
)


def _coerce(rules: Iterable[PatternRule | tuple[str, str]]) -> list[PatternRule]:
    coerced = []
    for rule in rules:
        if isinstance(rule, PatternRule):
            coerced.append(rule)
        else:
            tool, pattern = rule
            coerced.append(PatternRule(tool, pattern))
    return coerced


def matched_patterns(
    text: str,
    extra_patterns: Iterable[PatternRule | tuple[str, str]] = (),
) -> list[str]:
    """Source of every rule that matched, in table order (defaults first)."""
    if not text or not text.strip():
        return []
    rules = list(DEFAULT_RULES) + _coerce(extra_patterns)
    return [rule.pattern for rule in rules if rule.matches(text)]


def gate(
    text: str,
    extra_patterns: Iterable[PatternRule | tuple[str, str]] = (),
) -> set[str]:
    """Tool names whose rules match ``text``.

    Returns an empty set for empty text or when nothing matches.
    """
    if not text or not text.strip():
        return set()
    rules = list(DEFAULT_RULES) + _coerce(extra_patterns)
    return {rule.tool for rule in rules if rule.matches(text)}
