"""
ToolPilot Candidate Scorers

A scorer is any callable ``(text, gated) -> Mapping[str, float]`` giving
a plausibility score per tool name. The router clamps the values into
[0, 1] and blends them with the pattern gate; scorers never decide the
final ranking on their own.

Two implementations ship with the package:

- KeywordScorer: a linear classifier over word n-grams and a few
  surface features. Deterministic and free; the router's default.
- ClaudeScorer: asks Claude for per-tool scores. Any API or parse
  failure degrades to an empty score map so routing falls back to
  the pattern gate alone.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Protocol

import anthropic

logger = logging.getLogger(__name__)


class Scorer(Protocol):
    """Protocol for scoring tools against an utterance."""

    def __call__(self, text: str, gated: set[str]) -> Mapping[str, float]: ...


# ─── Keyword classifier ──────────────────────────────────────

_WORD_RE = re.compile(r"[a-z0-9_]+")
_FILE_EXT_RE = re.compile(r"\b[\w\-./]+\.[a-z0-9]{1,5}\b", re.IGNORECASE)
_URL_RE = re.compile(r"https?://", re.IGNORECASE)

# Feature weights per tool. Keys are unigrams, space-joined bigrams,
# or one of the boolean surface features.
DEFAULT_WEIGHTS: dict[str, dict[str, float]] = {
    "read_file": {
        "read file": 0.8,
        "view file": 0.7,
        "show file": 0.6,
        "read": 0.5,
        "open": 0.3,
        "has_file_extension": 0.3,
        "has_quotes": 0.1,
    },
    "write_file": {
        "write file": 0.8,
        "create file": 0.7,
        "save file": 0.6,
        "write": 0.5,
        "save": 0.4,
        "has_file_extension": 0.2,
    },
    "search": {
        "search for": 0.8,
        "find information": 0.7,
        "look for": 0.6,
        "search": 0.5,
        "find": 0.3,
        "has_question_mark": 0.3,
    },
    "api_call": {
        "call api": 0.8,
        "http request": 0.7,
        "fetch data": 0.5,
        "api": 0.4,
        "has_url": 0.6,
    },
    "execute_command": {
        "run command": 0.8,
        "execute command": 0.7,
        "shell command": 0.6,
        "run": 0.5,
        "execute": 0.5,
    },
}


def featurize(text: str) -> set[str]:
    """Unigrams, bigrams and boolean surface features present in ``text``."""
    words = _WORD_RE.findall(text.lower())
    features = set(words)
    features.update(f"{a} {b}" for a, b in zip(words, words[1:]))
    if '"' in text or "'" in text:
        features.add("has_quotes")
    if _FILE_EXT_RE.search(text):
        features.add("has_file_extension")
    if _URL_RE.search(text):
        features.add("has_url")
    if "?" in text:
        features.add("has_question_mark")
    return features


class KeywordScorer:
    """Linear n-gram classifier. Score = min(1, sum of matched weights)."""

    def __init__(self, weights: Mapping[str, Mapping[str, float]] | None = None):
        self._weights = {tool: dict(w) for tool, w in (weights or DEFAULT_WEIGHTS).items()}

    @property
    def tools(self) -> list[str]:
        return list(self._weights)

    def __call__(self, text: str, gated: set[str]) -> dict[str, float]:
        features = featurize(text)
        scores: dict[str, float] = {}
        for tool, weights in self._weights.items():
            total = sum(weight for feature, weight in weights.items() if feature in features)
            if total > 0:
                scores[tool] = min(1.0, total)
        return scores


# ─── Claude scorer ───────────────────────────────────────────


class ClaudeScorer:
    """Scores tools by asking Claude.

    Synchronous, since routing is synchronous. Tool names and
    descriptions are supplied at construction; scores for names outside
    that set are dropped.
    """

    MODEL = "claude-sonnet-4-6"

    def __init__(
        self,
        tools: Mapping[str, str] | Iterable[str],
        client: anthropic.Anthropic | None = None,
        model: str | None = None,
    ):
        if isinstance(tools, Mapping):
            self._tools = dict(tools)
        else:
            self._tools = {name: "" for name in tools}
        self._client = client or anthropic.Anthropic()
        self._model = model or self.MODEL

    def __call__(self, text: str, gated: set[str]) -> dict[str, float]:
        tool_lines = "\n".join(
            f"- {name}: {desc}" if desc else f"- {name}" for name, desc in self._tools.items()
        )
        hint = ", ".join(sorted(gated)) if gated else "none"
        prompt = f"""Score how well each tool fits the user request.

REQUEST: {text}

TOOLS:
{tool_lines}

Keyword pre-filter matched: {hint}

Respond with a JSON object mapping tool name to a score between 0 and 1.
Return ONLY the JSON object, no other text."""

        try:
            response = self._client.messages.create(
                model=self._model,
                max_tokens=512,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            logger.warning("Claude scorer unavailable: %s", exc)
            return {}

        text = "".join(getattr(block, "text", "") for block in response.content or [])
        return self._parse_response(text)

    def _parse_response(self, text: str) -> dict[str, float]:
        text = text.strip()
        start = text.find("{")
        end = text.rfind("}") + 1
        if start == -1 or end == 0:
            logger.warning("Claude scorer returned no JSON object")
            return {}

        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            logger.warning("Claude scorer returned malformed JSON")
            return {}
        if not isinstance(data, dict):
            logger.warning("Claude scorer returned %s instead of an object", type(data).__name__)
            return {}

        scores: dict[str, float] = {}
        for name, value in data.items():
            if name not in self._tools:
                continue
            try:
                scores[name] = float(value)
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric score for %s: %r", name, value)
        return scores
