"""
ToolPilot Router

Ranks candidate tools for an utterance by blending the pattern gate
with a pluggable scorer.

Blend, for each tool with classifier score c (clamped to [0, 1], 0 when
the scorer is silent about the tool or returns NaN):

    gated     -> score = max(pattern_baseline, c)
                 reason = hybrid if c > pattern_baseline else pattern
    not gated -> kept only when c >= min_score
                 score = c, reason = classifier

A pattern match is never pulled below the baseline by a weaker
classifier. Output is sorted by score descending, then tool name
ascending, so the result is deterministic for a fixed input.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable

from toolpilot.core.models import CandidateReason, RouteCandidate, RouteResult
from toolpilot.routing.scoring import KeywordScorer, Scorer

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    value = float(value)
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


class Router:
    """Deterministic candidate ranking over gate output and scorer output."""

    def __init__(
        self,
        scorer: Scorer | None = None,
        min_score: float = 0.3,
        pattern_baseline: float = 0.7,
        known_tools: Iterable[str] | None = None,
    ):
        self._scorer = scorer if scorer is not None else KeywordScorer()
        self._min_score = min_score
        self._pattern_baseline = pattern_baseline
        self._known_tools = frozenset(known_tools) if known_tools is not None else None

    @property
    def min_score(self) -> float:
        return self._min_score

    @property
    def pattern_baseline(self) -> float:
        return self._pattern_baseline

    def restricted_to(self, tools: Iterable[str]) -> Router:
        """A copy of this router that only ranks ``tools``."""
        return Router(
            scorer=self._scorer,
            min_score=self._min_score,
            pattern_baseline=self._pattern_baseline,
            known_tools=tools,
        )

    def route(self, text: str, gated: Iterable[str]) -> RouteResult:
        if not text or not text.strip():
            return RouteResult()

        gated_set = set(gated)
        if self._known_tools is not None:
            gated_set &= self._known_tools

        raw_scores = self._scorer(text, gated_set) or {}
        scores = {
            tool: _clamp(score)
            for tool, score in raw_scores.items()
            if self._known_tools is None or tool in self._known_tools
        }

        candidates: list[RouteCandidate] = []
        for tool in gated_set:
            c = scores.get(tool, 0.0)
            if c > self._pattern_baseline:
                candidates.append(RouteCandidate(tool=tool, score=c, reason=CandidateReason.HYBRID))
            else:
                candidates.append(
                    RouteCandidate(
                        tool=tool,
                        score=self._pattern_baseline,
                        reason=CandidateReason.PATTERN,
                    )
                )

        for tool, c in scores.items():
            if tool in gated_set:
                continue
            if c >= self._min_score:
                candidates.append(RouteCandidate(tool=tool, score=c, reason=CandidateReason.CLASSIFIER))

        candidates.sort(key=lambda cand: (-cand.score, cand.tool))
        logger.debug(
            "Routed %d candidates (%d gated)", len(candidates), len(gated_set),
        )
        return RouteResult(candidates=candidates)
