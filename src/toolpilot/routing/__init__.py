"""
ToolPilot Routing

Pattern gate, candidate ranking and argument extraction.

Usage:
    from toolpilot.routing import Router, gate

    gated = gate("read 'my notes.txt'")
    result = Router().route("read 'my notes.txt'", gated)
"""

from toolpilot.routing.args import ARG_SPEC, Clause, extract_args, split_clauses
from toolpilot.routing.patterns import DEFAULT_RULES, PatternRule, gate, matched_patterns
from toolpilot.routing.router import Router
from toolpilot.routing.scoring import ClaudeScorer, KeywordScorer, Scorer

__all__ = [
    "ARG_SPEC",
    "Clause",
    "ClaudeScorer",
    "DEFAULT_RULES",
    "KeywordScorer",
    "PatternRule",
    "Router",
    "Scorer",
    "extract_args",
    "gate",
    "matched_patterns",
    "split_clauses",
]
