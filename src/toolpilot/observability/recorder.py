"""
ToolPilot Decision Ledger

Append-only, in-memory record of every routing-through-execution turn,
plus the aggregate report derived from it.

Features:
- Append-only: records are frozen and never removed except by an
  explicit clear()
- Thread-safe: a single lock guards the history; reports are computed
  from a snapshot taken under that lock
- Ground truth: callers can attach the tools a turn should have used;
  accuracy is measured against it when present
- Replay: a recorded input can be re-run and the result recorded as a
  new decision marked with the original's id
- Exportable: JSON export for an external store

Retention is the caller's concern. Nothing in the package clears or
rotates the history on its own.
"""

from __future__ import annotations

import inspect
import json
import logging
import threading
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from toolpilot.core.models import (
    CandidateReason,
    DecisionRecord,
    Outcome,
    ReplayOutcome,
    ReplayResult,
    ReplayStats,
    Report,
    ToolAccuracy,
)
from toolpilot.observability import metrics

logger = logging.getLogger(__name__)

ReplayFn = Callable[[str], ReplayOutcome | Awaitable[ReplayOutcome]]


def categorize_error(error: str, error_type: str | None = None) -> str:
    """Bucket an error message for the common-failures table."""
    text = f"{error_type or ''} {error}".lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "quota" in text:
        return "quota"
    if "permission" in text or "not allowed" in text or "approval" in text or "policyviolation" in text:
        return "permission"
    if "validation" in text or "invalid" in text:
        return "validation"
    if "network" in text or "connection" in text:
        return "network"
    if "circuit breaker" in text:
        return "circuit_breaker"
    return "other"


def replay_context(original: DecisionRecord) -> dict[str, Any]:
    """Context that marks a decision as a replay of ``original``."""
    return {
        "replay": True,
        "original_decision_id": original.id,
        "original_outcome": original.outcome.value,
    }


def _percentile(sorted_values: list[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


class ObservabilityManager:
    """Process-wide decision history and reporting."""

    def __init__(self) -> None:
        self._records: list[DecisionRecord] = []
        self._by_id: dict[str, DecisionRecord] = {}
        self._ground_truth: dict[str, frozenset[str]] = {}
        self._lock = threading.Lock()

    def record_decision(self, record: DecisionRecord) -> str:
        """Append a record. Raises ValueError if its id is already stored."""
        with self._lock:
            if record.id in self._by_id:
                raise ValueError(f"Decision '{record.id}' already recorded")
            self._records.append(record)
            self._by_id[record.id] = record

        metrics.record_decision(outcome=record.outcome.value, tool_count=len(record.chosen))
        logger.debug(
            "Recorded decision %s",
            record.id,
            extra={
                "decision_id": record.id,
                "outcome": record.outcome.value,
                "duration_ms": round(record.latency_ms, 2),
            },
        )
        return record.id

    def get(self, decision_id: str) -> DecisionRecord | None:
        with self._lock:
            return self._by_id.get(decision_id)

    def history(
        self,
        outcome: Outcome | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[DecisionRecord]:
        """Snapshot of the history in append order, optionally filtered."""
        with self._lock:
            records = list(self._records)
        if outcome is not None:
            records = [r for r in records if r.outcome == outcome]
        if since is not None:
            records = [r for r in records if r.timestamp >= since]
        if until is not None:
            records = [r for r in records if r.timestamp <= until]
        return records

    def set_ground_truth(self, decision_id: str, tools: Iterable[str]) -> None:
        """Attach the tools this decision should have chosen."""
        with self._lock:
            if decision_id not in self._by_id:
                raise KeyError(decision_id)
            self._ground_truth[decision_id] = frozenset(tools)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_id.clear()
            self._ground_truth.clear()

    def get_report(self) -> Report:
        """Aggregate accuracy, latency and failure stats over the history."""
        with self._lock:
            records = list(self._records)
            truth = dict(self._ground_truth)

        if not records:
            return Report()

        accuracy: dict[str, ToolAccuracy] = {}
        agreement: Counter[str] = Counter()
        failures: Counter[str] = Counter()

        for record in records:
            expected = truth.get(record.id)
            if expected is not None:
                for tool in set(record.chosen) | expected:
                    stats = accuracy.setdefault(tool, ToolAccuracy())
                    stats.total += 1
                    if tool in expected and tool in record.chosen:
                        stats.correct += 1
            else:
                for tool in record.chosen:
                    stats = accuracy.setdefault(tool, ToolAccuracy())
                    stats.total += 1
                    if record.outcome == Outcome.OK:
                        stats.correct += 1

            has_pattern = bool(record.patterns_matched)
            has_classifier = any(
                c.reason in (CandidateReason.CLASSIFIER, CandidateReason.HYBRID)
                for c in record.router_candidates
            )
            if has_pattern and has_classifier:
                agreement["pattern_and_classifier"] += 1
            elif has_pattern:
                agreement["pattern_only"] += 1
            elif has_classifier:
                agreement["classifier_only"] += 1

            if record.outcome == Outcome.FAIL and record.error:
                failures[categorize_error(record.error, record.error_type)] += 1

        latencies = sorted(r.latency_ms for r in records)
        ok = sum(1 for r in records if r.outcome == Outcome.OK)
        total = len(records)

        return Report(
            total_decisions=total,
            tool_accuracy=accuracy,
            avg_latency_ms=sum(latencies) / total,
            p95_latency_ms=_percentile(latencies, 0.95),
            p99_latency_ms=_percentile(latencies, 0.99),
            success_rate=ok / total,
            error_rate=(total - ok) / total,
            pattern_vs_classifier=dict(agreement),
            common_failures=failures.most_common(),
        )

    async def replay(self, decision_id: str, fn: ReplayFn) -> ReplayResult:
        """Re-run a recorded input through ``fn`` and record the outcome.

        The new record copies the original's routing data and carries
        ``replay_context``. An exception from ``fn`` is recorded as a
        failed replay rather than raised. Raises KeyError for an unknown
        decision, and ValueError when ``fn`` reports ok for a decision
        that chose no tools.
        """
        original = self.get(decision_id)
        if original is None:
            raise KeyError(decision_id)

        started = time.monotonic()
        try:
            result = fn(original.input)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("Replay of %s raised: %s", decision_id, exc, extra={"decision_id": decision_id})
            result = ReplayOutcome(
                outcome=Outcome.FAIL,
                latency_ms=(time.monotonic() - started) * 1000,
                error=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
            )

        record = DecisionRecord(
            input=original.input,
            patterns_matched=original.patterns_matched,
            router_candidates=original.router_candidates,
            chosen=original.chosen,
            args=original.args,
            outcome=result.outcome,
            latency_ms=result.latency_ms,
            error=result.error,
            error_type=result.error_type,
            context=replay_context(original),
        )
        replay_id = self.record_decision(record)
        return ReplayResult(
            decision_id=decision_id,
            replay_decision_id=replay_id,
            input=original.input,
            original_outcome=original.outcome,
            outcome=record.outcome,
        )

    def replay_stats(self) -> ReplayStats:
        """Counts over every record marked as a replay."""
        replays = [r for r in self.history() if r.context.get("replay") is True]
        return ReplayStats(
            total_replays=len(replays),
            successful_replays=sum(1 for r in replays if r.outcome == Outcome.OK),
            failed_replays=sum(1 for r in replays if r.outcome == Outcome.FAIL),
            outcome_changes=sum(
                1
                for r in replays
                if r.context.get("original_outcome") not in (None, r.outcome.value)
            ),
        )

    def export_json(self, path: str | Path) -> None:
        """Write the full history (and any ground truth) as JSON."""
        with self._lock:
            records = list(self._records)
            truth = {k: sorted(v) for k, v in self._ground_truth.items()}

        data = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total_decisions": len(records),
            "decisions": [r.model_dump(mode="json") for r in records],
            "ground_truth": truth,
        }
        Path(path).write_text(json.dumps(data, indent=2, default=str))


_manager: ObservabilityManager | None = None
_manager_lock = threading.Lock()


def get_observability_manager() -> ObservabilityManager:
    """The process-wide manager, created on first use."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = ObservabilityManager()
        return _manager


def reset_observability_manager() -> None:
    """Drop the process-wide manager; the next call creates a fresh one."""
    global _manager
    with _manager_lock:
        _manager = None
