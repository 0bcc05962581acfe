"""
Controller Metrics

Read-only counters and gauges for an external observability backend:
queue depth, per-resource health/phase, and per-action latency. Scraping is
left to the caller (GET /api/metrics returns a snapshot).
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..models import ActionOutcome, ActionType, ReconcilePhase


@dataclass
class LatencyStats:
    """Running latency summary for one action type."""
    count: int = 0
    total_seconds: float = 0.0
    max_seconds: float = 0.0
    last_seconds: float = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total_seconds += seconds
        self.max_seconds = max(self.max_seconds, seconds)
        self.last_seconds = seconds

    @property
    def mean_seconds(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_seconds / self.count

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "total_seconds": round(self.total_seconds, 6),
            "mean_seconds": round(self.mean_seconds, 6),
            "max_seconds": round(self.max_seconds, 6),
            "last_seconds": round(self.last_seconds, 6),
        }


@dataclass
class ControllerMetrics:
    """Counters written by the reconciler and tracker."""
    action_latency: Dict[str, LatencyStats] = field(default_factory=dict)
    action_outcomes: Counter = field(default_factory=Counter)
    reconcile_results: Counter = field(default_factory=Counter)

    def observe_action(self, action_type: ActionType, seconds: float, outcome: ActionOutcome) -> None:
        stats = self.action_latency.setdefault(action_type.value, LatencyStats())
        stats.observe(seconds)
        self.action_outcomes[f"{action_type.value}:{outcome.value}"] += 1

    def observe_reconcile(self, phase: ReconcilePhase) -> None:
        self.reconcile_results[phase.value] += 1

    def snapshot(
        self,
        queue_depth: int = 0,
        in_flight: int = 0,
        health: Optional[Dict[str, str]] = None,
        phases: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Point-in-time copy; mutating it never affects the counters."""
        return {
            "queue_depth": queue_depth,
            "in_flight": in_flight,
            "resource_health": dict(health or {}),
            "resource_phase": dict(phases or {}),
            "action_latency": {name: stats.to_dict() for name, stats in sorted(self.action_latency.items())},
            "action_outcomes": dict(sorted(self.action_outcomes.items())),
            "reconcile_results": dict(sorted(self.reconcile_results.items())),
        }
