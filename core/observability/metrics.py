"""
Metrics for registry reconciliation.

Collects in-memory counters for:
- Proposed transitions by source and outcome (accepted, ignored, error)
- Webhook deliveries by outcome
- Polling runs (processed, updated, failed)
- Token refreshes
- Registry API call latency (average, p95)

These are observability only. Nothing reads them for control flow.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class TransitionMetrics:
    """Outcomes of propose_transition calls."""
    accepted: int = 0
    ignored: int = 0
    errors: int = 0

    # source -> outcome -> count
    by_source: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"accepted": 0, "ignored": 0, "error": 0})
    )
    # reason -> count, for ignored proposals
    ignored_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class PollingMetrics:
    """Totals across polling sweeps."""
    runs: int = 0
    processed: int = 0
    updated: int = 0
    failed: int = 0
    by_mode: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class TimingMetrics:
    """Registry call timing samples."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000
    by_operation: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, operation: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if operation:
            self.by_operation[operation].append(duration_ms)
            if len(self.by_operation[operation]) > self.max_samples:
                self.by_operation[operation] = self.by_operation[operation][-self.max_samples:]

    def get_average(self, operation: str = None) -> float:
        samples = self.by_operation.get(operation, []) if operation else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, operation: str = None) -> float:
        samples = self.by_operation.get(operation, []) if operation else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_transition("webhook", "accepted")
        metrics.record_api_call("fetch_document", duration_ms=120, success=True)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self):
        self.transitions = TransitionMetrics()
        self.polling = PollingMetrics()
        self.timings = TimingMetrics()
        self.webhooks: Dict[str, int] = defaultdict(int)
        self.token_refreshes: Dict[str, int] = defaultdict(int)
        self.api_calls: Dict[str, Dict[str, int]] = defaultdict(lambda: {"success": 0, "failure": 0})
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def record_transition(self, source: str, outcome: str, reason: Optional[str] = None):
        """Record the outcome of a proposed transition."""
        with self._lock:
            if outcome == "accepted":
                self.transitions.accepted += 1
            elif outcome == "ignored":
                self.transitions.ignored += 1
                if reason:
                    self.transitions.ignored_reasons[reason] += 1
            else:
                self.transitions.errors += 1
            self.transitions.by_source[source][outcome] += 1

    def record_webhook(self, outcome: str):
        """Record a webhook delivery outcome (accepted, duplicate, error, unauthorized, malformed)."""
        with self._lock:
            self.webhooks[outcome] += 1

    def record_poll_run(self, mode: str, processed: int, updated: int, failed: int):
        with self._lock:
            self.polling.runs += 1
            self.polling.processed += processed
            self.polling.updated += updated
            self.polling.failed += failed
            self.polling.by_mode[mode] += 1

    def record_token_refresh(self, success: bool):
        with self._lock:
            self.token_refreshes["success" if success else "failure"] += 1

    def record_api_call(self, operation: str, duration_ms: float, success: bool):
        """Record one registry HTTP call, including retries as separate calls."""
        with self._lock:
            self.api_calls[operation]["success" if success else "failure"] += 1
            self.timings.add_sample(duration_ms, operation)

    def get_timing_stats(self, operation: str = None) -> Dict[str, float]:
        """Get timing statistics for an operation."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(operation),
                "p95_ms": self.timings.get_p95(operation),
                "sample_count": len(
                    self.timings.by_operation.get(operation, []) if operation else self.timings.samples
                ),
            }

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "transitions": {
                    "accepted": self.transitions.accepted,
                    "ignored": self.transitions.ignored,
                    "errors": self.transitions.errors,
                    "by_source": {k: dict(v) for k, v in self.transitions.by_source.items()},
                    "ignored_reasons": dict(self.transitions.ignored_reasons),
                },
                "webhooks": dict(self.webhooks),
                "polling": {
                    "runs": self.polling.runs,
                    "processed": self.polling.processed,
                    "updated": self.polling.updated,
                    "failed": self.polling.failed,
                    "by_mode": dict(self.polling.by_mode),
                },
                "token_refreshes": dict(self.token_refreshes),
                "api_calls": {k: dict(v) for k, v in self.api_calls.items()},
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_operation": {
                        op: {
                            "average_ms": self.timings.get_average(op),
                            "p95_ms": self.timings.get_p95(op),
                        }
                        for op in self.timings.by_operation.keys()
                    },
                },
            }


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()
