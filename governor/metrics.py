"""
Metrics and observability for governor.

Provides structured logging and metrics collection for the admission
controller, the usage recorder and the task executor.
"""

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from typing import Optional, Any
from pathlib import Path


@dataclass
class MetricEvent:
    """A single metric event."""
    timestamp: str
    event_type: str  # admission, usage, task
    subject: str  # identity or task id
    data: dict[str, Any]


class MetricsCollector:
    """
    Collects and aggregates metrics from governance operations.

    Counters back the monitoring surface: denial rates by reason,
    token throughput, task outcomes.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = False,
        max_events: int = 10_000,
    ):
        """
        Initialize metrics collector.

        Args:
            metrics_file: Optional file to write metrics to (JSONL format)
            enable_logging: Whether to log every event at INFO
            max_events: Number of recent events kept in memory
        """
        self.metrics_file = Path(metrics_file) if metrics_file else None
        self.enable_logging = enable_logging
        self.max_events = max_events
        self.logger = logging.getLogger("governor.metrics")
        self._lock = threading.Lock()

        self._events: list[MetricEvent] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def record_decision(
        self,
        identity: str,
        endpoint: str,
        tier: str,
        allowed: bool,
        reason: Optional[str] = None,
    ) -> None:
        """Record an admission decision."""
        self._record_event(
            event_type="admission",
            subject=identity,
            data={"endpoint": endpoint, "tier": tier, "allowed": allowed, "reason": reason},
        )
        with self._lock:
            self._counters["admission_checks_total"] += 1
            if allowed:
                self._counters["admission_allowed"] += 1
            else:
                self._counters["admission_denied"] += 1
                self._counters[f"admission_denied_{reason}"] += 1

    def record_usage(
        self,
        identity: str,
        endpoint: str,
        surface: str,
        token_count: int,
    ) -> None:
        """Record a completed, billed request."""
        self._record_event(
            event_type="usage",
            subject=identity,
            data={"endpoint": endpoint, "surface": surface, "token_count": token_count},
        )
        with self._lock:
            self._counters["usage_requests_total"] += 1
            self._counters["usage_tokens_total"] += token_count
            self._counters[f"usage_tokens_{surface}"] += token_count

    def record_task(
        self,
        task_id: str,
        task_type: str,
        outcome: str,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Record a task outcome.

        Args:
            task_id: Task identifier
            task_type: Handler key
            outcome: completed, retried or failed
            duration_ms: Handler wall time, when the handler ran
            error: Error message for retried/failed tasks
        """
        self._record_event(
            event_type="task",
            subject=task_id,
            data={
                "task_type": task_type,
                "outcome": outcome,
                "duration_ms": duration_ms,
                "error": error,
            },
        )
        with self._lock:
            self._counters["tasks_processed_total"] += 1
            self._counters[f"tasks_{outcome}"] += 1
            self._counters[f"tasks_{outcome}_{task_type}"] += 1
            if duration_ms is not None:
                self._histograms["task_duration_ms"].append(duration_ms)

    def _record_event(self, event_type: str, subject: str, data: dict) -> None:
        """Record a metric event."""
        event = MetricEvent(
            timestamp=datetime.now(UTC).isoformat(),
            event_type=event_type,
            subject=subject,
            data=data,
        )

        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]

            if self.metrics_file:
                with open(self.metrics_file, "a") as f:
                    f.write(json.dumps(asdict(event)) + "\n")

        if self.enable_logging:
            self.logger.info(f"{event_type.upper()}: subject={subject}, data={data}")

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with metrics summary
        """
        import statistics as stats

        with self._lock:
            durations = list(self._histograms.get("task_duration_ms", []))
            counters = dict(self._counters)
            total_events = len(self._events)

        return {
            "counters": counters,
            "task_duration": {
                "avg_ms": stats.mean(durations) if durations else 0,
                "p50_ms": stats.median(durations) if durations else 0,
                "p95_ms": (
                    stats.quantiles(durations, n=20)[18]
                    if len(durations) >= 20
                    else (max(durations) if durations else 0)
                ),
            },
            "total_events": total_events,
        }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._events.clear()
            self._counters.clear()
            self._histograms.clear()
