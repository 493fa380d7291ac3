"""
Metrics and observability for Vision Board.

Provides structured logging and counters for goal, credit and rate limit events.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from typing import Optional, Any
from pathlib import Path


@dataclass
class MetricEvent:
    """A single metric event."""
    timestamp: str
    event_type: str  # goal, credit, rate_limit, error
    name: str
    subject_id: str
    data: dict[str, Any]


class MetricsCollector:
    """
    Collects domain events and aggregates them into counters.

    One collector is created per app and shared by the services.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = True,
    ):
        """
        Initialize metrics collector.

        Args:
            metrics_file: Optional file to write events to (JSONL format)
            enable_logging: Whether to enable structured logging
        """
        self.metrics_file = metrics_file
        self.enable_logging = enable_logging

        self.logger = logging.getLogger("visionboard.metrics")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._events: list[MetricEvent] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def record_goal(self, name: str, goal_id: str, **extra: Any) -> None:
        """
        Record a goal lifecycle event.

        Args:
            name: created, generating, completed, failed, reclaimed, deleted
            goal_id: Goal identifier
            **extra: Additional fields
        """
        self._record_event("goal", name, goal_id, extra)
        self._counters[f"goals_{name}"] += 1
        latency_ms = extra.get("latency_ms")
        if latency_ms is not None:
            self._histograms["generation_latency_ms"].append(latency_ms)

    def record_credit(self, name: str, profile_id: str, amount: int = 0, **extra: Any) -> None:
        """
        Record a ledger event.

        Args:
            name: added, duplicate, reserved, committed, released
            profile_id: Profile identifier
            amount: Credits moved by the event
            **extra: Additional fields
        """
        self._record_event("credit", name, profile_id, {"amount": amount, **extra})
        self._counters[f"credits_{name}"] += 1
        if amount:
            self._counters[f"credits_{name}_amount"] += amount

    def record_rate_limited(self, operation_class: str, identity_key: str, tier: str) -> None:
        """Record a rejected request."""
        self._record_event(
            "rate_limit",
            operation_class,
            identity_key,
            {"tier": tier},
            level=logging.WARNING,
        )
        self._counters["rate_limited_total"] += 1
        self._counters[f"rate_limited_{operation_class}"] += 1

    def record_error(
        self,
        subject_id: str,
        error_type: str,
        error_message: str,
        **extra: Any,
    ) -> None:
        """
        Record error.

        Args:
            subject_id: Goal, board or profile the error concerns
            error_type: Type of error
            error_message: Error message
            **extra: Additional fields
        """
        self._record_event(
            "error",
            error_type,
            subject_id,
            {"error_message": error_message, **extra},
            level=logging.ERROR,
        )
        self._counters["errors_total"] += 1
        self._counters[f"errors_{error_type}"] += 1

    def _record_event(
        self,
        event_type: str,
        name: str,
        subject_id: str,
        data: dict,
        level: int = logging.INFO,
    ) -> None:
        """Record a metric event."""
        event = MetricEvent(
            timestamp=datetime.now(UTC).isoformat(),
            event_type=event_type,
            name=name,
            subject_id=subject_id,
            data=data,
        )

        self._events.append(event)

        if self.metrics_file:
            with open(self.metrics_file, "a") as f:
                f.write(json.dumps(asdict(event), default=str) + "\n")

        if self.enable_logging:
            self.logger.log(
                level,
                f"{event_type.upper()} {name}: subject={subject_id}, data={data}",
            )

    def counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with metrics summary
        """
        import statistics as stats

        latency_values = self._histograms.get("generation_latency_ms", [])

        return {
            "counters": dict(self._counters),
            "generation_latency": {
                "avg_ms": stats.mean(latency_values) if latency_values else 0,
                "p50_ms": stats.median(latency_values) if latency_values else 0,
                "p95_ms": (
                    stats.quantiles(latency_values, n=20)[18]
                    if len(latency_values) >= 20
                    else (max(latency_values) if latency_values else 0)
                ),
            },
            "total_events": len(self._events),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._events.clear()
        self._counters.clear()
        self._histograms.clear()
