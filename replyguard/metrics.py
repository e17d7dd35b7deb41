"""
Decision metrics for replyguard.

Every engine invocation produces one DecisionEvent so an operator can
reconstruct why an automated action was or was not taken.
"""

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import UTC
from pathlib import Path
from typing import Optional

from replyguard.schemas import Decision


@dataclass
class DecisionEvent:
    """A single guardrail decision."""
    timestamp: str
    owner_id: Optional[str]
    conversation_id: str
    message_id: str
    tier: str
    outcome: str
    reason: str
    score: Optional[float]
    match_id: Optional[str]


class DecisionMetrics:
    """
    Collects decision events and aggregates counters.

    Optionally appends every event to a JSONL file.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = True,
    ):
        """
        Initialize decision metrics.

        Args:
            metrics_file: Optional file to write events to (JSONL format)
            enable_logging: Whether to log each decision
        """
        self.metrics_file = Path(metrics_file) if metrics_file else None
        self.enable_logging = enable_logging

        self.logger = logging.getLogger("replyguard.decisions")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._lock = threading.Lock()
        self._events: list[DecisionEvent] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._scores: list[float] = []

    def record_decision(self, decision: Decision) -> DecisionEvent:
        """Record one decision and return the stored event."""
        event = DecisionEvent(
            timestamp=decision.timestamp_utc.astimezone(UTC).isoformat(),
            owner_id=decision.owner_id,
            conversation_id=decision.conversation_id,
            message_id=decision.message_id,
            tier=decision.tier.value,
            outcome=decision.outcome.value,
            reason=decision.reason.value,
            score=decision.score,
            match_id=decision.match_id,
        )

        with self._lock:
            self._events.append(event)
            self._counters["decisions_total"] += 1
            self._counters[f"outcome_{event.outcome}"] += 1
            self._counters[f"reason_{event.reason}"] += 1
            self._counters[f"tier_{event.tier}"] += 1
            if event.score is not None:
                self._scores.append(event.score)

            if self.metrics_file:
                with open(self.metrics_file, "a") as f:
                    f.write(json.dumps(asdict(event)) + "\n")

        if self.enable_logging:
            self.logger.info(
                "DECISION: owner=%s message=%s tier=%s outcome=%s reason=%s score=%s match=%s",
                event.owner_id, event.message_id, event.tier, event.outcome,
                event.reason, event.score, event.match_id,
            )
        return event

    def events(self) -> list[DecisionEvent]:
        with self._lock:
            return list(self._events)

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with counters, outcome breakdown and score summary
        """
        with self._lock:
            counters = dict(self._counters)
            scores = list(self._scores)
            total = len(self._events)

        outcomes = {
            key[len("outcome_"):]: value
            for key, value in counters.items()
            if key.startswith("outcome_")
        }
        return {
            "counters": counters,
            "outcomes": outcomes,
            "auto_response_rate": (outcomes.get("auto_respond", 0) / total) if total else 0.0,
            "score": {
                "count": len(scores),
                "avg": sum(scores) / len(scores) if scores else 0.0,
                "max": max(scores) if scores else 0.0,
            },
            "total_events": total,
        }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._events.clear()
            self._counters.clear()
            self._scores.clear()
