"""Per-request stage timing and outcome tracking."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable


@dataclass
class StageTiming:
    """Timing record for a single pipeline stage."""

    stage: str = ""
    started_at: str = ""
    duration_seconds: float = 0.0
    attempts: int = 0
    cache_hit: bool = False
    outcome: str = ""  # "ok", "failed", "skipped"


@dataclass
class PipelineMetrics:
    """Tracks stage timings for one request."""

    request_id: str = ""
    stages: dict[str, StageTiming] = field(default_factory=dict)

    _clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _starts: dict[str, float] = field(default_factory=dict, repr=False)

    def start_stage(self, stage: str) -> None:
        """Mark the start of *stage*.

        Args:
            stage: The stage name to start tracking.
        """
        self._starts[stage] = self._clock()
        self.stages[stage] = StageTiming(
            stage=stage,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

    def record_attempt(self, stage: str) -> None:
        timing = self.stages.setdefault(stage, StageTiming(stage=stage))
        timing.attempts += 1

    def end_stage(self, stage: str, outcome: str, cache_hit: bool = False) -> None:
        """Mark the end of *stage* and record how it finished.

        Args:
            stage: The stage name.
            outcome: ``"ok"``, ``"failed"`` or ``"skipped"``.
            cache_hit: Whether the result came from the cache.
        """
        timing = self.stages.setdefault(stage, StageTiming(stage=stage))
        started = self._starts.pop(stage, None)
        if started is not None:
            timing.duration_seconds = max(0.0, self._clock() - started)
        timing.outcome = outcome
        timing.cache_hit = cache_hit

    @property
    def total_seconds(self) -> float:
        return sum(t.duration_seconds for t in self.stages.values())

    @property
    def cache_hits(self) -> int:
        return sum(1 for t in self.stages.values() if t.cache_hit)

    def to_dict(self) -> dict[str, Any]:
        """Serialise tracker state."""
        return {
            "request_id": self.request_id,
            "total_seconds": self.total_seconds,
            "cache_hits": self.cache_hits,
            "stages": {
                name: {
                    "stage": t.stage,
                    "started_at": t.started_at,
                    "duration_seconds": t.duration_seconds,
                    "attempts": t.attempts,
                    "cache_hit": t.cache_hit,
                    "outcome": t.outcome,
                }
                for name, t in self.stages.items()
            },
        }
