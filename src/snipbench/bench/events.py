"""Progress signals emitted per (snippet, environment) stream."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Union


def progress_percent(current: int, total: int) -> int:
    """``floor(current / total * 100)``, or 0 when *total* is not positive."""
    if total <= 0:
        return 0
    return current * 100 // total


@dataclass(frozen=True)
class Started:
    snippet: str
    environment: str
    total_iterations: int
    timestamp: float = field(default_factory=time.time)

    kind = "started"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind,
            "snippet": self.snippet,
            "environment": self.environment,
            "total_iterations": self.total_iterations,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Progress:
    snippet: str
    environment: str
    current_iteration: int
    total_iterations: int
    status: str = "completed"  # "completed" or "failed"
    timestamp: float = field(default_factory=time.time)

    kind = "progress"

    @property
    def percent(self) -> int:
        return progress_percent(self.current_iteration, self.total_iterations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind,
            "snippet": self.snippet,
            "environment": self.environment,
            "current_iteration": self.current_iteration,
            "total_iterations": self.total_iterations,
            "percent": self.percent,
            "status": self.status,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Completed:
    snippet: str
    environment: str
    total_iterations: int
    failed_iterations: int = 0
    timestamp: float = field(default_factory=time.time)

    kind = "completed"

    @property
    def succeeded_iterations(self) -> int:
        return self.total_iterations - self.failed_iterations

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind,
            "snippet": self.snippet,
            "environment": self.environment,
            "total_iterations": self.total_iterations,
            "failed_iterations": self.failed_iterations,
            "timestamp": self.timestamp,
        }


Signal = Union[Started, Progress, Completed]
