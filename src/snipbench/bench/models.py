"""Value objects passed between the instrumenter, backends and sinks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from snipbench.bench.iterations import IterationConfiguration
from snipbench.snippets import Snippet


@dataclass(frozen=True)
class ExecutionContext:
    """One instrumented unit, addressed to one environment."""

    environment_id: str
    snippet: Snippet
    instrumented_script: str
    configuration: IterationConfiguration

    def describe(self) -> str:
        return f"{self.snippet.slug}@{self.environment_id}"


@dataclass(frozen=True)
class RawResult:
    """Measurement reported by one executed unit.

    ``execution_time_ms`` and ``memory_used_bytes`` are per inner
    iteration.  ``memory_peak_bytes`` is the high-water mark of the whole
    measurement phase.
    """

    execution_time_ms: float
    memory_used_bytes: float
    memory_peak_bytes: float

    def __post_init__(self) -> None:
        if self.execution_time_ms < 0:
            raise ValueError(f"execution_time_ms must be >= 0, got {self.execution_time_ms}")

    def to_dict(self) -> dict[str, float]:
        return {
            "execution_time_ms": round(self.execution_time_ms, 4),
            "memory_used_bytes": self.memory_used_bytes,
            "memory_peak_bytes": self.memory_peak_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawResult:
        """Build from a parsed result object.

        Numeric-looking values are coerced; anything else becomes 0.0 so
        one garbled field does not discard the whole measurement.
        """
        return cls(
            execution_time_ms=max(0.0, _coerce_float(data.get("execution_time_ms"))),
            memory_used_bytes=_coerce_float(data.get("memory_used_bytes")),
            memory_peak_bytes=_coerce_float(data.get("memory_peak_bytes")),
        )


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    # NaN and infinities are not measurements.
    return result if math.isfinite(result) else 0.0


@dataclass(frozen=True)
class IterationTask:
    """One unit of a stream, handed to a message dispatch port.

    ``iteration`` is 1-based.
    """

    context: ExecutionContext
    iteration: int
    total_iterations: int
    sample_count: int = 1

    @property
    def stream_key(self) -> tuple[str, str]:
        return self.context.snippet.slug, self.context.environment_id

    def describe(self) -> str:
        return f"{self.context.describe()} #{self.iteration}/{self.total_iterations}"
