"""Repeat a unit several times and aggregate it into one result.

Execution time is the median of the samples, since timing distributions
are right-skewed by occasional system interference.  Memory used and
peak are plain means.  The raw spread of the time samples is kept in a
:class:`SampleSummary` for logging and inspection.
"""

from __future__ import annotations

import logging
import statistics
import time
from dataclasses import dataclass
from typing import Any

from snipbench.bench.backend import ExecutionBackend
from snipbench.bench.models import ExecutionContext, RawResult

log = logging.getLogger("snipbench")

# Pause between consecutive samples, to let transient load settle.
INTER_SAMPLE_PAUSE_S = 0.010


@dataclass(frozen=True)
class SampleSummary:
    """Spread of the execution-time samples behind one aggregated result."""

    count: int
    mean: float
    stddev: float  # population standard deviation
    cv: float  # percent
    min: float
    max: float
    median: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "mean": round(self.mean, 4),
            "stddev": round(self.stddev, 4),
            "cv": round(self.cv, 2),
            "min": round(self.min, 4),
            "max": round(self.max, 4),
            "median": round(self.median, 4),
        }


def summarize_samples(times: list[float]) -> SampleSummary:
    mean = statistics.fmean(times)
    stddev = statistics.pstdev(times) if len(times) > 1 else 0.0
    return SampleSummary(
        count=len(times),
        mean=mean,
        stddev=stddev,
        cv=stddev / mean * 100 if mean else 0.0,
        min=min(times),
        max=max(times),
        median=statistics.median(times),
    )


class MultiSampleAggregator:
    """Wrap a backend so each execution is the aggregate of N samples.

    Acts as an :class:`ExecutionBackend` itself.  One instance is shared
    by every pool worker, so the sample spread is returned per call by
    :meth:`execute_with_summary` rather than stored on the instance.
    """

    def __init__(
        self,
        inner: ExecutionBackend,
        *,
        sample_count: int = 1,
        pause: float = INTER_SAMPLE_PAUSE_S,
    ) -> None:
        self.inner = inner
        self.sample_count = sample_count
        self.pause = pause

    def execute(self, context: ExecutionContext, sample_count: int | None = None) -> RawResult:
        return self.execute_with_summary(context, sample_count)[0]

    def execute_with_summary(
        self,
        context: ExecutionContext,
        sample_count: int | None = None,
    ) -> tuple[RawResult, SampleSummary | None]:
        """Execute and aggregate; the summary is None for a single sample."""
        count = self.sample_count if sample_count is None else sample_count
        if count <= 1:
            return self.inner.execute(context), None

        results: list[RawResult] = []
        for index in range(count):
            result = self.inner.execute(context)
            log.debug(
                "%s sample %d/%d: %.4f ms",
                context.describe(),
                index + 1,
                count,
                result.execution_time_ms,
            )
            results.append(result)
            if index < count - 1:
                time.sleep(self.pause)

        times = [r.execution_time_ms for r in results]
        summary = summarize_samples(times)
        log.info(
            "%s: %d samples, median %.4f ms, mean %.4f ms, stddev %.4f, CV %.2f%%",
            context.describe(),
            summary.count,
            summary.median,
            summary.mean,
            summary.stddev,
            summary.cv,
        )

        aggregated = RawResult(
            execution_time_ms=summary.median,
            memory_used_bytes=statistics.fmean(r.memory_used_bytes for r in results),
            memory_peak_bytes=statistics.fmean(r.memory_peak_bytes for r in results),
        )
        return aggregated, summary
