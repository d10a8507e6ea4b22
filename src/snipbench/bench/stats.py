"""Aggregate statistics over the results of one (snippet, environment).

Percentiles here are nearest-rank: for percentile *p* over *n* sorted
samples the value at ``ceil(p/100 * n) - 1`` is taken.  This differs on
purpose from the interpolated quartiles used by the outlier detector.

Standard deviation is the sample standard deviation (n-1).  Every figure
that would divide by zero is defined as 0, and an empty sample set gives
an all-zero result rather than an error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Sequence

from snipbench.bench.outliers import OutlierDetectionResult, OutlierDetector

PERCENTILES = (50, 80, 90, 95, 99)


# ---------------------------------------------------------------------------
# Input and output types
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkMetrics:
    """Parallel arrays of per-unit measurements for one stream."""

    snippet_slug: str
    snippet_name: str
    environment: str
    execution_times: list[float] = field(default_factory=list)
    memory_usages: list[float] = field(default_factory=list)
    memory_peaks: list[float] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.execution_times

    @property
    def execution_count(self) -> int:
        return len(self.execution_times)

    def add(self, execution_time_ms: float, memory_used: float, memory_peak: float) -> None:
        self.execution_times.append(execution_time_ms)
        self.memory_usages.append(memory_used)
        self.memory_peaks.append(memory_peak)


@dataclass(frozen=True)
class PercentileMetrics:
    p50: float = 0.0
    p80: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "p50": round(self.p50, 4),
            "p80": round(self.p80, 4),
            "p90": round(self.p90, 4),
            "p95": round(self.p95, 4),
            "p99": round(self.p99, 4),
        }


@dataclass(frozen=True)
class OutlierAnalysis:
    """Outlier summary plus the statistics of the unfiltered samples."""

    outlier_count: int
    outlier_percentage: float
    outliers: list[float]
    stability_score: float
    raw_count: int
    raw_average: float
    raw_stddev: float
    raw_cv: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "outlier_count": self.outlier_count,
            "outlier_percentage": round(self.outlier_percentage, 2),
            "outliers": [round(v, 4) for v in self.outliers],
            "stability_score": self.stability_score,
            "raw_count": self.raw_count,
            "raw_average": round(self.raw_average, 4),
            "raw_stddev": round(self.raw_stddev, 4),
            "raw_cv": round(self.raw_cv, 2),
        }


@dataclass(frozen=True)
class AggregatedStatistics:
    """Everything derived from one stream's raw results."""

    snippet_slug: str
    snippet_name: str
    environment: str
    execution_count: int = 0
    average_time_ms: float = 0.0
    min_time_ms: float = 0.0
    max_time_ms: float = 0.0
    throughput: float = 0.0
    average_memory_used: float = 0.0
    peak_memory: float = 0.0
    stddev: float = 0.0
    cv: float = 0.0
    percentiles: PercentileMetrics = field(default_factory=PercentileMetrics)
    outlier_analysis: OutlierAnalysis | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict with rounded values."""
        d: dict[str, Any] = {
            "snippet": self.snippet_slug,
            "name": self.snippet_name,
            "environment": self.environment,
            "execution_count": self.execution_count,
            "average_time_ms": round(self.average_time_ms, 4),
            "min_time_ms": round(self.min_time_ms, 4),
            "max_time_ms": round(self.max_time_ms, 4),
            "throughput": round(self.throughput, 2),
            "average_memory_used": round(self.average_memory_used, 2),
            "peak_memory": self.peak_memory,
            "stddev": round(self.stddev, 4),
            "cv": round(self.cv, 2),
            "percentiles": self.percentiles.to_dict(),
        }
        if self.outlier_analysis is not None:
            d["outliers"] = self.outlier_analysis.to_dict()
        return d


# ---------------------------------------------------------------------------
# Primitive statistics
# ---------------------------------------------------------------------------


def nearest_rank_percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of ascending *sorted_values*; 0.0 if empty."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    index = math.ceil(p / 100 * n) - 1
    if index < 0:
        index = 0
    if index >= n:
        return sorted_values[-1]
    return sorted_values[index]


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def sample_stddev(values: Sequence[float], average: float | None = None) -> float:
    """Sample standard deviation (divides by n-1); 0 when n < 2."""
    n = len(values)
    if n < 2:
        return 0.0
    avg = mean(values) if average is None else average
    return math.sqrt(sum((v - avg) ** 2 for v in values) / (n - 1))


def coefficient_of_variation(stddev: float, average: float) -> float:
    """CV as a percentage; 0 when the mean is 0."""
    if average == 0:
        return 0.0
    return stddev / average * 100.0


def throughput(average_time_ms: float) -> float:
    """Operations per second for a mean time in milliseconds."""
    if average_time_ms == 0:
        return 0.0
    return 1000.0 / average_time_ms


def stability_score(cv: float, outlier_percentage: float) -> float:
    """0-100 score: 5 points lost per CV percent, up to 30 for outliers."""
    cv_score = max(0.0, 100.0 - cv * 5)
    penalty = min(30.0, outlier_percentage * 3)
    return round(max(0.0, cv_score - penalty), 2)


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class StatisticsCalculator:
    """Compute :class:`AggregatedStatistics` from :class:`BenchmarkMetrics`.

    Without an outlier detector all execution times are analysed and no
    outlier analysis is attached.  With one, outliers are detected on the
    execution times; ``remove_outliers`` decides whether the reported
    statistics use the cleaned or the original samples.  Raw figures
    are always kept in the outlier analysis for comparison.
    """

    def __init__(
        self,
        outlier_detector: OutlierDetector | None = None,
        *,
        remove_outliers: bool = True,
    ) -> None:
        self.outlier_detector = outlier_detector
        self.remove_outliers = remove_outliers

    def calculate(self, metrics: BenchmarkMetrics) -> AggregatedStatistics:
        if metrics.is_empty:
            return AggregatedStatistics(
                snippet_slug=metrics.snippet_slug,
                snippet_name=metrics.snippet_name,
                environment=metrics.environment,
            )

        raw = list(metrics.execution_times)
        detection: OutlierDetectionResult | None = None
        data = raw
        if self.outlier_detector is not None:
            detection = self.outlier_detector.detect_and_remove(raw)
            if self.remove_outliers:
                data = detection.cleaned_data

        ordered = sorted(data)
        average = mean(data)
        stddev = sample_stddev(data, average)
        cv = coefficient_of_variation(stddev, average)

        analysis: OutlierAnalysis | None = None
        if detection is not None:
            raw_average = mean(raw)
            raw_stddev = sample_stddev(raw, raw_average)
            analysis = OutlierAnalysis(
                outlier_count=detection.outlier_count,
                outlier_percentage=detection.outlier_percentage,
                outliers=detection.outliers,
                stability_score=stability_score(cv, detection.outlier_percentage),
                raw_count=len(raw),
                raw_average=raw_average,
                raw_stddev=raw_stddev,
                raw_cv=coefficient_of_variation(raw_stddev, raw_average),
            )

        return AggregatedStatistics(
            snippet_slug=metrics.snippet_slug,
            snippet_name=metrics.snippet_name,
            environment=metrics.environment,
            execution_count=len(data),
            average_time_ms=average,
            min_time_ms=ordered[0] if ordered else 0.0,
            max_time_ms=ordered[-1] if ordered else 0.0,
            throughput=throughput(average),
            average_memory_used=mean(metrics.memory_usages),
            peak_memory=max(metrics.memory_peaks) if metrics.memory_peaks else 0.0,
            stddev=stddev,
            cv=cv,
            percentiles=PercentileMetrics(
                *(nearest_rank_percentile(ordered, p) for p in PERCENTILES)
            ),
            outlier_analysis=analysis,
        )
