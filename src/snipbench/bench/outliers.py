"""Outlier detection for execution-time samples.

Two methods are provided:

* Tukey's fences (``detect_and_remove``): values strictly outside
  ``[Q1 - 1.5*IQR, Q3 + 1.5*IQR]`` are outliers.  Needs at least four
  samples.
* Modified Z-score (``detect_with_modified_z_score``): a robust score
  based on the median and the median absolute deviation.  Values with
  ``|z| > threshold`` are outliers.

Both quartile and median use linear interpolation between ranks.
Classification is keyed by the sample's original index so cleaned and
outlier values can always be traced back to the run that produced them.

References:
    Tukey, J. W. (1977). "Exploratory Data Analysis."
    Iglewicz, B. & Hoaglin, D. (1993). "How to Detect and Handle
        Outliers."
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Sequence

IQR_MULTIPLIER = 1.5
MODIFIED_Z_CONSTANT = 0.6745
DEFAULT_Z_THRESHOLD = 3.5
MIN_TUKEY_SAMPLES = 4


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutlierDetectionResult:
    """Partition of a sample set into clean values and outliers."""

    cleaned_by_index: dict[int, float] = field(default_factory=dict)
    outliers_by_index: dict[int, float] = field(default_factory=dict)
    lower_bound: float = 0.0
    upper_bound: float = 0.0
    outlier_count: int = 0
    original_count: int = 0

    @property
    def cleaned_data(self) -> list[float]:
        """Clean values, in original sample order."""
        return [self.cleaned_by_index[i] for i in sorted(self.cleaned_by_index)]

    @property
    def outliers(self) -> list[float]:
        """Outlier values, in original sample order."""
        return [self.outliers_by_index[i] for i in sorted(self.outliers_by_index)]

    @property
    def outlier_percentage(self) -> float:
        if self.original_count == 0:
            return 0.0
        return self.outlier_count / self.original_count * 100.0

    @property
    def has_outliers(self) -> bool:
        return self.outlier_count > 0

    @property
    def cleaned_count(self) -> int:
        return len(self.cleaned_by_index)

    def summary(self) -> str:
        if not self.has_outliers:
            return f"No outliers detected in {self.original_count} samples"
        return (
            f"Detected {self.outlier_count} outliers ({self.outlier_percentage:.1f}%) "
            f"in {self.original_count} samples. "
            f"Bounds: [{self.lower_bound:.4f}, {self.upper_bound:.4f}]"
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "outlier_count": self.outlier_count,
            "original_count": self.original_count,
            "outlier_percentage": round(self.outlier_percentage, 2),
            "lower_bound": self.lower_bound,
            "upper_bound": self.upper_bound,
            "outliers": self.outliers,
        }


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


def interpolated_quantile(sorted_values: Sequence[float], p: float) -> float:
    """Quantile *p* (0..1) by linear interpolation between ranks.

    Assumes *sorted_values* is sorted ascending.  Returns 0.0 when empty.
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    if n == 1:
        return sorted_values[0]

    position = (n - 1) * p
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return sorted_values[lower]
    weight = position - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


class OutlierDetector:
    """Classify execution-time samples as clean or outlying."""

    def __init__(self, iqr_multiplier: float = IQR_MULTIPLIER) -> None:
        self.iqr_multiplier = iqr_multiplier

    def detect_and_remove(self, samples: Sequence[float]) -> OutlierDetectionResult:
        """Tukey's fences.

        With fewer than four samples every value is clean and both
        bounds are 0.
        """
        n = len(samples)
        if n < MIN_TUKEY_SAMPLES:
            return OutlierDetectionResult(
                cleaned_by_index=dict(enumerate(samples)),
                original_count=n,
            )

        ordered = sorted(samples)
        q1 = interpolated_quantile(ordered, 0.25)
        q3 = interpolated_quantile(ordered, 0.75)
        iqr = q3 - q1
        lower = q1 - self.iqr_multiplier * iqr
        upper = q3 + self.iqr_multiplier * iqr

        return _partition(samples, lambda _i, v: v < lower or v > upper, lower, upper)

    def modified_z_scores(self, samples: Sequence[float]) -> list[float]:
        """Modified Z-score of each sample, in input order.

        Fewer than two samples, or a zero MAD, yield all zeros.
        """
        n = len(samples)
        if n < 2:
            return [0.0] * n

        median = interpolated_quantile(sorted(samples), 0.5)
        deviations = sorted(abs(v - median) for v in samples)
        mad = interpolated_quantile(deviations, 0.5)
        if mad == 0:
            return [0.0] * n

        return [MODIFIED_Z_CONSTANT * (v - median) / mad for v in samples]

    def detect_with_modified_z_score(
        self,
        samples: Sequence[float],
        threshold: float = DEFAULT_Z_THRESHOLD,
    ) -> OutlierDetectionResult:
        """Modified Z-score method; bounds are reported as ``±threshold``."""
        scores = self.modified_z_scores(samples)
        return _partition(
            samples,
            lambda i, _v: abs(scores[i]) > threshold,
            -threshold,
            threshold,
        )


def _partition(
    samples: Sequence[float],
    is_outlier: Callable[[int, float], bool],
    lower: float,
    upper: float,
) -> OutlierDetectionResult:
    cleaned: dict[int, float] = {}
    outliers: dict[int, float] = {}
    for index, value in enumerate(samples):
        if is_outlier(index, value):
            outliers[index] = value
        else:
            cleaned[index] = value
    return OutlierDetectionResult(
        cleaned_by_index=cleaned,
        outliers_by_index=outliers,
        lower_bound=lower,
        upper_bound=upper,
        outlier_count=len(outliers),
        original_count=len(samples),
    )
