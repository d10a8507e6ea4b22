"""Warmup and inner iteration counts for one instrumented unit.

An :class:`IterationConfiguration` is always valid once constructed.
Explicit values outside the allowed bounds are rejected, never clamped.
When no explicit values are given, counts are derived from a rough
complexity estimate of the snippet code, or from environment variables.
"""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping

from snipbench.errors import InvalidConfiguration

if TYPE_CHECKING:
    from snipbench.bench.calibrate import CalibrationResult

DEFAULT_WARMUP_ITERATIONS = 10
DEFAULT_INNER_ITERATIONS = 100

MIN_WARMUP_ITERATIONS = 1
MAX_WARMUP_ITERATIONS = 100
MIN_INNER_ITERATIONS = 10
MAX_INNER_ITERATIONS = 10000

# Upper bound for inner iterations suggested by the complexity heuristic.
HEURISTIC_MAX_INNER = 1000

WARMUP_ENV_VAR = "SNIPBENCH_WARMUP_ITERATIONS"
INNER_ENV_VAR = "SNIPBENCH_INNER_ITERATIONS"

# Substrings that mark expensive operations, with their cost weight.
# Only the heaviest one found in a snippet counts.
HEAVY_OPERATIONS: dict[str, float] = {
    "unicodedata.": 2.0,
    "re.": 3.0,
    "hashlib.": 3.0,
    "pickle.": 2.5,
    "json.dumps": 2.0,
    "json.loads": 2.5,
    "open(": 10.0,
    "urllib": 10.0,
    "requests.": 10.0,
}

_RANGE_LOOP_RE = re.compile(
    r"for\s+[\w\s,()]+?\s+in\s+range\(\s*(?:[\d_]+\s*,\s*)?([\d_]+)\s*[,)]"
)

# (minimum score, level, warmup, target total operations), heaviest first.
_COMPLEXITY_LEVELS: tuple[tuple[float, str, int, int], ...] = (
    (15.0, "extreme", 3, 100_000),
    (10.0, "heavy", 5, 1_000_000),
    (5.0, "moderate", 10, 10_000_000),
    (2.0, "light", 15, 50_000_000),
    (float("-inf"), "minimal", 20, 100_000_000),
)


# ---------------------------------------------------------------------------
# Complexity estimate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CodeComplexity:
    """Rough cost estimate of a snippet, derived from its source text."""

    level: str
    score: float
    estimated_operations: int


def analyze_complexity(code: str) -> CodeComplexity:
    """Estimate how expensive one execution of *code* is.

    The number of operations is the product of the bounds of every
    ``for ... in range(N)`` loop found.  The score is
    ``log10(operations + 1)`` scaled by the weight of the heaviest
    operation the code mentions.
    """
    operations = 1
    for bound in _RANGE_LOOP_RE.findall(code):
        operations *= int(bound.replace("_", ""))

    weight = 1.0
    for marker, cost in HEAVY_OPERATIONS.items():
        if marker in code:
            weight = max(weight, cost)

    score = math.log10(operations + 1) * weight
    for threshold, level, _warmup, _target in _COMPLEXITY_LEVELS:
        if score >= threshold:
            break
    return CodeComplexity(level=level, score=score, estimated_operations=operations)


def _level_row(level: str) -> tuple[float, str, int, int]:
    for row in _COMPLEXITY_LEVELS:
        if row[1] == level:
            return row
    return _COMPLEXITY_LEVELS[-1]


def warmup_for_complexity(complexity: CodeComplexity) -> int:
    """Heavier code gets fewer warmup iterations."""
    return _level_row(complexity.level)[2]


def inner_for_complexity(complexity: CodeComplexity) -> int:
    """Spread the level's operation budget over the estimated cost."""
    target = _level_row(complexity.level)[3]
    if complexity.estimated_operations > 0:
        suggested = target // complexity.estimated_operations
        return max(MIN_INNER_ITERATIONS, min(HEURISTIC_MAX_INNER, suggested))
    return DEFAULT_INNER_ITERATIONS


# ---------------------------------------------------------------------------
# IterationConfiguration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IterationConfiguration:
    """How many unmeasured and measured repetitions one unit runs."""

    warmup_iterations: int
    inner_iterations: int

    def __post_init__(self) -> None:
        if isinstance(self.warmup_iterations, bool) or not isinstance(self.warmup_iterations, int):
            raise InvalidConfiguration("Warmup iterations must be an integer")
        if isinstance(self.inner_iterations, bool) or not isinstance(self.inner_iterations, int):
            raise InvalidConfiguration("Inner iterations must be an integer")
        if self.warmup_iterations < MIN_WARMUP_ITERATIONS:
            raise InvalidConfiguration(
                f"Warmup iterations must be at least {MIN_WARMUP_ITERATIONS}"
            )
        if self.warmup_iterations > MAX_WARMUP_ITERATIONS:
            raise InvalidConfiguration(
                f"Warmup iterations must not exceed {MAX_WARMUP_ITERATIONS}"
            )
        if self.inner_iterations < MIN_INNER_ITERATIONS:
            raise InvalidConfiguration(
                f"Inner iterations must be at least {MIN_INNER_ITERATIONS}"
            )
        if self.inner_iterations > MAX_INNER_ITERATIONS:
            raise InvalidConfiguration(
                f"Inner iterations must not exceed {MAX_INNER_ITERATIONS}"
            )

    @property
    def total_measurements(self) -> int:
        return self.inner_iterations

    @property
    def description(self) -> str:
        return (
            f"Warmup: {self.warmup_iterations}, Inner: {self.inner_iterations} "
            f"(Total: {self.total_measurements} measurements)"
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "warmup_iterations": self.warmup_iterations,
            "inner_iterations": self.inner_iterations,
        }

    # -- factories ---------------------------------------------------------

    @classmethod
    def explicit(cls, warmup_iterations: int, inner_iterations: int) -> IterationConfiguration:
        """Build from user-provided values; out-of-bounds values raise."""
        return cls(warmup_iterations, inner_iterations)

    @classmethod
    def from_code_complexity(
        cls,
        code: str,
        warmup_iterations: int | None = None,
        inner_iterations: int | None = None,
    ) -> IterationConfiguration:
        """Fill missing counts from :func:`analyze_complexity` of *code*."""
        complexity = analyze_complexity(code)
        return cls(
            warmup_iterations
            if warmup_iterations is not None
            else warmup_for_complexity(complexity),
            inner_iterations if inner_iterations is not None else inner_for_complexity(complexity),
        )

    @classmethod
    def from_environment(
        cls,
        warmup_iterations: int | None = None,
        inner_iterations: int | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> IterationConfiguration:
        """Fill missing counts from ``SNIPBENCH_*_ITERATIONS`` variables.

        Non-numeric values fall back to the built-in defaults.
        """
        env = os.environ if environ is None else environ
        return cls(
            warmup_iterations
            if warmup_iterations is not None
            else _int_from_env(env, WARMUP_ENV_VAR, DEFAULT_WARMUP_ITERATIONS),
            inner_iterations
            if inner_iterations is not None
            else _int_from_env(env, INNER_ENV_VAR, DEFAULT_INNER_ITERATIONS),
        )

    @classmethod
    def create_with_defaults(
        cls,
        warmup_iterations: int | None = None,
        inner_iterations: int | None = None,
        code: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> IterationConfiguration:
        """Pick the best available source of iteration counts.

        Both counts given: use them.  Otherwise, with *code*, estimate
        the missing ones from its complexity; without it, read them from
        the environment.
        """
        if warmup_iterations is not None and inner_iterations is not None:
            return cls.explicit(warmup_iterations, inner_iterations)
        if code is not None:
            return cls.from_code_complexity(code, warmup_iterations, inner_iterations)
        return cls.from_environment(warmup_iterations, inner_iterations, environ)

    @classmethod
    def from_calibration(cls, result: CalibrationResult) -> IterationConfiguration:
        return cls(result.suggested_warmup, result.suggested_inner)


def _int_from_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default
