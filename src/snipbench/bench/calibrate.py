"""Iteration calibration from a single probe execution.

The probe runs the snippet body exactly once and reports its elapsed
time.  From that cost the calibrator suggests how many inner iterations
make the measurement phase land near a target duration, and how many
warmups are worth paying for (the more expensive one call is, the fewer
warmups).

Snippets whose cost is too small to measure this way cannot be
calibrated; callers fall back to their default iteration counts.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from snipbench.bench.backend import ScriptBackend, find_result_object
from snipbench.bench.instrument import ScriptInstrumenter
from snipbench.bench.iterations import IterationConfiguration
from snipbench.errors import CalibrationUnmeasurable, ExecutionError
from snipbench.snippets import Snippet

log = logging.getLogger("snipbench")

MIN_INNER = 10
MAX_INNER = 1000
DEFAULT_TARGET_DURATION_MS = 1000.0
DEFAULT_PROBE_TIMEOUT = 5.0

# Categories whose snippet is itself the measured loop.
LOOP_CATEGORIES = frozenset({"Iteration", "Loop"})

# (elapsed ms strictly above, warmup), most expensive first.
_WARMUP_STEPS = ((100.0, 1), (50.0, 3), (10.0, 5), (1.0, 10))
_CHEAP_WARMUP = 15


@dataclass(frozen=True)
class CalibrationResult:
    """Suggested iteration counts for one snippet."""

    snippet: str
    measured_time_ms: float
    suggested_warmup: int
    suggested_inner: int
    efficiency_percent: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "snippet": self.snippet,
            "measured_time_ms": round(self.measured_time_ms, 4),
            "suggested_warmup": self.suggested_warmup,
            "suggested_inner": self.suggested_inner,
            "efficiency_percent": round(self.efficiency_percent, 2),
        }

    def to_configuration(self) -> IterationConfiguration:
        return IterationConfiguration.from_calibration(self)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def suggest_warmup(elapsed_ms: float) -> int:
    for threshold, warmup in _WARMUP_STEPS:
        if elapsed_ms > threshold:
            return warmup
    return _CHEAP_WARMUP


def suggest_iterations(
    snippet: str,
    elapsed_ms: float,
    target_duration_ms: float = DEFAULT_TARGET_DURATION_MS,
) -> CalibrationResult:
    """Derive iteration counts from one measured call of *elapsed_ms*."""
    inner = max(MIN_INNER, min(MAX_INNER, _round_half_up(target_duration_ms / elapsed_ms)))
    efficiency = min(100.0, elapsed_ms * inner / target_duration_ms * 100)
    return CalibrationResult(
        snippet=snippet,
        measured_time_ms=elapsed_ms,
        suggested_warmup=suggest_warmup(elapsed_ms),
        suggested_inner=inner,
        efficiency_percent=efficiency,
    )


def should_calibrate(snippet: Snippet, *, force: bool = False) -> bool:
    """Whether *snippet* is eligible for calibration.

    Loop categories never are.  Snippets with explicit iteration counts
    are only recalibrated when *force* is set.
    """
    if snippet.category in LOOP_CATEGORIES:
        return False
    if snippet.has_explicit_iterations and not force:
        return False
    return True


class IterationCalibrator:
    """Probe snippets in one environment and suggest iteration counts."""

    def __init__(
        self,
        backend: ScriptBackend,
        environment_id: str,
        *,
        instrumenter: ScriptInstrumenter | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self.backend = backend
        self.environment_id = environment_id
        self.instrumenter = instrumenter or ScriptInstrumenter()
        self.probe_timeout = probe_timeout

    def measure(self, snippet: Snippet) -> float:
        """Run the probe once and return the elapsed milliseconds.

        Raises:
            CalibrationUnmeasurable: If the probe failed, timed out,
                printed no result, or measured no positive time.
        """
        script = self.instrumenter.build_probe(snippet)
        try:
            result = self.backend.run_script(
                self.environment_id, script, timeout=self.probe_timeout
            )
        except ExecutionError as exc:
            raise CalibrationUnmeasurable(snippet.slug, str(exc)) from exc

        if result.timed_out:
            raise CalibrationUnmeasurable(
                snippet.slug, f"probe timed out after {self.probe_timeout:g}s"
            )
        if result.exit_code != 0:
            tail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else ""
            raise CalibrationUnmeasurable(
                snippet.slug, f"probe exited with code {result.exit_code}: {tail}"
            )
        try:
            data = find_result_object(result.stdout)
        except ExecutionError as exc:
            raise CalibrationUnmeasurable(snippet.slug, "probe printed no result") from exc

        elapsed = data.get("elapsed_ms")
        if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
            raise CalibrationUnmeasurable(snippet.slug, f"invalid elapsed time {elapsed!r}")
        if not math.isfinite(elapsed) or elapsed <= 0:
            raise CalibrationUnmeasurable(snippet.slug, f"elapsed time {elapsed} is not positive")
        return float(elapsed)

    def calibrate(
        self,
        snippet: Snippet,
        target_duration_ms: float = DEFAULT_TARGET_DURATION_MS,
    ) -> CalibrationResult | None:
        """Suggest iteration counts, or None if the snippet is unmeasurable."""
        try:
            elapsed = self.measure(snippet)
        except CalibrationUnmeasurable as exc:
            log.warning("%s", exc)
            return None

        result = suggest_iterations(snippet.slug, elapsed, target_duration_ms)
        log.info(
            "Calibrated %s: %.4f ms per call -> warmup %d, inner %d (%.0f%% of target)",
            snippet.slug,
            elapsed,
            result.suggested_warmup,
            result.suggested_inner,
            result.efficiency_percent,
        )
        return result
