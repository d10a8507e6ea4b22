"""Terminal display formatting for benchmark results.

Produces aligned tables for aggregated statistics, calibration
suggestions and run summaries, using Unicode box-drawing rules.
"""

from __future__ import annotations

import math

from snipbench.bench.calibrate import CalibrationResult
from snipbench.bench.orchestrator import OrchestrationReport
from snipbench.bench.stats import AggregatedStatistics


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------


def format_time_ms(ms: float, precision: int = 3) -> str:
    """Format a millisecond value with adaptive units."""
    if math.isnan(ms):
        return "N/A"
    if ms < 1:
        return f"{ms * 1000:.{precision}f}\u00b5s"
    if ms < 1000:
        return f"{ms:.{precision}f}ms"
    return f"{ms / 1000:.{precision}f}s"


def format_bytes(value: float) -> str:
    """Format a byte count as B, KB or MB (powers of 1024)."""
    if value < 1024:
        return f"{value:.0f}B"
    if value < 1024 * 1024:
        return f"{value / 1024:.1f}KB"
    return f"{value / (1024 * 1024):.1f}MB"


def _stability_label(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 75:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def format_statistics_table(statistics: list[AggregatedStatistics]) -> str:
    """Format one row per (snippet, environment), grouped by snippet."""
    if not statistics:
        return "No results."

    lines: list[str] = []
    header = (
        f"{'Snippet':<28s} {'Env':<12s} {'N':>5s} {'Avg':>11s} {'p50':>11s} "
        f"{'p95':>11s} {'p99':>11s} {'CV':>7s} {'Mem':>9s} {'Peak':>9s} {'Stab.':>6s}"
    )
    lines.append(header)
    lines.append("\u2500" * len(header))

    previous = None
    for st in sorted(statistics, key=lambda s: (s.snippet_slug, s.environment)):
        label = st.snippet_slug if st.snippet_slug != previous else ""
        previous = st.snippet_slug
        if st.execution_count == 0:
            lines.append(f"{label:<28s} {st.environment:<12s} {0:>5d} {'no results':>11s}")
            continue
        stability = (
            f"{st.outlier_analysis.stability_score:>6.1f}" if st.outlier_analysis else f"{'-':>6s}"
        )
        lines.append(
            f"{label:<28s} {st.environment:<12s} {st.execution_count:>5d} "
            f"{format_time_ms(st.average_time_ms):>11s} "
            f"{format_time_ms(st.percentiles.p50):>11s} "
            f"{format_time_ms(st.percentiles.p95):>11s} "
            f"{format_time_ms(st.percentiles.p99):>11s} "
            f"{st.cv:>6.2f}% "
            f"{format_bytes(st.average_memory_used):>9s} "
            f"{format_bytes(st.peak_memory):>9s} "
            f"{stability}"
        )

    return "\n".join(lines)


def format_outlier_summary(statistics: list[AggregatedStatistics]) -> str:
    """Summarize outlier removal and stability per stream."""
    lines = ["Measurement Quality", "\u2500" * 19]
    analysed = [s for s in statistics if s.outlier_analysis is not None]
    if not analysed:
        lines.append("  No outlier analysis.")
        return "\n".join(lines)

    for st in sorted(analysed, key=lambda s: (s.snippet_slug, s.environment)):
        oa = st.outlier_analysis
        assert oa is not None
        line = (
            f"  {st.snippet_slug}@{st.environment}: "
            f"{oa.outlier_count}/{oa.raw_count} outliers ({oa.outlier_percentage:.1f}%), "
            f"CV {oa.raw_cv:.2f}% \u2192 {st.cv:.2f}%, "
            f"stability {oa.stability_score:.1f} ({_stability_label(oa.stability_score)})"
        )
        lines.append(line)

    scores = [s.outlier_analysis.stability_score for s in analysed if s.outlier_analysis]
    overall = sum(scores) / len(scores)
    lines.append(f"  Overall: {overall:.1f} ({_stability_label(overall)})")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------


def format_calibration_table(
    results: list[CalibrationResult],
    unmeasurable: list[str] | None = None,
) -> str:
    """Format suggested iteration counts per snippet."""
    lines: list[str] = []
    header = (
        f"{'Snippet':<30s} {'Per call':>11s} {'Warmup':>7s} {'Inner':>7s} {'Efficiency':>11s}"
    )
    lines.append(header)
    lines.append("\u2500" * len(header))

    for r in sorted(results, key=lambda r: r.snippet):
        lines.append(
            f"{r.snippet:<30s} {format_time_ms(r.measured_time_ms):>11s} "
            f"{r.suggested_warmup:>7d} {r.suggested_inner:>7d} "
            f"{r.efficiency_percent:>10.1f}%"
        )
    for slug in sorted(unmeasurable or []):
        lines.append(f"{slug:<30s} {'unmeasurable':>11s}")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------


def format_run_summary(report: OrchestrationReport) -> str:
    """Format unit counts and failures of a finished run."""
    lines = [
        f"Streams: {len(report.streams)}, skipped pairs: {len(report.skipped)}",
        f"Units: {report.succeeded_units} succeeded, {report.failed_units} failed "
        f"of {report.total_units}",
    ]
    if report.calibrations:
        lines.append(f"Calibrated snippets: {len(report.calibrations)}")

    failures = report.failures
    if failures:
        lines.append("")
        lines.append("Failures")
        lines.append("\u2500" * 8)
        for failure in sorted(failures, key=lambda f: (f.snippet, f.environment, f.iteration)):
            lines.append(
                f"  {failure.snippet}@{failure.environment} #{failure.iteration} "
                f"[{failure.kind}] {failure.message}"
            )
    return "\n".join(lines)
