"""Command-line interface for snipbench.

Subcommands:
    snipbench run         Benchmark snippets across environments
    snipbench calibrate   Suggest iteration counts for snippets
    snipbench stats       Aggregate a results file into statistics
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import NoReturn

import click

from snipbench import __version__
from snipbench.logging import setup_logging

log = logging.getLogger("snipbench")


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """snipbench: measure Python snippets across interpreters and containers."""


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


def _split_csv(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@main.command()
@click.option(
    "--profile",
    "profile_path",
    type=click.Path(exists=True, path_type=Path),
    help="YAML profile defining environments and settings.",
)
@click.option(
    "--env",
    "inline_envs",
    type=str,
    multiple=True,
    help="Inline environment: 'name:python=...,env.KEY=V' (repeatable).",
)
@click.option(
    "--snippets-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory of snippet YAML files (default: snippets).",
)
@click.option("--snippets", type=str, default=None, help="Comma-separated snippet slugs.")
@click.option("--categories", type=str, default=None, help="Comma-separated categories.")
@click.option(
    "--iterations", type=int, default=None, help="Units per snippet and environment (default: 10)."
)
@click.option(
    "--samples", type=int, default=None, help="Executions aggregated per unit (default: 1)."
)
@click.option("--pool-size", type=int, default=None, help="Concurrent units (default: 4).")
@click.option(
    "--timeout", type=float, default=None, help="Per-execution timeout in seconds (default: 30)."
)
@click.option(
    "--calibrate/--no-calibrate",
    default=None,
    help="Calibrate inner iterations before running.",
)
@click.option(
    "--force-calibration",
    is_flag=True,
    default=False,
    help="Calibrate snippets that declare explicit iterations too.",
)
@click.option(
    "--target-ms", type=float, default=None, help="Calibration target duration in ms."
)
@click.option(
    "--warm/--no-warm",
    "warm_environments",
    default=None,
    help="Warm each environment once before measuring.",
)
@click.option("--results-dir", type=click.Path(path_type=Path), default=None)
@click.option("--name", type=str, default=None, help="Human-readable run name.")
@click.option("--keep-outliers", is_flag=True, default=False, help="Report raw statistics.")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors.")
@click.option("--log-file", type=click.Path(path_type=Path), default=None)
def run(  # noqa: PLR0913
    profile_path: Path | None,
    inline_envs: tuple[str, ...],
    snippets_dir: Path | None,
    snippets: str | None,
    categories: str | None,
    iterations: int | None,
    samples: int | None,
    pool_size: int | None,
    timeout: float | None,
    calibrate: bool | None,
    force_calibration: bool,
    target_ms: float | None,
    warm_environments: bool | None,
    results_dir: Path | None,
    name: str | None,
    keep_outliers: bool,
    verbose: bool,
    quiet: bool,
    log_file: Path | None,
) -> None:
    """Benchmark snippets in every configured environment.

    \b
    Examples:
        # From a YAML profile
        snipbench run --profile bench.yaml

        # Two local interpreters, inline
        snipbench run --env py312:python=/usr/bin/python3.12 \\
            --env py313:python=/usr/bin/python3.13 \\
            --snippets-dir snippets --iterations 20 --calibrate
    """
    from snipbench.bench.backend import WarmingBackend, create_backend
    from snipbench.bench.calibrate import IterationCalibrator
    from snipbench.bench.config import (
        config_from_profile,
        load_profile,
        parse_inline_environment,
        validate_config,
    )
    from snipbench.bench.display import (
        format_outlier_summary,
        format_run_summary,
        format_statistics_table,
    )
    from snipbench.bench.orchestrator import BenchmarkOrchestrator
    from snipbench.bench.outliers import OutlierDetector
    from snipbench.bench.results import RESULTS_FILENAME, JsonlResultSink, save_run_meta
    from snipbench.bench.sinks import LoggingProgressSink
    from snipbench.bench.stats import StatisticsCalculator
    from snipbench.snippets import load_catalog

    setup_logging(verbose=verbose, quiet=quiet, log_file=log_file)

    try:
        environments = [parse_inline_environment(spec) for spec in inline_envs]
        profile_data = load_profile(profile_path) if profile_path else {}
        config = config_from_profile(
            profile_data,
            cli_overrides={
                "name": name,
                "iterations": iterations,
                "samples": samples,
                "pool_size": pool_size,
                "timeout": timeout,
                "calibrate": calibrate,
                "force_calibration": force_calibration or None,
                "target_duration_ms": target_ms,
                "warm_environments": warm_environments,
                "snippets_dir": snippets_dir,
                "snippets_filter": _split_csv(snippets),
                "categories": _split_csv(categories),
                "results_dir": results_dir,
                "environments": environments,
            },
        )
    except (ValueError, FileNotFoundError) as exc:
        _fail(str(exc))

    problems = validate_config(config)
    for problem in problems:
        if problem.severity == "warning":
            log.warning("%s: %s", problem.field, problem.message)
    errors = [p for p in problems if p.severity == "error"]
    if errors:
        for problem in errors:
            click.echo(f"Error: {problem.field}: {problem.message}", err=True)
        raise SystemExit(1)

    try:
        catalog = load_catalog(config.snippets_dir)
    except FileNotFoundError as exc:
        _fail(str(exc))
    selected = catalog.select(config.snippets_filter, config.categories)
    if not selected:
        _fail(f"No snippets selected from {config.snippets_dir}")

    script_backend = create_backend(config)
    backend = WarmingBackend(script_backend) if config.warm_environments else script_backend
    calibrator = None
    if config.calibrate:
        calibrator = IterationCalibrator(
            script_backend,
            next(iter(config.environments)),
            probe_timeout=config.probe_timeout,
        )

    output_dir = config.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    sink = JsonlResultSink(output_dir / RESULTS_FILENAME, run_id=config.run_id)
    orchestrator = BenchmarkOrchestrator(
        backend,
        result_sink=sink,
        progress_sink=LoggingProgressSink(),
        pool_size=config.pool_size,
        sample_count=config.samples,
        calibrator=calibrator,
        target_duration_ms=config.target_duration_ms,
        force_calibration=config.force_calibration,
    )

    start_time = time.strftime("%Y-%m-%dT%H:%M:%S")
    log.info(
        "Run %s: %d snippets x %d environments, %d iterations",
        config.run_id,
        len(selected),
        len(config.environments),
        config.iterations,
    )
    try:
        report = orchestrator.run(selected, list(config.environments), config.iterations)
    except ValueError as exc:
        _fail(str(exc))
    except KeyboardInterrupt:
        click.echo("\nBenchmark interrupted.", err=True)
        raise SystemExit(130)  # noqa: B904

    save_run_meta(
        output_dir,
        {
            **config.to_dict(),
            "start_time": start_time,
            "end_time": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "cli_args": sys.argv[1:],
            "report": report.to_dict(),
        },
    )

    calculator = StatisticsCalculator(OutlierDetector(), remove_outliers=not keep_outliers)
    statistics = [calculator.calculate(s.metrics()) for s in report.streams.values()]

    click.echo()
    click.echo(format_statistics_table(statistics))
    click.echo()
    click.echo(format_outlier_summary(statistics))
    click.echo()
    click.echo(format_run_summary(report))
    click.echo()
    click.echo(f"Results saved to: {output_dir}")


# ---------------------------------------------------------------------------
# calibrate
# ---------------------------------------------------------------------------


@main.command("calibrate")
@click.argument(
    "snippets_dir",
    type=click.Path(path_type=Path),
    default=Path("snippets"),
    required=False,
)
@click.option(
    "--python",
    type=str,
    default=None,
    help="Interpreter to probe with (default: the running one).",
)
@click.option("--snippets", type=str, default=None, help="Comma-separated snippet slugs.")
@click.option(
    "--target-ms",
    type=float,
    default=1000.0,
    show_default=True,
    help="Target duration of the measured loop.",
)
@click.option("--force", is_flag=True, help="Calibrate snippets with explicit iterations too.")
@click.option("--probe-timeout", type=float, default=5.0, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors.")
@click.option("--log-file", type=click.Path(path_type=Path), default=None)
def calibrate_cmd(
    snippets_dir: Path,
    python: str | None,
    snippets: str | None,
    target_ms: float,
    force: bool,
    probe_timeout: float,
    as_json: bool,
    verbose: bool,
    quiet: bool,
    log_file: Path | None,
) -> None:
    """Suggest warm-up and inner iteration counts for each snippet.

    SNIPPETS_DIR defaults to ./snippets.
    """
    from snipbench.bench.backend import SubprocessBackend
    from snipbench.bench.calibrate import IterationCalibrator, should_calibrate
    from snipbench.bench.config import Environment
    from snipbench.bench.display import format_calibration_table
    from snipbench.snippets import load_catalog

    setup_logging(verbose=verbose, quiet=quiet or as_json, log_file=log_file)

    if target_ms <= 0:
        _fail("--target-ms must be positive")
    try:
        catalog = load_catalog(snippets_dir)
    except FileNotFoundError as exc:
        _fail(str(exc))

    environment = Environment(name="calibration", python=python or sys.executable)
    backend = SubprocessBackend({environment.name: environment}, timeout=probe_timeout)
    calibrator = IterationCalibrator(backend, environment.name, probe_timeout=probe_timeout)

    results = []
    unmeasurable: list[str] = []
    try:
        for snippet in catalog.select(_split_csv(snippets)):
            if not should_calibrate(snippet, force=force):
                log.debug("Skipping %s", snippet.slug)
                continue
            result = calibrator.calibrate(snippet, target_ms)
            if result is None:
                unmeasurable.append(snippet.slug)
            else:
                results.append(result)
    except KeyboardInterrupt:
        click.echo("\nCalibration interrupted.", err=True)
        raise SystemExit(130)  # noqa: B904

    if as_json:
        payload = {
            "python": environment.python,
            "target_duration_ms": target_ms,
            "results": [r.to_dict() for r in results],
            "unmeasurable": unmeasurable,
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(format_calibration_table(results, unmeasurable))


# ---------------------------------------------------------------------------
# stats
# ---------------------------------------------------------------------------


@main.command("stats")
@click.argument("results_path", type=click.Path(exists=True, path_type=Path))
@click.option("--keep-outliers", is_flag=True, help="Do not remove outliers.")
@click.option(
    "--iqr-multiplier",
    type=float,
    default=1.5,
    show_default=True,
    help="Tukey fence multiplier.",
)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
def stats_cmd(
    results_path: Path,
    keep_outliers: bool,
    iqr_multiplier: float,
    as_json: bool,
    verbose: bool,
) -> None:
    """Print per (snippet, environment) statistics for a results file.

    RESULTS_PATH is a results.jsonl file or the run directory holding it.
    """
    from snipbench.bench.display import format_outlier_summary, format_statistics_table
    from snipbench.bench.outliers import OutlierDetector
    from snipbench.bench.results import group_metrics, load_results
    from snipbench.bench.stats import StatisticsCalculator

    setup_logging(verbose=verbose, quiet=as_json)

    try:
        records = load_results(results_path)
    except FileNotFoundError as exc:
        _fail(str(exc))

    calculator = StatisticsCalculator(
        OutlierDetector(iqr_multiplier=iqr_multiplier),
        remove_outliers=not keep_outliers,
    )
    statistics = [calculator.calculate(m) for m in group_metrics(records).values()]

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in statistics], indent=2))
        return
    click.echo(format_statistics_table(statistics))
    click.echo()
    click.echo(format_outlier_summary(statistics))
